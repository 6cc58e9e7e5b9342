#!/usr/bin/env python3
"""
Seed the billing catalog and onboard shops.

Usage:
    # Create the default plans and credit packages (existing rows are kept)
    python seed_catalog.py --seed

    # Show active plans and packages
    python seed_catalog.py --list

    # Onboard a shop on the default plan
    python seed_catalog.py --onboard acme.myshopify.com --email owner@acme.com
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shopmeter.core.errors import BillingError
from shopmeter.db.session import SessionLocal, init_db
from shopmeter.services.catalog_service import ensure_default_catalog, list_packages, list_plans
from shopmeter.services.subscription_service import onboard_shop


def seed():
    """Create missing catalog rows"""
    init_db()
    db = SessionLocal()
    try:
        created = ensure_default_catalog(db)
        db.commit()
        print(f"✅ Seeded {created['plans']} plan(s) and {created['packages']} package(s)")
        return True
    except Exception as e:
        print(f"❌ Error: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def show_catalog():
    db = SessionLocal()
    try:
        print("Plans:")
        for plan in list_plans(db):
            print(f"   {plan['name']:<12} ${plan['price']}/month, {plan['credit_amount']} credits, "
                  f"{plan['trial_days']} trial day(s)")
        print("Credit packages:")
        for package in list_packages(db):
            print(f"   {package['name']:<12} {package['credit_amount']} credits for ${package['price']}")
        return True
    finally:
        db.close()


def onboard(shop_name: str, email: str = None):
    db = SessionLocal()
    try:
        result = onboard_shop(shop_name, db, email=email)
        print(f"✅ Shop {result['shop']} is on the {result['plan']} plan ({result['status']})")
        return True
    except BillingError as e:
        print(f"❌ {e.code}: {e}")
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Seed the billing catalog and onboard shops")
    parser.add_argument("--seed", action="store_true", help="Create the default plans and packages")
    parser.add_argument("--list", action="store_true", help="List active plans and packages")
    parser.add_argument("--onboard", metavar="SHOP", help="Onboard a shop on the default plan")
    parser.add_argument("--email", help="Owner email for --onboard")
    args = parser.parse_args()

    if not (args.seed or args.list or args.onboard):
        parser.print_help()
        return 1

    ok = True
    if args.seed:
        ok = seed() and ok
    if args.onboard:
        ok = onboard(args.onboard, args.email) and ok
    if args.list:
        ok = show_catalog() and ok
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
