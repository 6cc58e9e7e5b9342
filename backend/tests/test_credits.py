"""Catalog and credit package tests"""
import pytest
from datetime import timedelta
from decimal import Decimal

from shopmeter.core.constants import BillingType, NotificationType, PackageStatus, PaymentStatus, Service
from shopmeter.core.errors import IdempotencyConflict, PackageNotFound
from shopmeter.models.credit_purchase import CreditPurchase
from shopmeter.models.notification import Notification
from shopmeter.models.plan import CreditPackage, Plan
from shopmeter.services.catalog_service import (
    ensure_default_catalog, get_package_feature, get_plan_limits, list_packages, list_plans, split_package_credits,
)
from shopmeter.services.credit_service import get_credit_history, purchase_credits
from shopmeter.services.subscription_service import subscribe

from conftest import SHOP_NAME


@pytest.mark.high
class TestCatalog:
    """Seeded plans and packages"""

    def test_seeding_is_idempotent(self, db_session, catalog):
        assert ensure_default_catalog(db_session) == {"plans": 0, "packages": 0}
        assert db_session.query(Plan).count() == 3
        assert db_session.query(CreditPackage).count() == 4

    def test_reseeding_keeps_operator_prices(self, db_session, catalog):
        catalog["plans"]["STANDARD"].price = Decimal("25")
        db_session.commit()

        ensure_default_catalog(db_session)

        assert db_session.query(Plan).filter(Plan.name == "STANDARD").one().price == Decimal("25.00")

    def test_package_credits_split_by_conversion_rate(self):
        split = split_package_credits(Decimal("100"))

        assert split == {Service.AI_API: Decimal("9.09"), Service.CRAWL_API: Decimal("90.91")}
        assert sum(split.values()) == Decimal("100")

    def test_plan_limits_are_normalized(self, catalog):
        limits = get_plan_limits(catalog["plans"]["FREE"])

        assert limits[Service.AI_API].request_limit == 9
        assert limits[Service.AI_API].conversion_rate == Decimal("0.1")
        assert limits[Service.AI_API].rpm == 20
        assert limits[Service.CRAWL_API].credit_limit == Decimal("9.10")

    def test_missing_service_gets_zero_limits(self, make_plan):
        plan = make_plan("CRAWL-ONLY", limits={Service.CRAWL_API: (5, "5", "1")})

        limits = get_plan_limits(plan)

        assert limits[Service.AI_API].request_limit == 0
        assert limits[Service.AI_API].credit_limit == Decimal("0")

    def test_package_feature(self, db_session, catalog):
        limits = get_package_feature(catalog["packages"]["SMALL"].id, db_session)

        assert limits[Service.AI_API].request_limit == 90
        assert limits[Service.AI_API].credit_limit == Decimal("9.09")
        assert limits[Service.CRAWL_API].request_limit == 90
        assert limits[Service.CRAWL_API].credit_limit == Decimal("90.91")

    def test_listings(self, db_session, catalog):
        assert [plan["name"] for plan in list_plans(db_session)] == ["FREE", "STANDARD", "PREMIUM"]
        assert [package["name"] for package in list_packages(db_session)] == ["SMALL", "MEDIUM", "LARGE", "ENTERPRISE"]


@pytest.mark.critical
class TestPurchase:
    """Buying credit packages"""

    def test_small_package_grants_split_allowance(self, db_session, shop, now, mock_email_service):
        purchase = purchase_credits(SHOP_NAME, "SMALL", "txn-p1", db_session, now=now)

        assert purchase["status"] == PackageStatus.ACTIVE
        assert purchase["credits_granted"] == 100
        assert purchase["services"][Service.AI_API]["requests"]["total"] == 90
        assert purchase["services"][Service.AI_API]["credits"]["total"] == 9.09
        assert purchase["services"][Service.CRAWL_API]["requests"]["total"] == 90
        assert purchase["services"][Service.CRAWL_API]["credits"]["total"] == 90.91
        assert purchase["amount_paid"] == 10

        row = db_session.query(CreditPurchase).filter(CreditPurchase.id == purchase["id"]).one()
        payment = row.payments[0]
        assert payment.billing_type == BillingType.ONE_TIME
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.subscription_id is None

        assert db_session.query(Notification).filter(Notification.type == NotificationType.CREDIT_PURCHASE).count() == 1
        subject = mock_email_service.Emails.send.call_args.args[0]["subject"]
        assert subject == "Credits Purchase Confirmed - acme.myshopify.com"

    def test_package_by_id(self, db_session, shop, catalog, now):
        medium = catalog["packages"]["MEDIUM"]

        purchase = purchase_credits(SHOP_NAME, medium.id, "txn-p1", db_session, now=now)

        assert purchase["package"] == "MEDIUM"
        assert purchase["credits_granted"] == 500

    def test_replay_returns_existing_purchase(self, db_session, shop, now):
        first = purchase_credits(SHOP_NAME, "SMALL", "txn-p1", db_session, now=now)
        second = purchase_credits(SHOP_NAME, "SMALL", "txn-p1", db_session, now=now + timedelta(minutes=1))

        assert second["id"] == first["id"]
        assert db_session.query(CreditPurchase).count() == 1

    def test_reference_used_by_subscription_conflicts(self, db_session, shop, now):
        subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)

        with pytest.raises(IdempotencyConflict):
            purchase_credits(SHOP_NAME, "SMALL", "txn-1", db_session, now=now)

    def test_unknown_or_inactive_package(self, db_session, shop, catalog, now):
        with pytest.raises(PackageNotFound):
            purchase_credits(SHOP_NAME, "HUGE", "txn-p1", db_session, now=now)

        catalog["packages"]["LARGE"].is_active = False
        db_session.commit()
        with pytest.raises(PackageNotFound):
            purchase_credits(SHOP_NAME, "LARGE", "txn-p2", db_session, now=now)

    def test_snapshot_survives_catalog_edits(self, db_session, shop, catalog, now):
        purchase = purchase_credits(SHOP_NAME, "SMALL", "txn-p1", db_session, now=now)
        small = catalog["packages"]["SMALL"]
        small.price = Decimal("99")
        small.credit_amount = Decimal("1")
        db_session.commit()

        history = get_credit_history(SHOP_NAME, db_session)

        assert history[0]["id"] == purchase["id"]
        assert history[0]["price"] == 10
        assert history[0]["credit_amount"] == 100

    def test_history_newest_first(self, db_session, shop, now):
        older = purchase_credits(SHOP_NAME, "SMALL", "txn-p1", db_session, now=now)
        newer = purchase_credits(SHOP_NAME, "MEDIUM", "txn-p2", db_session, now=now + timedelta(days=1))

        assert [item["id"] for item in get_credit_history(SHOP_NAME, db_session)] == [newer["id"], older["id"]]
        assert len(get_credit_history(SHOP_NAME, db_session, limit=1)) == 1
