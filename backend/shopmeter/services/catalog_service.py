"""Catalog service - plan and credit package lookups"""
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Iterable, List, Optional, Any
import logging

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from shopmeter.core.constants import Service
from shopmeter.core.errors import InvalidPlan, PackageNotFound
from shopmeter.core.policy import BillingPolicy, get_billing_policy
from shopmeter.models.plan import Plan, CreditPackage, ServiceLimit
from shopmeter.utils.amounts import ZERO, floor2, to_decimal, as_number

logger = logging.getLogger(__name__)

# name -> (credits, price)
STANDARD_PACKAGES = {
    "SMALL": (Decimal("100"), Decimal("10")),
    "MEDIUM": (Decimal("500"), Decimal("40")),
    "LARGE": (Decimal("1000"), Decimal("60")),
    "ENTERPRISE": (Decimal("5000"), Decimal("200")),
}

# name -> (monthly price, trial days, credits per cycle, description)
STANDARD_PLANS = {
    "FREE": (Decimal("0"), 0, Decimal("10"), "Essential features to get started"),
    "STANDARD": (Decimal("20"), 7, Decimal("200"), "For growing teams"),
    "PREMIUM": (Decimal("50"), 7, Decimal("600"), "For high-volume stores"),
}

DEFAULT_AI_RATE_LIMITS = {"rpm": 20, "rpd": 1000, "tpm": 40000, "tpd": 1000000}


class ServiceLimits(BaseModel):
    """Fully-defaulted limits of one service; built once per plan/package load"""
    model_config = ConfigDict(frozen=True)

    service: str
    request_limit: int = 0
    credit_limit: Decimal = ZERO
    conversion_rate: Decimal = Decimal("1")
    token_limit: int = 0
    max_tokens: int = 0
    rpm: int = 0
    rpd: int = 0
    tpm: int = 0
    tpd: int = 0

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy for purchase snapshots"""
        data = self.model_dump()
        data["credit_limit"] = str(self.credit_limit)
        data["conversion_rate"] = str(self.conversion_rate)
        return data


def _normalize_limit(service: str, row: Optional[ServiceLimit], policy: BillingPolicy) -> ServiceLimits:
    if row is None:
        return ServiceLimits(service=service, conversion_rate=policy.conversion_rate(service))

    rate = to_decimal(row.conversion_rate) if row.conversion_rate is not None else policy.conversion_rate(service)
    credit_limit = to_decimal(row.credit_limit) if row.credit_limit is not None else None
    request_limit = row.request_limit

    # Either side can be derived from the other through the conversion rate
    if request_limit is None:
        request_limit = int((credit_limit / rate).to_integral_value(rounding=ROUND_DOWN)) if credit_limit and rate > 0 else 0
    if credit_limit is None:
        credit_limit = to_decimal(request_limit) * rate

    return ServiceLimits(
        service=service,
        request_limit=request_limit,
        credit_limit=credit_limit,
        conversion_rate=rate,
        token_limit=row.token_limit or 0,
        max_tokens=row.max_tokens or 0,
        rpm=row.rpm or 0,
        rpd=row.rpd or 0,
        tpm=row.tpm or 0,
        tpd=row.tpd or 0,
    )


def resolve_limits(rows: Iterable[ServiceLimit], policy: Optional[BillingPolicy] = None) -> Dict[str, ServiceLimits]:
    """Normalize feature rows into one ServiceLimits per service (missing services get zero limits)"""
    policy = policy or get_billing_policy()
    by_service = {row.service: row for row in rows}
    return {service: _normalize_limit(service, by_service.get(service), policy) for service in Service.ALL}


def limits_from_snapshot(snapshot: Dict[str, Any]) -> Dict[str, ServiceLimits]:
    """Rebuild limits stored in a CreditPurchase snapshot"""
    stored = snapshot.get("limits") or {}
    limits = {}
    for service in Service.ALL:
        data = dict(stored.get(service) or {"service": service})
        data["service"] = service
        limits[service] = ServiceLimits(**data)
    return limits


def split_package_credits(credit_amount, policy: Optional[BillingPolicy] = None) -> Dict[str, Decimal]:
    """Split a package's credits between services, proportional to their conversion rates"""
    policy = policy or get_billing_policy()
    credit_amount = to_decimal(credit_amount)
    ai_credits = floor2(credit_amount * policy.conversion_rate(Service.AI_API) / policy.total_conversion_rate)
    return {
        Service.AI_API: ai_credits,
        Service.CRAWL_API: credit_amount - ai_credits,
    }


def build_limit_rows(credit_amount, policy: Optional[BillingPolicy] = None, ai_rate_limits: Optional[Dict[str, int]] = None) -> List[ServiceLimit]:
    """Feature rows granting ``credit_amount`` split across services"""
    policy = policy or get_billing_policy()
    ai_rate_limits = ai_rate_limits or DEFAULT_AI_RATE_LIMITS
    rows = []
    for service, credits in split_package_credits(credit_amount, policy).items():
        rate = policy.conversion_rate(service)
        requests = int((credits / rate).to_integral_value(rounding=ROUND_DOWN)) if rate > 0 else 0
        row = ServiceLimit(service=service, request_limit=requests, credit_limit=credits, conversion_rate=rate)
        if service == Service.AI_API:
            row.rpm = ai_rate_limits.get("rpm")
            row.rpd = ai_rate_limits.get("rpd")
            row.tpm = ai_rate_limits.get("tpm")
            row.tpd = ai_rate_limits.get("tpd")
        rows.append(row)
    return rows


def get_plan_by_name(name: str, db: Session) -> Plan:
    """Get an active plan by name, raising InvalidPlan if there is none"""
    if not name:
        raise InvalidPlan("Plan name is required")
    plan = db.query(Plan).filter(Plan.name == name.upper()).first()
    if not plan or not plan.is_active:
        raise InvalidPlan(f"Unknown or inactive plan: {name}")
    return plan


def get_plan_limits(plan: Plan, policy: Optional[BillingPolicy] = None) -> Dict[str, ServiceLimits]:
    return resolve_limits(plan.limits, policy)


def get_package(package_ref, db: Session) -> CreditPackage:
    """Get an active credit package by id or by name"""
    query = db.query(CreditPackage)
    if isinstance(package_ref, int):
        package = query.filter(CreditPackage.id == package_ref).first()
    else:
        package = query.filter(CreditPackage.name == str(package_ref).upper()).first()
    if not package or not package.is_active:
        raise PackageNotFound(f"Unknown or inactive credit package: {package_ref}")
    return package


def get_package_feature(package_id: int, db: Session, policy: Optional[BillingPolicy] = None) -> Dict[str, ServiceLimits]:
    """Per-service limits of a credit package"""
    return resolve_limits(get_package(package_id, db).limits, policy)


def _limits_to_dict(limits: Dict[str, ServiceLimits]) -> Dict[str, Dict[str, Any]]:
    return {
        service: {
            "request_limit": limit.request_limit,
            "credit_limit": as_number(limit.credit_limit),
            "conversion_rate": as_number(limit.conversion_rate),
            "rpm": limit.rpm,
            "rpd": limit.rpd,
        }
        for service, limit in limits.items()
    }


def list_plans(db: Session) -> List[Dict[str, Any]]:
    """Active plans, cheapest first"""
    plans = db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.price, Plan.id).all()
    return [
        {
            "id": plan.id,
            "name": plan.name,
            "description": plan.description,
            "price": as_number(plan.price),
            "currency": plan.currency,
            "trial_days": plan.trial_days,
            "credit_amount": as_number(plan.credit_amount),
            "limits": _limits_to_dict(get_plan_limits(plan)),
        }
        for plan in plans
    ]


def list_packages(db: Session) -> List[Dict[str, Any]]:
    packages = db.query(CreditPackage).filter(CreditPackage.is_active.is_(True)).order_by(CreditPackage.credit_amount).all()
    return [
        {
            "id": package.id,
            "name": package.name,
            "description": package.description,
            "credit_amount": as_number(package.credit_amount),
            "price": as_number(package.price),
            "currency": package.currency,
            "limits": _limits_to_dict(resolve_limits(package.limits)),
        }
        for package in packages
    ]


def ensure_default_catalog(db: Session, policy: Optional[BillingPolicy] = None) -> Dict[str, int]:
    """
    Create the standard plans and credit packages that do not exist yet.

    Existing rows are left untouched so that prices changed by an operator
    survive re-seeding. Does not commit.

    Returns:
        Counts of created plans and packages
    """
    policy = policy or get_billing_policy()
    created = {"plans": 0, "packages": 0}

    for name, (price, trial_days, credits, description) in STANDARD_PLANS.items():
        if db.query(Plan).filter(Plan.name == name).first():
            continue
        plan = Plan(
            name=name,
            description=description,
            price=price,
            trial_days=trial_days,
            credit_amount=credits,
            limits=build_limit_rows(credits, policy),
        )
        db.add(plan)
        created["plans"] += 1
        logger.info(f"Seeded plan {name} ({credits} credits, ${price}/month)")

    for name, (credits, price) in STANDARD_PACKAGES.items():
        if db.query(CreditPackage).filter(CreditPackage.name == name).first():
            continue
        package = CreditPackage(
            name=name,
            description=f"{credits} credits",
            credit_amount=credits,
            price=price,
            limits=build_limit_rows(credits, policy),
        )
        db.add(package)
        created["packages"] += 1
        logger.info(f"Seeded credit package {name} ({credits} credits, ${price})")

    db.flush()
    return created
