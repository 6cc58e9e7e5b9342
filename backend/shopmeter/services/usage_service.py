"""Usage service - waterfall deduction across subscription and credit package buckets"""
from datetime import datetime
from decimal import Decimal
from functools import partial
from typing import Optional, Dict, Any, List
import logging

from pydantic import BaseModel
from sqlalchemy.orm import Session

from shopmeter.core.constants import LIVE_STATUSES, NotificationType, PackageStatus, Service
from shopmeter.core.errors import InsufficientCredits, InvalidUsage, MissingParameters
from shopmeter.core.metrics import (
    insufficient_credits_counter, package_expired_counter, usage_units_deducted_counter,
)
from shopmeter.core.policy import BillingPolicy, get_billing_policy
from shopmeter.db.transactions import run_in_transaction
from shopmeter.models.credit_purchase import CreditPurchase
from shopmeter.models.shop import Shop
from shopmeter.models.subscription import Subscription
from shopmeter.models.usage import Usage
from shopmeter.services.catalog_service import get_plan_limits, limits_from_snapshot
from shopmeter.services.email_service import send_usage_email
from shopmeter.services.idempotency_service import check_idempotency, record_idempotency_key
from shopmeter.services.notification_service import decide_usage_notification, notify
from shopmeter.services.shop_service import get_shop, resolve_contact_email
from shopmeter.services.subscription_service import ensure_subscription_usage, reconcile_current_subscription
from shopmeter.services.usage_ledger import (
    CallDetail, create_usage, credit_totals, deduct_from_bucket, ensure_detail, is_exhausted, summarize_detail,
    usage_exhausted,
)
from shopmeter.utils.amounts import ZERO, as_number, percentage, to_decimal
from shopmeter.utils.dates import isoformat, utcnow

logger = logging.getLogger("usage")

SUBSCRIPTION_BUCKET = "subscription"
PACKAGE_BUCKET = "package"


class BucketDeduction(BaseModel):
    bucket: str
    source_id: int
    requests: int
    credits: Decimal


class WaterfallResult(BaseModel):
    """Outcome of spreading one consumption event over the shop's buckets"""
    service: str
    requested: int
    unsatisfied: int = 0
    deductions: List[BucketDeduction] = []

    @property
    def deducted(self) -> int:
        return self.requested - self.unsatisfied

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "requested": self.requested,
            "deducted": self.deducted,
            "unsatisfied": self.unsatisfied,
            "deductions": [
                {
                    "bucket": deduction.bucket,
                    "source_id": deduction.source_id,
                    "requests": deduction.requests,
                    "credits": as_number(deduction.credits),
                }
                for deduction in self.deductions
            ],
        }


def active_purchases(db: Session, shop_id: int) -> List[CreditPurchase]:
    """Active credit packages of a shop in spend order (oldest first)"""
    return (
        db.query(CreditPurchase)
        .filter(CreditPurchase.shop_id == shop_id, CreditPurchase.status == PackageStatus.ACTIVE)
        .order_by(CreditPurchase.created_at, CreditPurchase.id)
        .all()
    )


def ensure_purchase_usage(db: Session, purchase: CreditPurchase, now: Optional[datetime] = None) -> Usage:
    """The purchase's Usage aggregate, seeded from its snapshot on first use"""
    if purchase.usage is None:
        limits = limits_from_snapshot(purchase.purchase_snapshot or {})
        purchase.usage = create_usage(db, purchase.shop_id, limits, now)
        db.flush()
    return purchase.usage


def _send_usage_notice(
    db: Session,
    shop: Shop,
    notification_type: str,
    title: str,
    message: str,
    metadata: Dict[str, Any],
    now: datetime,
    policy: BillingPolicy,
    dedup_key: Optional[str] = None,
):
    recipient = resolve_contact_email(shop, None, db)
    sender = None
    if recipient:
        data = {"shop_name": shop.name, "title": title, "message": message}
        if "percentage_used" in metadata:
            data["percentage_used"] = metadata["percentage_used"]
        sender = partial(send_usage_email, recipient, data, notification_type)
    return notify(
        db, shop.id, notification_type, title, message,
        metadata=metadata, dedup_key=dedup_key, send_email=sender, now=now, policy=policy,
    )


def _expire_package(db: Session, shop: Shop, purchase: CreditPurchase, now: datetime, policy: BillingPolicy) -> None:
    purchase.status = PackageStatus.EXPIRED
    purchase.expired_at = now
    purchase.updated_at = now
    db.flush()
    package_expired_counter.inc()

    name = (purchase.purchase_snapshot or {}).get("name", "Credit package")
    remaining = [
        {"id": other.id, "name": (other.purchase_snapshot or {}).get("name")}
        for other in active_purchases(db, shop.id)
    ]
    logger.info(f"Credit package {purchase.id} ({name}) of shop {shop.name} used up; {len(remaining)} still active")
    _send_usage_notice(
        db, shop, NotificationType.PACKAGE_EXPIRED,
        f"{name} credits used up",
        f"All credits of your {name} package have been used. Active packages left: {len(remaining)}.",
        {"purchase_id": purchase.id, "package": name, "remaining_packages": remaining},
        now, policy, dedup_key=f"package:{purchase.id}",
    )


def run_waterfall(
    db: Session,
    shop: Shop,
    service: str,
    units: int,
    call_detail: Optional[CallDetail] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> WaterfallResult:
    """
    Deduct ``units`` requests of ``service``: subscription allowance first,
    then active credit packages oldest-first.

    Runs inside the caller's transaction and never commits. A shortfall is
    reported in ``unsatisfied``; the caller decides whether to roll back.
    """
    policy = policy or get_billing_policy()
    now = now or utcnow()
    result = WaterfallResult(service=service, requested=units)
    remaining = units

    subscription = reconcile_current_subscription(db, shop, now, policy)
    if subscription.status in LIVE_STATUSES:
        usage = ensure_subscription_usage(db, subscription, now, policy)
        detail = ensure_detail(db, usage, service, get_plan_limits(subscription.plan, policy), now)
        requests, credits = deduct_from_bucket(detail, remaining, call_detail, now, policy)
        if requests:
            remaining -= requests
            result.deductions.append(BucketDeduction(
                bucket=SUBSCRIPTION_BUCKET, source_id=subscription.id, requests=requests, credits=credits,
            ))
            usage_units_deducted_counter.labels(service=service, bucket=SUBSCRIPTION_BUCKET).inc(requests)
            if is_exhausted(detail):
                _send_usage_notice(
                    db, shop, NotificationType.SUBSCRIPTION_EXPIRED,
                    f"{subscription.plan.name} {service} credits used up",
                    f"Your {subscription.plan.name} allowance for {service} is used up; "
                    f"further usage draws on credit packages.",
                    {"subscription_id": subscription.id, "service": service},
                    now, policy, dedup_key=f"subscription:{subscription.id}:{service}",
                )

    for purchase in active_purchases(db, shop.id):
        if remaining <= 0:
            break
        usage = ensure_purchase_usage(db, purchase, now)
        limits = limits_from_snapshot(purchase.purchase_snapshot or {})
        detail = ensure_detail(db, usage, service, limits, now)
        requests, credits = deduct_from_bucket(detail, remaining, call_detail, now, policy)
        if not requests:
            continue
        remaining -= requests
        result.deductions.append(BucketDeduction(
            bucket=PACKAGE_BUCKET, source_id=purchase.id, requests=requests, credits=credits,
        ))
        usage_units_deducted_counter.labels(service=service, bucket=PACKAGE_BUCKET).inc(requests)

        granted, used = credit_totals(usage)
        # Leftover credits smaller than one request cannot be spent either
        if granted > ZERO and (used >= granted or usage_exhausted(usage)):
            _expire_package(db, shop, purchase, now, policy)

    result.unsatisfied = remaining
    db.flush()
    logger.info(
        f"Deducted {result.deducted}/{units} {service} request(s) for shop {shop.name} "
        f"across {len(result.deductions)} bucket(s)"
    )
    return result


def deduct(
    db: Session,
    shop: Shop,
    service: str,
    units: int,
    call_detail: Optional[CallDetail] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> int:
    """Waterfall deduction returning only the units that could not be covered"""
    return run_waterfall(db, shop, service, units, call_detail, now, policy).unsatisfied


def _live_buckets(db: Session, shop: Shop, now: datetime, policy: BillingPolicy):
    subscription = reconcile_current_subscription(db, shop, now, policy)
    usages = []
    if subscription.status in LIVE_STATUSES and subscription.usage is not None:
        usages.append(subscription.usage)
    purchases = active_purchases(db, shop.id)
    usages.extend(purchase.usage for purchase in purchases if purchase.usage is not None)
    return subscription, purchases, usages


def combined_totals(usages: List[Usage], policy: Optional[BillingPolicy] = None) -> Dict[str, Any]:
    """Granted/used credits over several buckets and the matching threshold flags"""
    policy = policy or get_billing_policy()
    granted, used = ZERO, ZERO
    for usage in usages:
        bucket_granted, bucket_used = credit_totals(usage)
        granted += bucket_granted
        used += bucket_used
    percentage_used = percentage(used, granted)
    return {
        "credits_granted": granted,
        "credits_used": used,
        "credits_remaining": granted - used,
        "percentage_used": percentage_used,
        "approaching_limit": percentage_used >= policy.approaching_limit_percent,
        "over_limit": percentage_used >= policy.over_limit_percent,
    }


def _notify_thresholds(db: Session, shop: Shop, totals: Dict[str, Any], now: datetime, policy: BillingPolicy) -> None:
    notification_type = decide_usage_notification(totals["percentage_used"], policy)
    if notification_type is None:
        return
    pct = as_number(totals["percentage_used"])
    if notification_type == NotificationType.USAGE_OVER_LIMIT:
        title = "Usage limit reached"
        message = "You have used all of your credits. Buy a credit package or upgrade your plan to keep going."
    else:
        title = "Approaching usage limit"
        message = f"You have used {pct}% of your credits."
    _send_usage_notice(
        db, shop, notification_type, title, message,
        {"percentage_used": pct, "credits_granted": as_number(totals["credits_granted"]),
         "credits_used": as_number(totals["credits_used"])},
        now, policy,
    )


def _record_shortfall(shop_name: str, error: InsufficientCredits, db: Session,
                      now: Optional[datetime], policy: BillingPolicy) -> None:
    def work(session: Session):
        shop = get_shop(shop_name, session)
        _send_usage_notice(
            session, shop, NotificationType.USAGE_OVER_LIMIT,
            "Usage limit reached",
            f"{error.unsatisfied} of {error.requested} {error.service} request(s) could not be covered by your credits.",
            {"service": error.service, "requested": error.requested, "unsatisfied": error.unsatisfied},
            now or utcnow(), policy,
        )

    run_in_transaction(db, "report_usage.over_limit", work)


def report_usage(
    shop_name: str,
    service: str,
    units: int,
    db: Session,
    call_detail: Optional[CallDetail] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Dict[str, Any]:
    """
    Record consumption of ``units`` requests of a service.

    All or nothing: when the buckets cannot cover every unit, the deduction
    is rolled back, a USAGE_OVER_LIMIT notice is recorded and
    InsufficientCredits is raised. A repeated ``idempotency_key`` returns
    the first outcome without deducting again.

    Raises:
        MissingParameters, InvalidUsage, ShopNotFound, InsufficientCredits,
        IdempotencyConflict, TransactionFailed
    """
    if not shop_name:
        raise MissingParameters("shop")
    if service not in Service.ALL:
        raise InvalidUsage(f"Unknown service: {service}")
    if not isinstance(units, int) or units <= 0:
        raise InvalidUsage("Units must be a positive integer")
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        replay = check_idempotency(shop.id, idempotency_key, ("usage",), session)
        if replay:
            replay["replayed"] = True
            return replay

        result = run_waterfall(session, shop, service, units, call_detail, moment, policy)
        if result.unsatisfied:
            raise InsufficientCredits(service, units, result.unsatisfied)

        _, _, usages = _live_buckets(session, shop, moment, policy)
        totals = combined_totals(usages, policy)
        _notify_thresholds(session, shop, totals, moment, policy)

        outcome = result.to_dict()
        outcome["shop"] = shop.name
        outcome["percentage_used"] = as_number(totals["percentage_used"])
        record_idempotency_key(shop.id, idempotency_key, "usage", outcome, session)
        outcome["replayed"] = False
        return outcome

    try:
        return run_in_transaction(db, "report_usage", work)
    except InsufficientCredits as e:
        insufficient_credits_counter.labels(service=service).inc()
        logger.warning(f"Denied {units} {service} request(s) for shop {shop_name}: {e}")
        _record_shortfall(shop_name, e, db, now, policy)
        raise


def _serialize_services(usage: Optional[Usage]) -> Dict[str, Any]:
    return {service: summarize_detail(usage.detail_for(service) if usage else None) for service in Service.ALL}


def serialize_purchase(purchase: CreditPurchase) -> Dict[str, Any]:
    snapshot = purchase.purchase_snapshot or {}
    granted, used = credit_totals(purchase.usage)
    payment = purchase.payments[-1] if purchase.payments else None
    return {
        "id": purchase.id,
        "package": snapshot.get("name"),
        "credit_amount": as_number(to_decimal(snapshot.get("credit_amount"))),
        "price": as_number(to_decimal(snapshot.get("price"))),
        "amount_paid": as_number(payment.amount) if payment else None,
        "status": purchase.status,
        "credits_granted": as_number(granted),
        "credits_used": as_number(used),
        "services": _serialize_services(purchase.usage),
        "created_at": isoformat(purchase.created_at),
        "expired_at": isoformat(purchase.expired_at),
    }


def get_usage_state(shop_name: str, db: Session, now: Optional[datetime] = None,
                    policy: Optional[BillingPolicy] = None) -> Dict[str, Any]:
    """Per-bucket counters and combined totals for a shop"""
    if not shop_name:
        raise MissingParameters("shop")
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        subscription, purchases, usages = _live_buckets(session, shop, moment, policy)
        expired = (
            session.query(CreditPurchase)
            .filter(CreditPurchase.shop_id == shop.id, CreditPurchase.status == PackageStatus.EXPIRED)
            .order_by(CreditPurchase.created_at, CreditPurchase.id)
            .all()
        )
        totals = combined_totals(usages, policy)
        return {
            "shop": shop.name,
            "subscription": _serialize_subscription_bucket(subscription),
            "packages": [serialize_purchase(purchase) for purchase in purchases],
            "expired_packages": [serialize_purchase(purchase) for purchase in expired],
            "totals": {key: as_number(value) if isinstance(value, Decimal) else value for key, value in totals.items()},
        }

    return run_in_transaction(db, "get_usage_state", work)


def _serialize_subscription_bucket(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "plan": subscription.plan.name,
        "status": subscription.status,
        "start_date": isoformat(subscription.start_date),
        "end_date": isoformat(subscription.end_date),
        "services": _serialize_services(subscription.usage),
    }
