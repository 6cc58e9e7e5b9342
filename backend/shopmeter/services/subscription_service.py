"""Subscription service - lifecycle state machine and cycle reconciliation"""
from datetime import datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import Optional, Dict, Any, List
import logging

from pydantic import BaseModel
from sqlalchemy.orm import Session

from shopmeter.core.constants import (
    BillingAction, BillingType, LIVE_STATUSES, NotificationType, PaymentStatus,
    SubscriptionStatus, TERMINATED_STATUSES,
)
from shopmeter.core.errors import (
    AlreadyTerminated, DuplicateStatusUpdate, InvalidDates, InvalidPlan, InvalidStatus,
    MissingParameters, PaymentNotFound, SubscriptionFallbackFailed, SubscriptionIdMismatch,
    SubscriptionNotFound,
)
from shopmeter.core.metrics import subscription_transitions_counter
from shopmeter.core.policy import BillingPolicy, get_billing_policy
from shopmeter.db.transactions import run_in_transaction
from shopmeter.models.payment import Payment
from shopmeter.models.plan import Plan
from shopmeter.models.shop import Shop
from shopmeter.models.subscription import Subscription
from shopmeter.models.usage import Usage
from shopmeter.services.catalog_service import get_plan_by_name, get_plan_limits
from shopmeter.services.email_service import send_subscription_email, send_usage_email
from shopmeter.services.idempotency_service import check_idempotency, record_idempotency_key
from shopmeter.services.notification_service import notify, should_notify_trial_ending
from shopmeter.services.promotion_service import PriceQuote, apply_adjustment, get_billing_adjustments, quote_price
from shopmeter.services.shop_service import create_shop, get_shop, resolve_contact_email
from shopmeter.services.usage_ledger import create_usage, reset_usage
from shopmeter.utils.amounts import ZERO, as_number, money, to_decimal
from shopmeter.utils.dates import add_months, as_utc, cycle_fraction_elapsed, days_until, isoformat, utcnow

logger = logging.getLogger("billing")

# Statuses that have a subscription email template
EMAIL_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL, SubscriptionStatus.RENEWING,
    SubscriptionStatus.ON_HOLD, SubscriptionStatus.CANCELLED, SubscriptionStatus.PRORATE_CANCELED,
    SubscriptionStatus.TERMINATED, SubscriptionStatus.EXPIRED, SubscriptionStatus.FROZEN,
})

# Requested statuses that mean "stop this subscription"
CANCEL_REQUESTS = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.ON_HOLD,
    SubscriptionStatus.PRORATE_CANCELED,
    SubscriptionStatus.TERMINATED,
})


class CycleStatus(BaseModel):
    """Where a subscription stands in its current cycle"""
    days_until_expiration: int
    is_expired: bool
    is_trial: bool = False
    days_until_trial_ends: Optional[int] = None
    needs_conversion: bool = False
    should_notify_trial_ending: bool = False


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def _load_live_subscription(db: Session, shop_id: int) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.shop_id == shop_id, Subscription.status.in_(LIVE_STATUSES))
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def _open_subscriptions(db: Session, shop_id: int) -> List[Subscription]:
    """Every subscription of a shop that has not reached a terminal status"""
    return (
        db.query(Subscription)
        .filter(Subscription.shop_id == shop_id, Subscription.status.notin_(TERMINATED_STATUSES))
        .all()
    )


def get_subscription(subscription_id: int, db: Session) -> Subscription:
    subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if not subscription:
        raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
    return subscription


def _latest_payment(subscription: Subscription, status: Optional[str] = None) -> Optional[Payment]:
    for payment in reversed(subscription.payments):
        if status is None or payment.status == status:
            return payment
    return None


def _has_prior_trial(db: Session, shop_id: int, plan_id: int) -> bool:
    return db.query(Subscription.id).filter(
        Subscription.shop_id == shop_id,
        Subscription.plan_id == plan_id,
        Subscription.has_trial.is_(True),
    ).first() is not None


def _is_default_plan(plan: Plan, policy: BillingPolicy) -> bool:
    return plan.name == policy.default_plan_name


# ---------------------------------------------------------------------------
# Building blocks (run inside the caller's transaction, never commit)
# ---------------------------------------------------------------------------

def _set_status(subscription: Subscription, status: str, now: datetime) -> None:
    if subscription.status != status:
        subscription_transitions_counter.labels(status=status).inc()
        logger.info(f"Subscription {subscription.id}: {subscription.status} -> {status}")
    subscription.status = status
    subscription.status_updated_at = now
    subscription.updated_at = now


def _retire(subscription: Subscription, status: str, reason: Optional[str], now: datetime) -> None:
    """Move a subscription to a terminal status and close its cycle at ``now``"""
    _set_status(subscription, status, now)
    subscription.end_date = max(as_utc(subscription.start_date), now)
    subscription.canceled_at = now
    subscription.cancel_reason = reason


def _retire_other_live(db: Session, subscription: Subscription, now: datetime, reason: str) -> None:
    live = _load_live_subscription(db, subscription.shop_id)
    if live is not None and live.id != subscription.id:
        _retire(live, SubscriptionStatus.CANCELLED, reason, now)
        db.flush()


def ensure_subscription_usage(db: Session, subscription: Subscription, now: Optional[datetime] = None,
                              policy: Optional[BillingPolicy] = None) -> Usage:
    """The subscription's Usage aggregate, created from plan limits on first use"""
    if subscription.usage is None:
        limits = get_plan_limits(subscription.plan, policy)
        subscription.usage = create_usage(db, subscription.shop_id, limits, now)
        db.flush()
    return subscription.usage


def _regrant_usage(db: Session, subscription: Subscription, now: datetime, policy: BillingPolicy) -> None:
    usage = ensure_subscription_usage(db, subscription, now, policy)
    reset_usage(db, usage, get_plan_limits(subscription.plan, policy), now)


def _create_payment(
    db: Session,
    subscription: Subscription,
    quote: PriceQuote,
    status: str,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    external_transaction_id: Optional[str] = None,
) -> Payment:
    payment = Payment(
        shop_id=subscription.shop_id,
        subscription=subscription,
        billing_type=BillingType.SUBSCRIPTION,
        status=status,
        list_price=quote.list_price,
        discount_amount=quote.discount_amount,
        amount=quote.final_price,
        adjusted_amount=quote.final_price,
        refunded_amount=ZERO,
        currency=subscription.plan.currency,
        billing_period_start=period_start,
        billing_period_end=period_end,
        external_transaction_id=external_transaction_id,
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    db.flush()
    apply_adjustment(payment, quote, db)
    logger.info(
        f"Payment {payment.id} ({status}) for subscription {subscription.id}: "
        f"{payment.amount} {payment.currency} (list {payment.list_price})"
    )
    return payment


def _record_cycle_payment(db: Session, subscription: Subscription, now: datetime,
                          external_transaction_id: Optional[str] = None) -> Optional[Payment]:
    """SUCCEEDED payment for the subscription's current cycle (paid plans only)"""
    plan = subscription.plan
    if to_decimal(plan.price) <= ZERO:
        return None
    quote = quote_price(subscription.shop_id, plan.price, db, plan_id=plan.id, now=now)
    return _create_payment(
        db, subscription, quote, PaymentStatus.SUCCEEDED,
        as_utc(subscription.start_date), as_utc(subscription.end_date), now,
        external_transaction_id=external_transaction_id,
    )


def _start_subscription(
    db: Session,
    shop: Shop,
    plan: Plan,
    now: datetime,
    policy: BillingPolicy,
    external_transaction_id: Optional[str] = None,
    allow_trial: bool = True,
) -> Subscription:
    """Create a live subscription with a freshly seeded allowance"""
    usage = create_usage(db, shop.id, get_plan_limits(plan, policy), now)
    on_trial = allow_trial and (plan.trial_days or 0) > 0 and not _has_prior_trial(db, shop.id, plan.id)

    subscription = Subscription(
        shop_id=shop.id,
        plan=plan,
        usage=usage,
        external_subscription_id=external_transaction_id,
        start_date=now,
        status_updated_at=now,
        created_at=now,
        updated_at=now,
    )
    if on_trial:
        trial_end = now + timedelta(days=plan.trial_days)
        subscription.status = SubscriptionStatus.TRIAL
        subscription.end_date = trial_end
        subscription.has_trial = True
        subscription.trial_start_date = now
        subscription.trial_end_date = trial_end
    else:
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.end_date = add_months(now, 1)

    if as_utc(subscription.end_date) < as_utc(subscription.start_date):
        raise InvalidDates("Subscription cycle ends before it starts")

    db.add(subscription)
    db.flush()
    subscription_transitions_counter.labels(status=subscription.status).inc()

    if to_decimal(plan.price) > ZERO:
        quote = quote_price(shop.id, plan.price, db, plan_id=plan.id, now=now)
        if on_trial:
            # First paid cycle starts when the trial ends
            _create_payment(
                db, subscription, quote, PaymentStatus.SCHEDULED,
                subscription.trial_end_date, add_months(subscription.trial_end_date, 1), now,
                external_transaction_id=external_transaction_id,
            )
        else:
            _create_payment(
                db, subscription, quote, PaymentStatus.SUCCEEDED,
                subscription.start_date, subscription.end_date, now,
                external_transaction_id=external_transaction_id,
            )

    logger.info(f"Started {subscription.status} subscription {subscription.id} on {plan.name} for shop {shop.name}")
    return subscription


def create_default_subscription(db: Session, shop: Shop, now: Optional[datetime] = None,
                                policy: Optional[BillingPolicy] = None) -> Subscription:
    """Put a shop on the default (FREE) plan"""
    policy = policy or get_billing_policy()
    now = now or utcnow()
    plan = get_plan_by_name(policy.default_plan_name, db)
    return _start_subscription(db, shop, plan, now, policy, allow_trial=False)


def _email_data(shop: Shop, subscription: Subscription, **extra) -> Dict[str, Any]:
    end_date = as_utc(subscription.end_date)
    data = {
        "shop_name": shop.name,
        "plan_name": subscription.plan.name,
        "end_date": end_date.date().isoformat() if end_date else None,
    }
    data.update(extra)
    return data


def _notify_status(
    db: Session,
    shop: Shop,
    subscription: Subscription,
    status: str,
    title: str,
    message: str,
    now: datetime,
    email: Optional[str] = None,
    dedup_key: Optional[str] = None,
    **extra,
) -> None:
    recipient = resolve_contact_email(shop, email, db) if status in EMAIL_STATUSES else None
    sender = None
    if recipient:
        sender = partial(send_subscription_email, recipient, _email_data(shop, subscription, **extra), status)
    notify(
        db, shop.id, NotificationType.SUBSCRIPTION_STATUS, title, message,
        metadata={"subscription_id": subscription.id, "status": status, "plan": subscription.plan.name, **extra},
        dedup_key=dedup_key,
        deduplicate=dedup_key is not None,
        send_email=sender,
        now=now,
    )


def _notify_trial(db: Session, shop: Shop, subscription: Subscription, notification_type: str,
                  title: str, message: str, dedup_key: str, now: datetime, policy: BillingPolicy) -> None:
    recipient = resolve_contact_email(shop, None, db)
    sender = None
    if recipient:
        data = _email_data(shop, subscription, title=title, message=message)
        sender = partial(send_usage_email, recipient, data, notification_type)
    notify(
        db, shop.id, notification_type, title, message,
        metadata={"subscription_id": subscription.id, "plan": subscription.plan.name,
                  "trial_end_date": isoformat(subscription.trial_end_date)},
        dedup_key=dedup_key,
        send_email=sender,
        now=now,
        policy=policy,
    )


# ---------------------------------------------------------------------------
# Cycle reconciliation
# ---------------------------------------------------------------------------

def check_and_manage_cycle(subscription: Subscription, now: Optional[datetime] = None,
                           policy: Optional[BillingPolicy] = None) -> CycleStatus:
    """Compute the cycle position of a subscription without changing it"""
    policy = policy or get_billing_policy()
    now = now or utcnow()
    end_date = as_utc(subscription.end_date)

    status = CycleStatus(
        days_until_expiration=days_until(end_date, now),
        is_expired=now > end_date,
    )
    trial_end = as_utc(subscription.trial_end_date)
    if subscription.status == SubscriptionStatus.TRIAL and trial_end is not None:
        days_left = days_until(trial_end, now)
        needs_conversion = now >= trial_end
        status.is_trial = True
        status.days_until_trial_ends = days_left
        status.needs_conversion = needs_conversion
        status.should_notify_trial_ending = not needs_conversion and should_notify_trial_ending(days_left, policy)
    return status


def handle_cycle_transition(
    db: Session,
    shop: Shop,
    subscription: Subscription,
    cycle: CycleStatus,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Subscription:
    """
    Apply the transition a cycle status calls for.

    Returns:
        The shop's live subscription afterwards (a new default one when an
        end-of-cycle cancellation was finalized)
    """
    policy = policy or get_billing_policy()
    now = now or utcnow()

    if cycle.should_notify_trial_ending:
        days = cycle.days_until_trial_ends
        _notify_trial(
            db, shop, subscription, NotificationType.TRIAL_ENDING,
            "Your trial is ending soon",
            f"Your {subscription.plan.name} trial ends in {days} day(s).",
            dedup_key=f"trial-ending:{subscription.id}:{days}", now=now, policy=policy,
        )

    if cycle.needs_conversion:
        _set_status(subscription, SubscriptionStatus.ACTIVE, now)
        subscription.has_trial_ended = True
        subscription.start_date = now
        subscription.end_date = add_months(now, 1)
        scheduled = _latest_payment(subscription, PaymentStatus.SCHEDULED)
        if scheduled is not None:
            scheduled.status = PaymentStatus.SUCCEEDED
            scheduled.billing_period_start = subscription.start_date
            scheduled.billing_period_end = subscription.end_date
            scheduled.updated_at = now
        _regrant_usage(db, subscription, now, policy)
        _notify_trial(
            db, shop, subscription, NotificationType.TRIAL_ENDED,
            "Your trial has ended",
            f"Your {subscription.plan.name} subscription is now active.",
            dedup_key=f"trial-ended:{subscription.id}", now=now, policy=policy,
        )
        return subscription

    if cycle.is_expired and subscription.status == SubscriptionStatus.ACTIVE:
        subscription.start_date = now
        subscription.end_date = add_months(now, 1)
        subscription.updated_at = now
        _regrant_usage(db, subscription, now, policy)
        _record_cycle_payment(db, subscription, now)
        logger.info(f"Auto-renewed subscription {subscription.id} until {isoformat(subscription.end_date)}")
        _notify_status(
            db, shop, subscription, SubscriptionStatus.RENEWING,
            "Subscription renewed",
            f"Your {subscription.plan.name} subscription renewed for a new cycle.",
            now, dedup_key=f"renewal:{subscription.id}:{isoformat(subscription.end_date)}",
        )
        return subscription

    if cycle.is_expired and subscription.status == SubscriptionStatus.ON_HOLD:
        _retire(subscription, SubscriptionStatus.CANCELLED, subscription.cancel_reason, now)
        db.flush()
        fallback = create_default_subscription(db, shop, now, policy)
        _notify_status(
            db, shop, subscription, SubscriptionStatus.EXPIRED,
            "Subscription ended",
            f"Your {subscription.plan.name} subscription ended; the shop is now on the {fallback.plan.name} plan.",
            now,
        )
        return fallback

    return subscription


def reconcile_current_subscription(db: Session, shop: Shop, now: Optional[datetime] = None,
                                   policy: Optional[BillingPolicy] = None) -> Subscription:
    """Load (or create) the shop's live subscription and catch up missed cycle boundaries"""
    policy = policy or get_billing_policy()
    now = now or utcnow()
    subscription = _load_live_subscription(db, shop.id)
    if subscription is None:
        logger.warning(f"Shop {shop.name} has no live subscription, creating {policy.default_plan_name} default")
        subscription = create_default_subscription(db, shop, now, policy)
    cycle = check_and_manage_cycle(subscription, now, policy)
    return handle_cycle_transition(db, shop, subscription, cycle, now, policy)


def get_current_subscription(shop_name: str, db: Session, now: Optional[datetime] = None,
                             policy: Optional[BillingPolicy] = None) -> Subscription:
    """The single read path: the shop's live subscription after reconciliation"""
    if not shop_name:
        raise MissingParameters("shop")

    def work(session: Session) -> Subscription:
        shop = get_shop(shop_name, session)
        return reconcile_current_subscription(session, shop, now or utcnow(), policy)

    return run_in_transaction(db, "get_current_subscription", work)


def onboard_shop(shop_name: str, db: Session, email: Optional[str] = None,
                 owner_name: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Create a shop and put it on the default plan"""
    if not shop_name:
        raise MissingParameters("shop")

    def work(session: Session):
        shop = create_shop(shop_name, session, email=email, owner_name=owner_name)
        subscription = reconcile_current_subscription(session, shop, now or utcnow())
        return {"shop_id": shop.id, "shop": shop.name, "subscription_id": subscription.id,
                "plan": subscription.plan.name, "status": subscription.status}

    return run_in_transaction(db, "onboard_shop", work)


# ---------------------------------------------------------------------------
# Caller-facing transitions
# ---------------------------------------------------------------------------

def _require(**params) -> None:
    missing = [name for name, value in params.items() if value in (None, "")]
    if missing:
        raise MissingParameters(*missing)


def _snapshot(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "shop_id": subscription.shop_id,
        "status": subscription.status,
        "end_date": as_utc(subscription.end_date),
    }


def _restore_previous_subscription(db: Session, previous: Dict[str, Any], original: BaseException) -> None:
    """Best-effort compensation after a failed plan change: bring the old subscription back"""
    logger.error(f"Subscription change failed ({original}); restoring subscription {previous['id']}")

    def work(session: Session):
        subscription = get_subscription(previous["id"], session)
        live = _load_live_subscription(session, subscription.shop_id)
        if live is not None and live.id != subscription.id:
            logger.warning(f"Shop {subscription.shop_id} already has live subscription {live.id}, not restoring")
            return
        restored_status = previous["status"] if previous["status"] in LIVE_STATUSES else SubscriptionStatus.ACTIVE
        _set_status(subscription, restored_status, utcnow())
        subscription.end_date = previous["end_date"]
        subscription.canceled_at = None
        subscription.cancel_reason = None

    try:
        run_in_transaction(db, "subscribe.compensate", work)
    except Exception as fallback_error:
        logger.error(f"Could not restore subscription {previous['id']}: {fallback_error}", exc_info=True)
        raise SubscriptionFallbackFailed(original, fallback_error) from original
    logger.info(f"Restored subscription {previous['id']} after failed change")


def subscribe(
    shop_name: str,
    plan_name: str,
    external_transaction_id: str,
    db: Session,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
    previous: Optional[Dict[str, Any]] = None,
) -> Subscription:
    """
    Start a subscription on a plan, replacing whatever the shop had.

    Args:
        shop_name: Shop domain
        plan_name: Plan to subscribe to
        external_transaction_id: Opaque reference from the billing confirmation flow;
            a replayed id returns the subscription it already produced
        db: Database session
        email: Associated user to notify (defaults to the shop contact)
        previous: Snapshot of a subscription cancelled by ``update`` that must be
            restored if this call fails

    Raises:
        MissingParameters, ShopNotFound, InvalidPlan, IdempotencyConflict,
        TransactionFailed, SubscriptionFallbackFailed
    """
    _require(shop=shop_name, plan=plan_name, external_transaction_id=external_transaction_id)
    policy = policy or get_billing_policy()
    operation = "update" if previous else "subscribe"

    def work(session: Session) -> Subscription:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        replay = check_idempotency(shop.id, external_transaction_id, ("subscribe", "update"), session)
        if replay:
            return get_subscription(replay["subscription_id"], session)

        plan = get_plan_by_name(plan_name, session)
        for existing in _open_subscriptions(session, shop.id):
            _retire(existing, SubscriptionStatus.CANCELLED, f"Replaced by {plan.name} subscription", moment)
        session.flush()

        subscription = _start_subscription(session, shop, plan, moment, policy, external_transaction_id)
        record_idempotency_key(shop.id, external_transaction_id, operation, {"subscription_id": subscription.id}, session)

        latest = _latest_payment(subscription)
        _notify_status(
            session, shop, subscription, subscription.status,
            f"{plan.name} subscription started",
            f"Your {plan.name} subscription is {subscription.status.lower()} until "
            f"{as_utc(subscription.end_date).date().isoformat()}.",
            moment, email=email,
            amount=str(latest.amount) if latest else "0",
        )
        return subscription

    try:
        return run_in_transaction(db, operation, work)
    except Exception as exc:
        if previous is not None:
            _restore_previous_subscription(db, previous, exc)
        raise


def update(
    shop_name: str,
    plan_name: str,
    external_transaction_id: str,
    db: Session,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Subscription:
    """Change plan: cancel the current subscription, then subscribe to the new plan"""
    _require(shop=shop_name, plan=plan_name, external_transaction_id=external_transaction_id)
    policy = policy or get_billing_policy()

    def cancel_current(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        replay = check_idempotency(shop.id, external_transaction_id, ("subscribe", "update"), session)
        if replay:
            return {"replay": get_subscription(replay["subscription_id"], session)}

        plan = get_plan_by_name(plan_name, session)
        current = reconcile_current_subscription(session, shop, moment, policy)
        if current.plan_id == plan.id:
            raise InvalidPlan(f"Shop {shop.name} is already on the {plan.name} plan")

        snapshot = _snapshot(current)
        _retire(current, SubscriptionStatus.CANCELLED, f"Changed to {plan.name}", moment)
        return {"previous": snapshot}

    outcome = run_in_transaction(db, "update.cancel_current", cancel_current)
    if "replay" in outcome:
        return outcome["replay"]
    return subscribe(
        shop_name, plan_name, external_transaction_id, db,
        email=email, now=now, policy=policy, previous=outcome["previous"],
    )


def renew(
    shop_name: str,
    external_transaction_id: str,
    db: Session,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Subscription:
    """Re-grant the allowance of a paid subscription and extend it one month from now"""
    _require(shop=shop_name, external_transaction_id=external_transaction_id)
    policy = policy or get_billing_policy()

    def work(session: Session) -> Subscription:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        replay = check_idempotency(shop.id, external_transaction_id, ("renew",), session)
        if replay:
            return get_subscription(replay["subscription_id"], session)

        subscription = reconcile_current_subscription(session, shop, moment, policy)
        if _is_default_plan(subscription.plan, policy):
            raise SubscriptionNotFound(f"Shop {shop.name} has no paid subscription to renew")

        if subscription.status == SubscriptionStatus.TRIAL:
            subscription.has_trial_ended = True
            scheduled = _latest_payment(subscription, PaymentStatus.SCHEDULED)
            if scheduled is not None:
                scheduled.status = PaymentStatus.CANCELLED
                scheduled.updated_at = moment

        _set_status(subscription, SubscriptionStatus.ACTIVE, moment)
        subscription.canceled_at = None
        subscription.cancel_reason = None
        subscription.start_date = moment
        subscription.end_date = add_months(moment, 1)
        _regrant_usage(session, subscription, moment, policy)
        _record_cycle_payment(session, subscription, moment, external_transaction_id=external_transaction_id)
        record_idempotency_key(shop.id, external_transaction_id, "renew", {"subscription_id": subscription.id}, session)

        _notify_status(
            session, shop, subscription, SubscriptionStatus.RENEWING,
            "Subscription renewed",
            f"Your {subscription.plan.name} subscription renewed until "
            f"{as_utc(subscription.end_date).date().isoformat()}.",
            moment, email=email,
        )
        return subscription

    return run_in_transaction(db, "renew", work)


def _prorate(subscription: Subscription, now: datetime) -> Dict[str, Decimal]:
    """Refund the unused share of the cycle on the latest charged payment"""
    payment = _latest_payment(subscription, PaymentStatus.SUCCEEDED)
    if payment is None:
        scheduled = _latest_payment(subscription, PaymentStatus.SCHEDULED)
        if scheduled is not None:
            # Trial never charged: nothing to refund
            scheduled.status = PaymentStatus.CANCELLED
            scheduled.adjusted_amount = ZERO
            scheduled.updated_at = now
            return {"refund_amount": ZERO, "adjusted_amount": ZERO}
        if to_decimal(subscription.plan.price) > ZERO:
            raise PaymentNotFound(f"No payment to prorate for subscription {subscription.id}")
        return {"refund_amount": ZERO, "adjusted_amount": ZERO}

    elapsed = Decimal(str(cycle_fraction_elapsed(subscription.start_date, subscription.end_date, now)))
    charged = to_decimal(payment.adjusted_amount)
    refund = money(charged * (1 - elapsed))
    payment.refunded_amount = to_decimal(payment.refunded_amount) + refund
    payment.adjusted_amount = charged - refund
    payment.updated_at = now
    logger.info(f"Prorated payment {payment.id}: refund {refund}, adjusted to {payment.adjusted_amount}")
    return {"refund_amount": refund, "adjusted_amount": to_decimal(payment.adjusted_amount)}


def _apply_status_update(
    db: Session,
    subscription: Subscription,
    status: str,
    now: datetime,
    policy: BillingPolicy,
    cancel_reason: Optional[str] = None,
    prorate: bool = False,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    if status not in SubscriptionStatus.ALL:
        raise InvalidStatus(f"Unknown subscription status: {status}")
    if subscription.status in TERMINATED_STATUSES:
        raise AlreadyTerminated(f"Subscription {subscription.id} is already {subscription.status}")

    cycle = check_and_manage_cycle(subscription, now, policy)
    amounts = {}
    if status in CANCEL_REQUESTS:
        if prorate:
            target = SubscriptionStatus.TERMINATED if cycle.is_expired else SubscriptionStatus.PRORATE_CANCELED
        else:
            target = SubscriptionStatus.ON_HOLD
    else:
        target = status

    last_change = as_utc(subscription.status_updated_at)
    if subscription.status == target and last_change is not None and now - last_change < policy.status_debounce:
        raise DuplicateStatusUpdate(
            f"Subscription {subscription.id} was already set to {target} at {last_change.isoformat()}"
        )

    previous_status = subscription.status
    if target in LIVE_STATUSES and previous_status not in LIVE_STATUSES:
        # e.g. a FROZEN subscription whose shop picked up a default meanwhile
        _retire_other_live(db, subscription, now, f"Replaced by subscription {subscription.id}")

    if target == SubscriptionStatus.PRORATE_CANCELED:
        amounts = _prorate(subscription, now)
        _retire(subscription, target, cancel_reason, now)
    elif target == SubscriptionStatus.TERMINATED:
        _set_status(subscription, target, now)
        subscription.canceled_at = now
        subscription.cancel_reason = cancel_reason
    elif target == SubscriptionStatus.ON_HOLD:
        # Access continues until end_date; reconciliation finalizes it
        _set_status(subscription, target, now)
        subscription.canceled_at = now
        subscription.cancel_reason = cancel_reason
    else:
        _set_status(subscription, target, now)
        if target in LIVE_STATUSES:
            subscription.canceled_at = None
            subscription.cancel_reason = None
        elif target in TERMINATED_STATUSES:
            subscription.canceled_at = now
            subscription.cancel_reason = cancel_reason
    db.flush()

    shop = subscription.shop
    extra = {}
    if amounts.get("refund_amount"):
        extra["refund_amount"] = str(amounts["refund_amount"])
    _notify_status(
        db, shop, subscription, target,
        f"Subscription {target.lower().replace('_', ' ')}",
        f"Your {subscription.plan.name} subscription is now {target.lower().replace('_', ' ')}.",
        now, email=email, **extra,
    )

    return {
        "subscription_id": subscription.id,
        "previous_status": previous_status,
        "status": subscription.status,
        "end_date": isoformat(subscription.end_date),
        "refund_amount": as_number(amounts.get("refund_amount")),
        "adjusted_amount": as_number(amounts.get("adjusted_amount")),
    }


def update_subscription_status(
    subscription_id: int,
    status: str,
    db: Session,
    cancel_reason: Optional[str] = None,
    prorate: bool = False,
    external_subscription_id: Optional[str] = None,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Dict[str, Any]:
    """
    Set a subscription's status, guarded against terminal states and duplicate callbacks.

    Cancellation requests (CANCELLED, ON_HOLD, PRORATE_CANCELED, TERMINATED)
    become ON_HOLD unless ``prorate`` is set, in which case the unused share of
    the cycle is refunded and the subscription ends now (PRORATE_CANCELED), or
    TERMINATED when the cycle has already run out.

    Raises:
        MissingParameters, SubscriptionNotFound, SubscriptionIdMismatch,
        AlreadyTerminated, DuplicateStatusUpdate, PaymentNotFound, InvalidStatus
    """
    _require(subscription_id=subscription_id, status=status)
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        subscription = get_subscription(subscription_id, session)
        if (external_subscription_id and subscription.external_subscription_id
                and external_subscription_id != subscription.external_subscription_id):
            raise SubscriptionIdMismatch(
                f"Reference {external_subscription_id} does not match subscription {subscription.id}"
            )
        return _apply_status_update(
            session, subscription, status, now or utcnow(), policy,
            cancel_reason=cancel_reason, prorate=prorate, email=email,
        )

    return run_in_transaction(db, "update_subscription_status", work)


def cancel(
    shop_name: str,
    db: Session,
    reason: Optional[str] = None,
    prorate: bool = False,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Dict[str, Any]:
    """Cancel the shop's current subscription (end of cycle, or now with proration)"""
    _require(shop=shop_name)
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        subscription = reconcile_current_subscription(session, shop, moment, policy)
        if _is_default_plan(subscription.plan, policy):
            raise SubscriptionNotFound(f"Shop {shop.name} has no paid subscription to cancel")
        return _apply_status_update(
            session, subscription, SubscriptionStatus.CANCELLED, moment, policy,
            cancel_reason=reason, prorate=prorate, email=email,
        )

    return run_in_transaction(db, "cancel", work)


def freeze(shop_name: str, db: Session, reason: Optional[str] = None,
           now: Optional[datetime] = None, policy: Optional[BillingPolicy] = None) -> Dict[str, Any]:
    """Pause the shop's paid subscription after its payment method failed"""
    _require(shop=shop_name)
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        subscription = reconcile_current_subscription(session, shop, moment, policy)
        if _is_default_plan(subscription.plan, policy):
            raise SubscriptionNotFound(f"Shop {shop.name} has no paid subscription to freeze")

        _set_status(subscription, SubscriptionStatus.FROZEN, moment)
        subscription.cancel_reason = reason
        pending = _latest_payment(subscription, PaymentStatus.SCHEDULED)
        if pending is not None:
            pending.status = PaymentStatus.FROZEN
            pending.updated_at = moment
        session.flush()

        _notify_status(
            session, shop, subscription, SubscriptionStatus.FROZEN,
            "Subscription paused",
            f"Your {subscription.plan.name} subscription is paused until the payment method is fixed.",
            moment,
        )
        return {"subscription_id": subscription.id, "status": subscription.status,
                "frozen_payment_id": pending.id if pending else None}

    return run_in_transaction(db, "freeze", work)


def unfreeze(shop_name: str, db: Session, now: Optional[datetime] = None,
             policy: Optional[BillingPolicy] = None) -> Dict[str, Any]:
    """Resume the shop's most recently frozen subscription"""
    _require(shop=shop_name)
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        subscription = (
            session.query(Subscription)
            .filter(Subscription.shop_id == shop.id, Subscription.status == SubscriptionStatus.FROZEN)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )
        if subscription is None:
            raise SubscriptionNotFound(f"Shop {shop.name} has no frozen subscription")

        # A default subscription may have been created while frozen
        _retire_other_live(session, subscription, moment, f"Replaced by unfrozen subscription {subscription.id}")

        # An unconverted trial resumes as TRIAL; if it already ran out it converts below
        in_trial = subscription.has_trial and not subscription.has_trial_ended
        _set_status(subscription, SubscriptionStatus.TRIAL if in_trial else SubscriptionStatus.ACTIVE, moment)
        subscription.cancel_reason = None
        frozen_payment = _latest_payment(subscription, PaymentStatus.FROZEN)
        if frozen_payment is not None:
            frozen_payment.status = PaymentStatus.SCHEDULED
            frozen_payment.updated_at = moment
        session.flush()

        _notify_status(
            session, shop, subscription, subscription.status,
            "Subscription resumed",
            f"Your {subscription.plan.name} subscription is active again.",
            moment,
        )
        current = handle_cycle_transition(
            session, shop, subscription, check_and_manage_cycle(subscription, moment, policy), moment, policy
        )
        return {"subscription_id": current.id, "status": current.status}

    return run_in_transaction(db, "unfreeze", work)


def update_payment_status(
    payment_id: int,
    status: str,
    db: Session,
    external_transaction_id: Optional[str] = None,
    shop_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Record the outcome reported by the external billing confirmation flow"""
    _require(payment_id=payment_id, status=status)
    if status not in PaymentStatus.ALL:
        raise InvalidStatus(f"Unknown payment status: {status}")

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session) if shop_name else None
        payment = session.query(Payment).filter(Payment.id == payment_id).first()
        if not payment or (shop is not None and payment.shop_id != shop.id):
            raise PaymentNotFound(f"Payment {payment_id} not found")
        if (external_transaction_id and payment.external_transaction_id
                and external_transaction_id != payment.external_transaction_id):
            raise SubscriptionIdMismatch(
                f"Reference {external_transaction_id} does not match payment {payment.id}"
            )

        payment.status = status
        payment.updated_at = moment
        subscription = payment.subscription
        if subscription is not None and subscription.status == SubscriptionStatus.PENDING:
            if status == PaymentStatus.SUCCEEDED:
                _retire_other_live(session, subscription, moment, f"Replaced by activated subscription {subscription.id}")
                _set_status(subscription, SubscriptionStatus.ACTIVE, moment)
            elif status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
                _retire(subscription, SubscriptionStatus.DECLINED, "Payment was not completed", moment)
        session.flush()
        logger.info(f"Payment {payment.id} marked {status}")
        return {
            "payment_id": payment.id,
            "status": payment.status,
            "subscription_id": subscription.id if subscription else None,
            "subscription_status": subscription.status if subscription else None,
        }

    return run_in_transaction(db, "update_payment_status", work)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

def check_subscription_status(shop_name: str, plan_name: str, db: Session,
                              now: Optional[datetime] = None,
                              policy: Optional[BillingPolicy] = None) -> Dict[str, Any]:
    """Which billing action a plan request maps to for this shop"""
    _require(shop=shop_name, plan=plan_name)
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        plan = get_plan_by_name(plan_name, session)
        current = reconcile_current_subscription(session, shop, moment, policy)
        cycle = check_and_manage_cycle(current, moment, policy)

        if _is_default_plan(current.plan, policy):
            action = BillingAction.NONE if _is_default_plan(plan, policy) else BillingAction.SUBSCRIBE
        elif _is_default_plan(plan, policy):
            action = BillingAction.CANCEL
        elif plan.id != current.plan_id:
            action = BillingAction.UPDATE
        elif current.status == SubscriptionStatus.ON_HOLD or cycle.days_until_expiration == 0:
            action = BillingAction.RENEW
        else:
            action = BillingAction.NONE

        return {
            "action": action,
            "current_plan": current.plan.name,
            "requested_plan": plan.name,
            "status": current.status,
            "days_until_expiration": cycle.days_until_expiration,
        }

    return run_in_transaction(db, "check_subscription_status", work)


def serialize_payment(payment: Optional[Payment]) -> Optional[Dict[str, Any]]:
    if payment is None:
        return None
    return {
        "id": payment.id,
        "status": payment.status,
        "billing_type": payment.billing_type,
        "list_price": as_number(payment.list_price),
        "discount_amount": as_number(payment.discount_amount),
        "amount": as_number(payment.amount),
        "adjusted_amount": as_number(payment.adjusted_amount),
        "refunded_amount": as_number(payment.refunded_amount),
        "currency": payment.currency,
        "billing_period_start": isoformat(payment.billing_period_start),
        "billing_period_end": isoformat(payment.billing_period_end),
        "created_at": isoformat(payment.created_at),
    }


def get_subscription_details(shop_name: str, db: Session, now: Optional[datetime] = None,
                             policy: Optional[BillingPolicy] = None) -> Dict[str, Any]:
    """Status, plan, cycle dates, latest payment and adjustments of the shop's subscription"""
    _require(shop=shop_name)
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        subscription = reconcile_current_subscription(session, shop, moment, policy)
        cycle = check_and_manage_cycle(subscription, moment, policy)
        plan = subscription.plan
        end_date = as_utc(subscription.end_date)

        return {
            "subscription_id": subscription.id,
            "shop": shop.name,
            "status": subscription.status,
            "plan": {
                "id": plan.id,
                "name": plan.name,
                "price": as_number(plan.price),
                "currency": plan.currency,
                "trial_days": plan.trial_days,
            },
            "start_date": isoformat(subscription.start_date),
            "end_date": isoformat(end_date),
            "days_until_expiration": cycle.days_until_expiration,
            "next_cycle_start": isoformat(end_date),
            "next_cycle_end": isoformat(add_months(end_date, 1)),
            "trial": {
                "has_trial": subscription.has_trial,
                "trial_start_date": isoformat(subscription.trial_start_date),
                "trial_end_date": isoformat(subscription.trial_end_date),
                "has_trial_ended": subscription.has_trial_ended,
                "days_until_trial_ends": cycle.days_until_trial_ends,
            },
            "canceled_at": isoformat(subscription.canceled_at),
            "cancel_reason": subscription.cancel_reason,
            "latest_payment": serialize_payment(subscription.latest_payment),
            "billing_adjustments": get_billing_adjustments(subscription.payments, session),
        }

    return run_in_transaction(db, "get_subscription_details", work)


def serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "shop_id": subscription.shop_id,
        "plan": subscription.plan.name,
        "status": subscription.status,
        "start_date": isoformat(subscription.start_date),
        "end_date": isoformat(subscription.end_date),
        "has_trial": subscription.has_trial,
        "trial_end_date": isoformat(subscription.trial_end_date),
        "has_trial_ended": subscription.has_trial_ended,
        "external_subscription_id": subscription.external_subscription_id,
        "latest_payment": serialize_payment(subscription.latest_payment),
    }
