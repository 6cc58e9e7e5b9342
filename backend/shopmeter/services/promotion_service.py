"""Promotion service - resolves and applies price adjustments"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any, Iterable
import logging

from pydantic import BaseModel, ConfigDict
from sqlalchemy import or_
from sqlalchemy.orm import Session

from shopmeter.core.constants import AdjustmentKind, AdjustmentUnit
from shopmeter.models.payment import Payment
from shopmeter.models.promotion import Promotion, BillingEvent
from shopmeter.utils.amounts import ZERO, money, to_decimal, as_number
from shopmeter.utils.dates import as_utc, utcnow, isoformat

logger = logging.getLogger("billing")


class PriceQuote(BaseModel):
    """Price of one billing event after at most one adjustment"""
    model_config = ConfigDict(frozen=True)

    list_price: Decimal
    discount_amount: Decimal = ZERO
    final_price: Decimal
    promotion_id: Optional[int] = None
    kind: Optional[str] = None
    duration_days: Optional[int] = None
    description: Optional[str] = None

    @property
    def is_adjusted(self) -> bool:
        return self.promotion_id is not None and self.discount_amount > ZERO


def _priority(promotion: Promotion, shop_id: int):
    # Lower sorts first
    return (
        0 if promotion.is_early_adopter else 1,
        0 if promotion.kind == AdjustmentKind.PROMOTION else 1,
        0 if promotion.shop_id == shop_id else 1,
        0 if (promotion.plan_id or promotion.package_id) else 1,
        -(promotion.id or 0),
    )


def find_applicable_adjustment(
    shop_id: int,
    db: Session,
    plan_id: Optional[int] = None,
    package_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[Promotion]:
    """
    Find the single promotion or discount that applies to a shop and a plan (or package).

    Priority: early-adopter promotions, then promotions, then discounts;
    within a kind, shop-targeted and product-targeted offers win over
    general ones.
    """
    now = now or utcnow()
    query = db.query(Promotion).filter(
        Promotion.is_active.is_(True),
        Promotion.valid_from <= now,
        Promotion.valid_until >= now,
        or_(Promotion.max_uses.is_(None), Promotion.used_count < Promotion.max_uses),
        or_(Promotion.shop_id.is_(None), Promotion.shop_id == shop_id),
    )
    if package_id is not None:
        query = query.filter(
            Promotion.plan_id.is_(None),
            or_(Promotion.package_id.is_(None), Promotion.package_id == package_id),
        )
    else:
        query = query.filter(
            Promotion.package_id.is_(None),
            or_(Promotion.plan_id.is_(None), Promotion.plan_id == plan_id),
        )

    candidates = query.all()
    if not candidates:
        return None
    return sorted(candidates, key=lambda promotion: _priority(promotion, shop_id))[0]


def promotion_duration_days(promotion: Promotion) -> int:
    """How long an adjustment lasts: the days between its validity bounds"""
    return max(0, (as_utc(promotion.valid_until) - as_utc(promotion.valid_from)).days)


def calculate_adjusted_price(price, promotion: Optional[Promotion]) -> PriceQuote:
    """Apply a promotion to a list price; the result never drops below zero"""
    list_price = money(price)
    if promotion is None:
        return PriceQuote(list_price=list_price, final_price=list_price)

    value = to_decimal(promotion.value)
    if promotion.unit == AdjustmentUnit.PERCENTAGE:
        discount = money(list_price * min(value, Decimal("100")) / 100)
    else:
        discount = money(min(value, list_price))
    discount = max(ZERO, discount)

    return PriceQuote(
        list_price=list_price,
        discount_amount=discount,
        final_price=max(ZERO, list_price - discount),
        promotion_id=promotion.id,
        kind=promotion.kind,
        duration_days=promotion_duration_days(promotion),
        description=promotion.description or promotion.code,
    )


def quote_price(
    shop_id: int,
    price,
    db: Session,
    plan_id: Optional[int] = None,
    package_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> PriceQuote:
    """Resolve the applicable adjustment and price a plan or package for a shop"""
    promotion = find_applicable_adjustment(shop_id, db, plan_id=plan_id, package_id=package_id, now=now)
    return calculate_adjusted_price(price, promotion)


def apply_adjustment(payment: Payment, quote: PriceQuote, db: Session) -> Optional[BillingEvent]:
    """Record the adjustment behind a quote against its payment and count the use"""
    if not quote.is_adjusted:
        return None

    promotion = db.query(Promotion).filter(Promotion.id == quote.promotion_id).first()
    if promotion is None:
        logger.warning(f"Promotion {quote.promotion_id} disappeared before it could be applied")
        return None

    promotion.used_count = (promotion.used_count or 0) + 1
    event = BillingEvent(
        shop_id=payment.shop_id,
        payment_id=payment.id,
        promotion_id=promotion.id,
        event_type=promotion.kind,
        amount=quote.discount_amount,
        duration_days=quote.duration_days,
        description=quote.description,
    )
    db.add(event)
    logger.info(
        f"Applied {promotion.kind.lower()} {promotion.code} to payment {payment.id}: "
        f"-{quote.discount_amount} ({promotion.used_count} use(s))"
    )
    return event


def get_billing_adjustments(payments: Iterable[Payment], db: Session) -> List[Dict[str, Any]]:
    """Adjustments recorded against a set of payments, oldest first"""
    payment_ids = [payment.id for payment in payments]
    if not payment_ids:
        return []
    events = (
        db.query(BillingEvent)
        .filter(BillingEvent.payment_id.in_(payment_ids))
        .order_by(BillingEvent.created_at, BillingEvent.id)
        .all()
    )
    return [
        {
            "payment_id": event.payment_id,
            "type": event.event_type,
            "amount": as_number(event.amount),
            "duration_days": event.duration_days,
            "description": event.description,
            "created_at": isoformat(event.created_at),
        }
        for event in events
    ]
