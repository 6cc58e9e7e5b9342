"""Credit service - one-time credit package purchases"""
from datetime import datetime
from functools import partial
from typing import Optional, Dict, Any, List
import logging

from sqlalchemy.orm import Session

from shopmeter.core.constants import BillingType, NotificationType, PackageStatus, PaymentStatus, Service
from shopmeter.core.errors import MissingParameters, PackageNotFound
from shopmeter.core.policy import BillingPolicy, get_billing_policy
from shopmeter.db.transactions import run_in_transaction
from shopmeter.models.credit_purchase import CreditPurchase
from shopmeter.models.payment import Payment
from shopmeter.services.catalog_service import get_package, resolve_limits
from shopmeter.services.email_service import send_usage_email
from shopmeter.services.idempotency_service import check_idempotency, record_idempotency_key
from shopmeter.services.notification_service import notify
from shopmeter.services.promotion_service import apply_adjustment, quote_price
from shopmeter.services.shop_service import get_shop, resolve_contact_email
from shopmeter.services.usage_ledger import create_usage
from shopmeter.services.usage_service import serialize_purchase
from shopmeter.utils.amounts import ZERO, as_number
from shopmeter.utils.dates import utcnow

logger = logging.getLogger("billing")


def _package_snapshot(package, limits) -> Dict[str, Any]:
    return {
        "package_id": package.id,
        "name": package.name,
        "credit_amount": str(package.credit_amount),
        "price": str(package.price),
        "currency": package.currency,
        "limits": {service: limits[service].snapshot() for service in Service.ALL},
    }


def purchase_credits(
    shop_name: str,
    package_ref,
    external_transaction_id: str,
    db: Session,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Dict[str, Any]:
    """
    Buy a credit package for a shop.

    The package definition is copied into the purchase so later catalog
    edits never change what was bought.

    Args:
        shop_name: Shop domain
        package_ref: Package id or name
        external_transaction_id: Reference of the confirmed one-time charge;
            a replay returns the purchase it already produced

    Raises:
        MissingParameters, ShopNotFound, PackageNotFound, IdempotencyConflict, TransactionFailed
    """
    missing = [
        name for name, value in (("shop", shop_name), ("package", package_ref),
                                 ("external_transaction_id", external_transaction_id))
        if value in (None, "")
    ]
    if missing:
        raise MissingParameters(*missing)
    policy = policy or get_billing_policy()

    def work(session: Session) -> Dict[str, Any]:
        moment = now or utcnow()
        shop = get_shop(shop_name, session)
        replay = check_idempotency(shop.id, external_transaction_id, ("purchase",), session)
        if replay:
            purchase = session.query(CreditPurchase).filter(CreditPurchase.id == replay["purchase_id"]).first()
            if purchase is None:
                raise PackageNotFound(f"Credit purchase {replay['purchase_id']} no longer exists")
            return serialize_purchase(purchase)

        package = get_package(package_ref, session)
        limits = resolve_limits(package.limits, policy)
        purchase = CreditPurchase(
            shop_id=shop.id,
            package_id=package.id,
            usage=create_usage(session, shop.id, limits, moment),
            status=PackageStatus.ACTIVE,
            purchase_snapshot=_package_snapshot(package, limits),
            external_purchase_id=external_transaction_id,
            created_at=moment,
            updated_at=moment,
        )
        session.add(purchase)
        session.flush()

        quote = quote_price(shop.id, package.price, session, package_id=package.id, now=moment)
        payment = Payment(
            shop_id=shop.id,
            credit_purchase=purchase,
            billing_type=BillingType.ONE_TIME,
            status=PaymentStatus.SUCCEEDED,
            list_price=quote.list_price,
            discount_amount=quote.discount_amount,
            amount=quote.final_price,
            adjusted_amount=quote.final_price,
            refunded_amount=ZERO,
            currency=package.currency,
            billing_period_start=moment,
            external_transaction_id=external_transaction_id,
            created_at=moment,
            updated_at=moment,
        )
        session.add(payment)
        session.flush()
        apply_adjustment(payment, quote, session)
        record_idempotency_key(shop.id, external_transaction_id, "purchase", {"purchase_id": purchase.id}, session)
        logger.info(
            f"Shop {shop.name} bought {package.name} ({package.credit_amount} credits) "
            f"for {payment.amount} {payment.currency}"
        )

        title = f"{package.name} credits added"
        message = f"{package.credit_amount} credits were added to your shop."
        recipient = resolve_contact_email(shop, email, session)
        sender = None
        if recipient:
            data = {"shop_name": shop.name, "title": title, "message": message}
            sender = partial(send_usage_email, recipient, data, NotificationType.CREDIT_PURCHASE)
        notify(
            session, shop.id, NotificationType.CREDIT_PURCHASE, title, message,
            metadata={"purchase_id": purchase.id, "package": package.name,
                      "amount": as_number(payment.amount)},
            deduplicate=False, send_email=sender, now=moment,
        )
        return serialize_purchase(purchase)

    return run_in_transaction(db, "purchase_credits", work)


def get_credit_history(shop_name: str, db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    """Credit purchases of a shop, newest first"""
    shop = get_shop(shop_name, db)
    purchases = (
        db.query(CreditPurchase)
        .filter(CreditPurchase.shop_id == shop.id)
        .order_by(CreditPurchase.created_at.desc(), CreditPurchase.id.desc())
        .limit(limit)
        .all()
    )
    return [serialize_purchase(purchase) for purchase in purchases]
