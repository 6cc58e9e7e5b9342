"""Billing API routes - subscription lifecycle"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from shopmeter.db.session import get_db
from shopmeter.schemas.billing import (
    CancelRequest, FreezeRequest, OnboardShopRequest, PaymentStatusRequest, RenewRequest,
    SubscribeRequest, SubscriptionStatusRequest,
)
from shopmeter.services.catalog_service import list_packages, list_plans
from shopmeter.services.subscription_service import (
    cancel, check_subscription_status, freeze, get_subscription_details,
    onboard_shop, renew, serialize_subscription, subscribe, unfreeze, update, update_payment_status,
    update_subscription_status,
)

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger(__name__)


@router.get("/plans")
def get_plans(db: Session = Depends(get_db)):
    """Active subscription plans"""
    return {"plans": list_plans(db)}


@router.get("/packages")
def get_packages(db: Session = Depends(get_db)):
    """Active credit packages"""
    return {"packages": list_packages(db)}


@router.post("/shops")
def create_shop_route(request: OnboardShopRequest, db: Session = Depends(get_db)):
    """Onboard a shop on the default plan"""
    return onboard_shop(request.name, db, email=request.email, owner_name=request.owner_name)


@router.post("/subscriptions/{subscription_id}/status")
def update_subscription_status_route(
    subscription_id: int,
    request: SubscriptionStatusRequest,
    db: Session = Depends(get_db)
):
    """Apply a status change reported by the billing confirmation flow"""
    return update_subscription_status(
        subscription_id, request.status, db,
        cancel_reason=request.cancel_reason,
        prorate=request.prorate,
        external_subscription_id=request.external_subscription_id,
    )


@router.get("/{shop}/subscription")
def get_subscription_route(shop: str, db: Session = Depends(get_db)):
    """Current subscription with cycle, trial and payment details"""
    return get_subscription_details(shop, db)


@router.get("/{shop}/status-check")
def status_check(shop: str, plan: str = Query(...), db: Session = Depends(get_db)):
    """Which billing action a plan request needs"""
    return check_subscription_status(shop, plan, db)


@router.post("/{shop}/subscribe")
def subscribe_route(shop: str, request: SubscribeRequest, db: Session = Depends(get_db)):
    subscription = subscribe(shop, request.plan_name, request.external_transaction_id, db, email=request.email)
    return {"subscription": serialize_subscription(subscription)}


@router.post("/{shop}/update")
def update_route(shop: str, request: SubscribeRequest, db: Session = Depends(get_db)):
    """Switch the shop to another plan"""
    subscription = update(shop, request.plan_name, request.external_transaction_id, db, email=request.email)
    return {"subscription": serialize_subscription(subscription)}


@router.post("/{shop}/renew")
def renew_route(shop: str, request: RenewRequest, db: Session = Depends(get_db)):
    subscription = renew(shop, request.external_transaction_id, db, email=request.email)
    return {"subscription": serialize_subscription(subscription)}


@router.post("/{shop}/cancel")
def cancel_route(shop: str, request: CancelRequest, db: Session = Depends(get_db)):
    """Cancel at the end of the cycle, or now with a prorated refund"""
    return cancel(shop, db, reason=request.reason, prorate=request.prorate, email=request.email)


@router.post("/{shop}/freeze")
def freeze_route(shop: str, request: FreezeRequest, db: Session = Depends(get_db)):
    return freeze(shop, db, reason=request.reason)


@router.post("/{shop}/unfreeze")
def unfreeze_route(shop: str, db: Session = Depends(get_db)):
    return unfreeze(shop, db)


@router.post("/{shop}/payments/{payment_id}/status")
def payment_status_route(shop: str, payment_id: int, request: PaymentStatusRequest, db: Session = Depends(get_db)):
    """Record the outcome of an external payment confirmation"""
    return update_payment_status(
        payment_id, request.status, db,
        external_transaction_id=request.external_transaction_id,
        shop_name=shop,
    )
