"""Credit package API routes"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from shopmeter.db.session import get_db
from shopmeter.schemas.credits import PurchaseCreditsRequest
from shopmeter.services.credit_service import get_credit_history, purchase_credits

router = APIRouter(prefix="/api/credits", tags=["credits"])
logger = logging.getLogger(__name__)


@router.post("/{shop}/purchase")
def purchase_route(shop: str, request: PurchaseCreditsRequest, db: Session = Depends(get_db)):
    """Add a prepaid credit package to the shop"""
    purchase = purchase_credits(shop, request.package_ref, request.external_transaction_id, db, email=request.email)
    return {"purchase": purchase}


@router.get("/{shop}/history")
def history_route(shop: str, limit: int = Query(50, ge=1, le=200), db: Session = Depends(get_db)):
    return {"purchases": get_credit_history(shop, db, limit=limit)}
