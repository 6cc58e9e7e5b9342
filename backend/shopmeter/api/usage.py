"""Usage API routes - consumption reports, balances and notifications"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from shopmeter.db.session import get_db
from shopmeter.schemas.usage import ReportUsageRequest
from shopmeter.services.notification_service import list_notifications, mark_notification_read
from shopmeter.services.usage_ledger import CallDetail
from shopmeter.services.usage_service import get_usage_state, report_usage

router = APIRouter(prefix="/api/usage", tags=["usage"])
logger = logging.getLogger(__name__)


@router.post("/{shop}/report")
def report_usage_route(shop: str, request: ReportUsageRequest, db: Session = Depends(get_db)):
    """Deduct consumed requests from the shop's allowance

    Responds 402 when the allowance cannot cover every unit; nothing is
    deducted in that case.
    """
    call_detail = CallDetail(**request.detail.model_dump()) if request.detail else None
    return report_usage(
        shop, request.service, request.units, db,
        call_detail=call_detail,
        idempotency_key=request.idempotency_key,
    )


@router.get("/{shop}")
def usage_state_route(shop: str, db: Session = Depends(get_db)):
    return get_usage_state(shop, db)


@router.get("/{shop}/notifications")
def notifications_route(
    shop: str,
    limit: int = Query(50, ge=1, le=200),
    unread_only: bool = False,
    db: Session = Depends(get_db)
):
    return {"notifications": list_notifications(shop, db, limit=limit, unread_only=unread_only)}


@router.post("/{shop}/notifications/{notification_id}/read")
def mark_read_route(shop: str, notification_id: int, db: Session = Depends(get_db)):
    return {"notification": mark_notification_read(shop, notification_id, db)}
