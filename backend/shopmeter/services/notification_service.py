"""Notification service - decides whether to notify and records notifications"""
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable
import logging

from sqlalchemy.orm import Session

from shopmeter.core.constants import NotificationType
from shopmeter.core.errors import NotificationNotFound
from shopmeter.core.metrics import notifications_sent_counter, notifications_suppressed_counter
from shopmeter.core.policy import BillingPolicy, get_billing_policy
from shopmeter.db.transactions import after_commit, run_in_transaction
from shopmeter.models.notification import Notification
from shopmeter.services.shop_service import get_shop
from shopmeter.utils.amounts import to_decimal
from shopmeter.utils.dates import utcnow, isoformat

logger = logging.getLogger("notifications")


def decide_usage_notification(percentage_used, policy: Optional[BillingPolicy] = None) -> Optional[str]:
    """Notification type for a usage percentage, or None below the approaching threshold"""
    policy = policy or get_billing_policy()
    percentage_used = to_decimal(percentage_used)
    if percentage_used >= policy.over_limit_percent:
        return NotificationType.USAGE_OVER_LIMIT
    if percentage_used >= policy.approaching_limit_percent:
        return NotificationType.USAGE_APPROACHING_LIMIT
    return None


def should_notify_trial_ending(days_until_trial_ends: int, policy: Optional[BillingPolicy] = None) -> bool:
    policy = policy or get_billing_policy()
    return days_until_trial_ends in policy.trial_notification_days


def has_recent_notification(
    shop_id: int,
    notification_type: str,
    db: Session,
    dedup_key: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> bool:
    """True if the same notification was recorded inside the dedup window"""
    policy = policy or get_billing_policy()
    cutoff = (now or utcnow()) - policy.notification_window
    query = db.query(Notification.id).filter(
        Notification.shop_id == shop_id,
        Notification.type == notification_type,
        Notification.created_at >= cutoff,
    )
    if dedup_key is not None:
        query = query.filter(Notification.dedup_key == dedup_key)
    return query.first() is not None


def notify(
    db: Session,
    shop_id: int,
    notification_type: str,
    title: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
    dedup_key: Optional[str] = None,
    deduplicate: bool = True,
    send_email: Optional[Callable[[], object]] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Optional[Notification]:
    """
    Record a notification unless an identical one is inside the dedup window.

    The optional ``send_email`` callable runs after the surrounding
    transaction commits, so a failed email never undoes billing state.

    Returns:
        The new Notification, or None when suppressed
    """
    now = now or utcnow()
    if deduplicate and has_recent_notification(shop_id, notification_type, db, dedup_key=dedup_key, now=now, policy=policy):
        notifications_suppressed_counter.labels(type=notification_type).inc()
        logger.debug(f"Suppressed duplicate {notification_type} for shop {shop_id} (key={dedup_key})")
        return None

    notification = Notification(
        shop_id=shop_id,
        type=notification_type,
        title=title,
        message=message,
        dedup_key=dedup_key,
        notification_metadata=metadata or {},
        created_at=now,
    )
    db.add(notification)
    db.flush()
    notifications_sent_counter.labels(type=notification_type).inc()
    logger.info(f"Notification {notification_type} recorded for shop {shop_id}: {title}")

    if send_email is not None:
        after_commit(db, send_email)
    return notification


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "metadata": notification.notification_metadata or {},
        "is_read": notification.is_read,
        "created_at": isoformat(notification.created_at),
    }


def list_notifications(shop_name: str, db: Session, limit: int = 50, unread_only: bool = False) -> List[Dict[str, Any]]:
    """Most recent notifications of a shop"""
    shop = get_shop(shop_name, db)
    query = db.query(Notification).filter(Notification.shop_id == shop.id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    return [serialize_notification(notification) for notification in notifications]


def mark_notification_read(shop_name: str, notification_id: int, db: Session) -> Dict[str, Any]:
    def work(session: Session):
        shop = get_shop(shop_name, session)
        notification = session.query(Notification).filter(
            Notification.id == notification_id,
            Notification.shop_id == shop.id,
        ).first()
        if not notification:
            raise NotificationNotFound(f"Notification {notification_id} not found")
        notification.is_read = True
        session.flush()
        return serialize_notification(notification)

    return run_in_transaction(db, "mark_notification_read", work)
