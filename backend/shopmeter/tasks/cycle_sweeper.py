"""Background task reconciling subscriptions whose cycle has ended"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from shopmeter.core.config import settings
from shopmeter.core.constants import LIVE_STATUSES
from shopmeter.db.session import SessionLocal
from shopmeter.models.shop import Shop
from shopmeter.models.subscription import Subscription
from shopmeter.services.subscription_service import get_current_subscription
from shopmeter.utils.dates import utcnow

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")


def sweep_expired_cycles(db: Session, now: Optional[datetime] = None) -> int:
    """
    Run cycle reconciliation for every shop whose live subscription ran past its end date.

    Each shop is reconciled in its own transaction; one failing shop does not
    stop the sweep.

    Returns:
        Number of shops reconciled
    """
    now = now or utcnow()
    shop_names = [
        name for (name,) in (
            db.query(Shop.name)
            .join(Subscription, Subscription.shop_id == Shop.id)
            .filter(Subscription.status.in_(LIVE_STATUSES), Subscription.end_date <= now)
            .distinct()
            .all()
        )
    ]
    # Release the read snapshot before per-shop transactions start
    db.rollback()

    reconciled = 0
    for shop_name in shop_names:
        try:
            subscription = get_current_subscription(shop_name, db, now=now)
            reconciled += 1
            billing_logger.info(f"Swept shop {shop_name}: subscription {subscription.id} is {subscription.status}")
        except Exception as e:
            logger.error(f"Cycle sweep failed for shop {shop_name}: {e}", exc_info=True)
    return reconciled


async def cycle_sweep_task():
    """Periodically catch up missed cycle boundaries so read paths rarely have to"""
    logger.info("Starting cycle sweep task...")

    while True:
        try:
            await asyncio.sleep(settings.CYCLE_SWEEP_INTERVAL_SECONDS)

            db = SessionLocal()
            try:
                count = sweep_expired_cycles(db)
                if count:
                    logger.info(f"Cycle sweep reconciled {count} shop(s)")
            finally:
                db.close()

        except asyncio.CancelledError:
            logger.info("Cycle sweep task cancelled")
            raise
        except Exception as e:
            logger.error(f"Fatal error in cycle sweep: {e}", exc_info=True)
            await asyncio.sleep(settings.CYCLE_SWEEP_INTERVAL_SECONDS)
