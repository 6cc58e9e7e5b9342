"""Static billing tables, loaded once and passed explicitly to services"""
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict

from shopmeter.core.config import settings
from shopmeter.core.constants import Service


class BillingPolicy(BaseModel):
    """Immutable billing configuration.

    Services take a ``policy`` argument instead of reading module globals, so
    tests can run against a tweaked copy (``policy.model_copy(update=...)``).
    """
    model_config = ConfigDict(frozen=True)

    # Credits charged per request, per service
    credit_conversion: Dict[str, Decimal] = {
        Service.AI_API: Decimal("0.1"),
        Service.CRAWL_API: Decimal("1"),
    }
    # Sum of the per-service rates; used to split a package's credits
    total_conversion_rate: Decimal = Decimal("1.1")

    default_plan_name: str = "FREE"

    trial_notification_days: Tuple[int, ...] = (4, 2)
    notification_window: timedelta = timedelta(hours=24)
    status_debounce: timedelta = timedelta(minutes=30)

    approaching_limit_percent: Decimal = Decimal("80")
    over_limit_percent: Decimal = Decimal("100")

    token_minute_window: timedelta = timedelta(seconds=60)
    token_day_window: timedelta = timedelta(hours=24)

    def conversion_rate(self, service: str) -> Decimal:
        return self.credit_conversion.get(service, Decimal("1"))


@lru_cache(maxsize=1)
def get_billing_policy() -> BillingPolicy:
    """Build the process-wide policy from settings"""
    return BillingPolicy(default_plan_name=settings.DEFAULT_PLAN_NAME)
