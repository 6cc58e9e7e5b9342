"""Date helpers for billing cycles"""
from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store.

    All timestamps are written in UTC; some backends (SQLite) drop the
    offset on the way back.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Calendar-month arithmetic (Jan 31 + 1 month = Feb 28/29)"""
    return value + relativedelta(months=months)


def days_until(end: datetime, now: datetime) -> int:
    """Whole days from now until end, never negative"""
    delta = as_utc(end) - as_utc(now)
    if delta.total_seconds() <= 0:
        return 0
    return delta.days


def cycle_fraction_elapsed(start: datetime, end: datetime, now: datetime) -> float:
    """Fraction of [start, end] already elapsed, clamped to [0, 1]"""
    start, end, now = as_utc(start), as_utc(end), as_utc(now)
    total = (end - start).total_seconds()
    if total <= 0:
        return 1.0
    elapsed = (now - start).total_seconds()
    return min(1.0, max(0.0, elapsed / total))


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None
