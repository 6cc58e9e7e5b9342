"""Usage ledger primitives - bucket counters and single-bucket deduction"""
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Dict, Any, Tuple
import logging

from pydantic import BaseModel
from sqlalchemy.orm import Session

from shopmeter.core.constants import Service
from shopmeter.core.policy import BillingPolicy, get_billing_policy
from shopmeter.models.usage import Usage, ServiceUsageDetail
from shopmeter.services.catalog_service import ServiceLimits
from shopmeter.utils.amounts import ZERO, to_decimal, as_number, percentage
from shopmeter.utils.dates import as_utc, utcnow, isoformat

logger = logging.getLogger("usage")


class CallDetail(BaseModel):
    """Per-call payload reported with AI usage"""
    input_tokens: int = 0
    output_tokens: int = 0
    model_name: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return max(0, self.input_tokens) + max(0, self.output_tokens)


def seed_detail(detail: ServiceUsageDetail, limits: ServiceLimits, now: datetime) -> ServiceUsageDetail:
    """Grant a fresh allowance: every counter back to zero used"""
    detail.total_requests = limits.request_limit
    detail.total_requests_used = 0
    detail.total_remaining_requests = limits.request_limit

    detail.total_credits = limits.credit_limit
    detail.total_credits_used = ZERO
    detail.total_remaining_credits = limits.credit_limit
    detail.conversion_rate = limits.conversion_rate

    detail.total_tokens = limits.token_limit
    detail.total_tokens_used = 0
    detail.total_remaining_tokens = limits.token_limit
    detail.input_tokens_count = 0
    detail.output_tokens_count = 0

    detail.requests_per_minute_limit = limits.rpm
    detail.requests_per_day_limit = limits.rpd
    detail.remaining_requests_per_minute = limits.rpm
    detail.remaining_requests_per_day = limits.rpd
    detail.tokens_consumed_per_minute = 0
    detail.tokens_consumed_per_day = 0
    detail.reset_time_for_minute_requests = None
    detail.reset_time_for_day_requests = None
    detail.last_token_usage_update_time = None
    detail.updated_at = now
    return detail


def create_usage(db: Session, shop_id: int, limits: Dict[str, ServiceLimits], now: Optional[datetime] = None) -> Usage:
    """New Usage aggregate with one seeded detail per service"""
    now = now or utcnow()
    usage = Usage(shop_id=shop_id, created_at=now, updated_at=now)
    for service in Service.ALL:
        usage.details.append(seed_detail(ServiceUsageDetail(service=service, created_at=now), limits[service], now))
    db.add(usage)
    db.flush()
    return usage


def reset_usage(db: Session, usage: Usage, limits: Dict[str, ServiceLimits], now: Optional[datetime] = None) -> Usage:
    """Re-grant a Usage aggregate for a new cycle"""
    now = now or utcnow()
    for service in Service.ALL:
        detail = usage.detail_for(service)
        if detail is None:
            detail = ServiceUsageDetail(service=service, created_at=now)
            usage.details.append(detail)
        seed_detail(detail, limits[service], now)
    usage.updated_at = now
    db.flush()
    logger.info(f"Reset usage {usage.id} for shop {usage.shop_id}")
    return usage


def ensure_detail(db: Session, usage: Usage, service: str, limits: Dict[str, ServiceLimits], now: Optional[datetime] = None) -> ServiceUsageDetail:
    """The detail row of a service, created from limits if the aggregate predates it"""
    detail = usage.detail_for(service)
    if detail is None:
        now = now or utcnow()
        detail = seed_detail(ServiceUsageDetail(service=service, created_at=now), limits[service], now)
        usage.details.append(detail)
        db.flush()
    return detail


def _roll_windows(detail: ServiceUsageDetail, requests: int, tokens: int, now: datetime, policy: BillingPolicy) -> None:
    # Fixed windows: once a window has elapsed the counter restarts from this call
    last = as_utc(detail.last_token_usage_update_time)

    if last is None or now - last > policy.token_minute_window:
        detail.tokens_consumed_per_minute = tokens
        detail.remaining_requests_per_minute = max(0, (detail.requests_per_minute_limit or 0) - requests)
        detail.reset_time_for_minute_requests = now + policy.token_minute_window
    else:
        detail.tokens_consumed_per_minute = (detail.tokens_consumed_per_minute or 0) + tokens
        detail.remaining_requests_per_minute = max(0, (detail.remaining_requests_per_minute or 0) - requests)

    if last is None or now - last > policy.token_day_window:
        detail.tokens_consumed_per_day = tokens
        detail.remaining_requests_per_day = max(0, (detail.requests_per_day_limit or 0) - requests)
        detail.reset_time_for_day_requests = now + policy.token_day_window
    else:
        detail.tokens_consumed_per_day = (detail.tokens_consumed_per_day or 0) + tokens
        detail.remaining_requests_per_day = max(0, (detail.remaining_requests_per_day or 0) - requests)

    detail.last_token_usage_update_time = now


def deduct_from_bucket(
    detail: ServiceUsageDetail,
    units: int,
    call_detail: Optional[CallDetail] = None,
    now: Optional[datetime] = None,
    policy: Optional[BillingPolicy] = None,
) -> Tuple[int, Decimal]:
    """
    Take as many of ``units`` requests as one bucket can cover.

    The bucket contributes only when it has both request and credit headroom.
    Requests are bounded by the credits available for them, so a bucket never
    records requests it did not charge for.

    Returns:
        (requests deducted, credits deducted)
    """
    policy = policy or get_billing_policy()
    now = now or utcnow()

    available_requests = (detail.total_requests or 0) - (detail.total_requests_used or 0)
    available_credits = to_decimal(detail.total_credits) - to_decimal(detail.total_credits_used)
    rate = to_decimal(detail.conversion_rate)

    to_deduct = min(available_requests, units)
    if to_deduct <= 0 or available_credits <= ZERO:
        return 0, ZERO

    credits_to_deduct = min(available_credits, to_deduct * rate)
    if rate > ZERO and credits_to_deduct < to_deduct * rate:
        to_deduct = int((credits_to_deduct / rate).to_integral_value(rounding=ROUND_DOWN))
        credits_to_deduct = to_deduct * rate

    if to_deduct <= 0 or credits_to_deduct <= ZERO:
        return 0, ZERO

    detail.total_requests_used = (detail.total_requests_used or 0) + to_deduct
    detail.total_remaining_requests = detail.total_requests - detail.total_requests_used
    detail.total_credits_used = to_decimal(detail.total_credits_used) + credits_to_deduct
    detail.total_remaining_credits = to_decimal(detail.total_credits) - detail.total_credits_used

    if detail.service == Service.AI_API:
        call_detail = call_detail or CallDetail()
        tokens = call_detail.total_tokens
        detail.total_tokens_used = (detail.total_tokens_used or 0) + tokens
        detail.total_remaining_tokens = max(0, (detail.total_tokens or 0) - detail.total_tokens_used)
        detail.input_tokens_count = (detail.input_tokens_count or 0) + max(0, call_detail.input_tokens)
        detail.output_tokens_count = (detail.output_tokens_count or 0) + max(0, call_detail.output_tokens)
        if call_detail.model_name:
            detail.model_name = call_detail.model_name
        _roll_windows(detail, to_deduct, tokens, now, policy)

    detail.updated_at = now
    return to_deduct, credits_to_deduct


def summarize_detail(detail: Optional[ServiceUsageDetail]) -> Dict[str, Any]:
    """JSON-friendly view of one service's counters"""
    if detail is None:
        return {
            "requests": {"total": 0, "used": 0, "remaining": 0},
            "credits": {"total": 0, "used": 0, "remaining": 0, "percentage_used": 0},
        }
    summary = {
        "requests": {
            "total": detail.total_requests,
            "used": detail.total_requests_used,
            "remaining": detail.total_remaining_requests,
        },
        "credits": {
            "total": as_number(detail.total_credits),
            "used": as_number(detail.total_credits_used),
            "remaining": as_number(detail.total_remaining_credits),
            "percentage_used": as_number(percentage(detail.total_credits_used, detail.total_credits)),
        },
        "conversion_rate": as_number(detail.conversion_rate),
    }
    if detail.service == Service.AI_API:
        summary["tokens"] = {
            "total": detail.total_tokens,
            "used": detail.total_tokens_used,
            "remaining": detail.total_remaining_tokens,
            "input": detail.input_tokens_count,
            "output": detail.output_tokens_count,
            "model_name": detail.model_name,
        }
        summary["rate_limits"] = {
            "requests_per_minute": detail.requests_per_minute_limit,
            "requests_per_day": detail.requests_per_day_limit,
            "remaining_requests_per_minute": detail.remaining_requests_per_minute,
            "remaining_requests_per_day": detail.remaining_requests_per_day,
            "tokens_consumed_per_minute": detail.tokens_consumed_per_minute,
            "tokens_consumed_per_day": detail.tokens_consumed_per_day,
            "minute_window_resets_at": isoformat(detail.reset_time_for_minute_requests),
            "day_window_resets_at": isoformat(detail.reset_time_for_day_requests),
        }
    return summary


def credit_totals(usage: Optional[Usage]) -> Tuple[Decimal, Decimal]:
    """(granted, used) credits of an aggregate across all services"""
    if usage is None:
        return ZERO, ZERO
    granted = sum((to_decimal(detail.total_credits) for detail in usage.details), ZERO)
    used = sum((to_decimal(detail.total_credits_used) for detail in usage.details), ZERO)
    return granted, used


def is_exhausted(detail: ServiceUsageDetail) -> bool:
    """True when the bucket cannot cover even one more request"""
    available_requests = (detail.total_requests or 0) - (detail.total_requests_used or 0)
    available_credits = to_decimal(detail.total_credits) - to_decimal(detail.total_credits_used)
    return available_requests <= 0 or available_credits <= ZERO or available_credits < to_decimal(detail.conversion_rate)


def usage_exhausted(usage: Usage) -> bool:
    """True when no service bucket of the aggregate can be charged any more"""
    return all(is_exhausted(detail) for detail in usage.details)
