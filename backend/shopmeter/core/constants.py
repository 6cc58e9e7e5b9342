"""Status and type names shared by models and services"""


class Service:
    AI_API = "AI_API"
    CRAWL_API = "CRAWL_API"

    ALL = ("AI_API", "CRAWL_API")


class SubscriptionStatus:
    PENDING = "PENDING"
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    ON_HOLD = "ON_HOLD"
    FROZEN = "FROZEN"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    DECLINED = "DECLINED"
    TERMINATED = "TERMINATED"
    PRORATE_CANCELED = "PRORATE_CANCELED"
    # Notification label only, never stored on a subscription row
    RENEWING = "RENEWING"

    ALL = (
        "PENDING", "TRIAL", "ACTIVE", "ON_HOLD", "FROZEN", "CANCELLED",
        "EXPIRED", "DECLINED", "TERMINATED", "PRORATE_CANCELED",
    )


# A shop owns at most one subscription in one of these
LIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.ON_HOLD,
    SubscriptionStatus.TRIAL,
})

TERMINATED_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.DECLINED,
    SubscriptionStatus.TERMINATED,
    SubscriptionStatus.PRORATE_CANCELED,
})


class PaymentStatus:
    SCHEDULED = "SCHEDULED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    FROZEN = "FROZEN"
    CANCELLED = "CANCELLED"

    ALL = ("SCHEDULED", "SUCCEEDED", "FAILED", "FROZEN", "CANCELLED")


class BillingType:
    SUBSCRIPTION = "SUBSCRIPTION"
    ONE_TIME = "ONE_TIME"


class PackageStatus:
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


class NotificationType:
    USAGE_APPROACHING_LIMIT = "USAGE_APPROACHING_LIMIT"
    USAGE_OVER_LIMIT = "USAGE_OVER_LIMIT"
    PACKAGE_EXPIRED = "PACKAGE_EXPIRED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    TRIAL_ENDING = "TRIAL_ENDING"
    TRIAL_ENDED = "TRIAL_ENDED"
    # Billing confirmations
    SUBSCRIPTION_STATUS = "SUBSCRIPTION_STATUS"
    CREDIT_PURCHASE = "CREDIT_PURCHASE"


class AdjustmentKind:
    PROMOTION = "PROMOTION"
    DISCOUNT = "DISCOUNT"


class AdjustmentUnit:
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class BillingAction:
    """Outcome of routing a plan request against the current subscription"""
    SUBSCRIBE = "SUBSCRIBE"
    RENEW = "RENEW"
    UPDATE = "UPDATE"
    CANCEL = "CANCEL"
    NONE = "NONE"
