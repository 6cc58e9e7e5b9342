"""Billing error taxonomy.

Every error raised on purpose by the billing services derives from
``BillingError``. The API layer turns them into JSON responses using
``code`` and ``status_code``; messages are meant to be shown to the caller
as-is.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for billing errors"""
    code = "BILLING_ERROR"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.code.replace("_", " ").capitalize()

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class ShopNotFound(BillingError):
    code = "SHOP_NOT_FOUND"
    status_code = 404


class SubscriptionNotFound(BillingError):
    code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404


class PaymentNotFound(BillingError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404


class PackageNotFound(BillingError):
    code = "PACKAGE_NOT_FOUND"
    status_code = 404


class InvalidPlan(BillingError):
    code = "INVALID_PLAN"


class InvalidDates(BillingError):
    code = "INVALID_DATES"


class MissingParameters(BillingError):
    code = "MISSING_PARAMETERS"

    def __init__(self, *names: str):
        self.names = names
        super().__init__(f"Missing required parameters: {', '.join(names)}" if names else None)


class SubscriptionIdMismatch(BillingError):
    """External reference does not match the stored one (upstream routing bug)"""
    code = "SUBSCRIPTION_ID_MISMATCH"
    status_code = 409


class AlreadyTerminated(BillingError):
    code = "ALREADY_TERMINATED"
    status_code = 409


class DuplicateStatusUpdate(BillingError):
    code = "DUPLICATE_STATUS_UPDATE"
    status_code = 409


class IdempotencyConflict(BillingError):
    """An external transaction id was already used for a different operation"""
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


class InsufficientCredits(BillingError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, service: str, requested: int, unsatisfied: int):
        self.service = service
        self.requested = requested
        self.unsatisfied = unsatisfied
        super().__init__(
            f"Insufficient credits for {service}: {unsatisfied} of {requested} requests could not be covered"
        )


class TransactionFailed(BillingError):
    """Store-level abort (conflict retries exhausted, timeout, connection loss).

    The message is generic on purpose; the store error is kept in ``cause``
    and chained with ``raise ... from``.
    """
    code = "TRANSACTION_FAILED"
    status_code = 503

    def __init__(self, operation: str, cause: Optional[BaseException] = None, attempts: int = 1):
        self.operation = operation
        self.cause = cause
        self.attempts = attempts
        super().__init__(f"Transaction failed for {operation}")


class SubscriptionFallbackFailed(BillingError):
    """Subscribe failed and restoring the previous subscription failed too"""
    code = "SUBSCRIPTION_FALLBACK_FAILED"
    status_code = 500

    def __init__(self, original: BaseException, fallback: BaseException):
        self.original = original
        self.fallback = fallback
        super().__init__(
            f"Subscription change failed ({original}) and the previous subscription "
            f"could not be restored ({fallback})"
        )


class NotificationNotFound(BillingError):
    code = "NOTIFICATION_NOT_FOUND"
    status_code = 404


class InvalidStatus(BillingError):
    code = "INVALID_STATUS"


class InvalidUsage(BillingError):
    code = "INVALID_USAGE"
