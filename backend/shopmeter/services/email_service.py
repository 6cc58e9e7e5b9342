"""Email service - billing and usage notification emails via Resend"""
import logging
from html import escape
from typing import Optional, Dict, Any, Tuple

import resend

from shopmeter.core.config import settings
from shopmeter.core.constants import NotificationType, SubscriptionStatus
from shopmeter.core.metrics import emails_failed_counter

logger = logging.getLogger(__name__)

DATA_ERROR = "DATA_ERROR"
TEMPLATE_ERROR = "TEMPLATE_ERROR"
SEND_ERROR = "SEND_ERROR"


class EmailServiceError(Exception):
    """Email failure, classified as DATA_ERROR, TEMPLATE_ERROR or SEND_ERROR"""

    def __init__(self, message: str, code: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}

    def __repr__(self):
        return f"<EmailServiceError(code={self.code}, message={self.args[0]!r})>"


def validate_email_config() -> tuple[bool, str]:
    """Check that billing emails can be sent. Returns (is_valid, problem)."""
    missing = [
        name for name in ("RESEND_API_KEY", "RESEND_FROM_EMAIL", "FRONTEND_URL")
        if not getattr(settings, name)
    ]
    if missing:
        return False, f"{', '.join(missing)} not set"
    return True, ""


def _send_email(to: str, subject: str, html: str) -> bool:
    """
    Send one email through the Resend API.

    Returns:
        bool: True when sent, False when email is not configured

    Raises:
        EmailServiceError: SEND_ERROR when Resend rejects the message
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY is not set; skipping email")
        return False

    try:
        resend.api_key = settings.RESEND_API_KEY
        response = resend.Emails.send(
            {
                "from": settings.RESEND_FROM_EMAIL,
                "to": to,
                "subject": subject,
                "html": html,
            }
        )
    except Exception as exc:
        raise EmailServiceError(f"Failed to send email to {to}: {exc}", SEND_ERROR, {"to": to}) from exc

    # Resend returns a dict with 'id' on success; older clients return an object
    email_id = None
    if isinstance(response, dict):
        email_id = response.get('id')
    elif hasattr(response, 'id'):
        email_id = response.id

    if not email_id:
        raise EmailServiceError(f"Email send returned invalid response: {response}", SEND_ERROR, {"to": to})

    logger.info(f"Email sent successfully to {to} (id: {email_id})")
    return True


def _require(data: Dict[str, Any], *fields: str) -> None:
    if not isinstance(data, dict):
        raise EmailServiceError("Email data must be a mapping", DATA_ERROR)
    missing = [field for field in fields if data.get(field) in (None, "")]
    if missing:
        raise EmailServiceError(
            f"Missing email data: {', '.join(missing)}", DATA_ERROR, {"fields": missing}
        )


def _layout(heading: str, body: str) -> str:
    return f"""
    <h2>{heading}</h2>
    {body}
    <p style="margin: 20px 0;">
      <a href="{settings.FRONTEND_URL}/billing" target="_blank" rel="noopener noreferrer"
         style="display: inline-block; padding: 12px 24px; background-color: #008060; color: white; text-decoration: none; border-radius: 4px; font-weight: bold;">
        View billing
      </a>
    </p>
    """


def render_subscription_email(data: Dict[str, Any], status: str) -> Tuple[str, str]:
    """Subject and HTML for a subscription status email"""
    shop = escape(str(data["shop_name"]))
    plan = escape(str(data.get("plan_name") or ""))
    end_date = escape(str(data.get("end_date") or ""))

    if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL, SubscriptionStatus.RENEWING):
        verb = {
            SubscriptionStatus.ACTIVE: "is now active",
            SubscriptionStatus.TRIAL: "trial has started",
            SubscriptionStatus.RENEWING: "has been renewed",
        }[status]
        subject = f"Subscription Activated - {shop}"
        body = f"<p>Your {plan} subscription {verb}.</p><p>Current cycle ends on {end_date}.</p>"
        return subject, _layout(f"Your {plan} plan {verb}", body)

    if status in (SubscriptionStatus.ON_HOLD, SubscriptionStatus.CANCELLED,
                  SubscriptionStatus.PRORATE_CANCELED, SubscriptionStatus.TERMINATED):
        refund = data.get("refund_amount")
        refund_line = f"<p>A prorated refund of {escape(str(refund))} has been issued.</p>" if refund else ""
        access_line = (
            f"<p>You keep access to {plan} features until {end_date}.</p>"
            if status == SubscriptionStatus.ON_HOLD else ""
        )
        subject = f"Subscription Cancelled - {shop}"
        return subject, _layout("Your subscription has been cancelled", access_line + refund_line)

    if status == SubscriptionStatus.EXPIRED:
        subject = f"Subscription Expired - {shop}"
        return subject, _layout("Your subscription has expired", "<p>Your shop has been moved to the free plan.</p>")

    if status == SubscriptionStatus.FROZEN:
        subject = f"Payment Past Due - {shop}"
        body = "<p>We could not collect your last payment. Your subscription is paused until the payment method is updated.</p>"
        return subject, _layout("Payment past due", body)

    raise EmailServiceError(f"No subscription template for status {status}", TEMPLATE_ERROR, {"status": status})


def render_usage_email(data: Dict[str, Any], notification_type: str) -> Tuple[str, str]:
    """Subject and HTML for a usage or trial email"""
    shop = escape(str(data["shop_name"]))
    message = escape(str(data.get("message") or ""))

    subjects = {
        NotificationType.USAGE_APPROACHING_LIMIT: f"Usage Limit Approaching - {shop}",
        NotificationType.USAGE_OVER_LIMIT: f"Usage Limit Reached - {shop}",
        NotificationType.PACKAGE_EXPIRED: f"Credit Package Used Up - {shop}",
        NotificationType.SUBSCRIPTION_EXPIRED: f"Subscription Credits Used Up - {shop}",
        NotificationType.TRIAL_ENDING: f"Trial Ending Soon - {shop}",
        NotificationType.TRIAL_ENDED: f"Trial Ended - {shop}",
        NotificationType.CREDIT_PURCHASE: f"Credits Purchase Confirmed - {shop}",
    }
    subject = subjects.get(notification_type)
    if subject is None:
        raise EmailServiceError(
            f"No usage template for notification type {notification_type}",
            TEMPLATE_ERROR, {"type": notification_type}
        )

    percentage = data.get("percentage_used")
    usage_line = f"<p>You have used {escape(str(percentage))}% of your credits.</p>" if percentage is not None else ""
    return subject, _layout(escape(str(data.get("title") or subject)), f"<p>{message}</p>{usage_line}")


def _deliver(kind: str, email: str, data: Dict[str, Any], label: str, renderer) -> bool:
    try:
        if not email:
            raise EmailServiceError("Recipient email is required", DATA_ERROR, {"field": "email"})
        _require(data, "shop_name")
        try:
            subject, html = renderer(data, label)
        except EmailServiceError:
            raise
        except Exception as exc:
            raise EmailServiceError(f"Failed to render {kind} email: {exc}", TEMPLATE_ERROR, {kind: label}) from exc
        return _send_email(email, subject, html)
    except EmailServiceError as exc:
        emails_failed_counter.labels(code=exc.code).inc()
        logger.error(f"{kind.capitalize()} email ({label}) to {email} failed [{exc.code}]: {exc}", exc_info=True)
        raise


def send_subscription_email(email: str, data: Dict[str, Any], status: str) -> bool:
    """
    Send a subscription status email.

    Args:
        email: Recipient email address
        data: Template data; requires 'shop_name', uses 'plan_name', 'end_date', 'refund_amount'
        status: Subscription status the email announces

    Returns:
        bool: True on success, False when email is not configured

    Raises:
        EmailServiceError: logged with its code, then re-raised
    """
    return _deliver("subscription", email, data, status, render_subscription_email)


def send_usage_email(email: str, data: Dict[str, Any], notification_type: str) -> bool:
    """
    Send a usage threshold, package or trial email.

    Raises:
        EmailServiceError: logged with its code, then re-raised
    """
    return _deliver("usage", email, data, notification_type, render_usage_email)
