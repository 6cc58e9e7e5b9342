"""Email service tests"""
import pytest
from unittest.mock import patch

from shopmeter.core.config import settings
from shopmeter.core.constants import NotificationType, SubscriptionStatus
from shopmeter.models.subscription import Subscription
from shopmeter.services.email_service import (
    DATA_ERROR, SEND_ERROR, TEMPLATE_ERROR, EmailServiceError, render_subscription_email,
    render_usage_email, send_subscription_email, send_usage_email, validate_email_config,
)
from shopmeter.services.subscription_service import subscribe

from conftest import SHOP_NAME, SHOP_EMAIL


SUBSCRIPTION_DATA = {"shop_name": SHOP_NAME, "plan_name": "STANDARD", "end_date": "2026-03-01"}


@pytest.mark.medium
class TestTemplates:
    """Subjects and bodies per status / notification type"""

    @pytest.mark.parametrize("status,subject", [
        (SubscriptionStatus.ACTIVE, "Subscription Activated"),
        (SubscriptionStatus.TRIAL, "Subscription Activated"),
        (SubscriptionStatus.RENEWING, "Subscription Activated"),
        (SubscriptionStatus.ON_HOLD, "Subscription Cancelled"),
        (SubscriptionStatus.PRORATE_CANCELED, "Subscription Cancelled"),
        (SubscriptionStatus.EXPIRED, "Subscription Expired"),
        (SubscriptionStatus.FROZEN, "Payment Past Due"),
    ])
    def test_subscription_subjects(self, status, subject):
        rendered_subject, html = render_subscription_email(SUBSCRIPTION_DATA, status)

        assert rendered_subject == f"{subject} - {SHOP_NAME}"
        assert "/billing" in html

    def test_on_hold_mentions_access_until_end(self):
        _, html = render_subscription_email(SUBSCRIPTION_DATA, SubscriptionStatus.ON_HOLD)

        assert "until 2026-03-01" in html

    def test_refund_is_mentioned(self):
        _, html = render_subscription_email({**SUBSCRIPTION_DATA, "refund_amount": "10.00"},
                                            SubscriptionStatus.PRORATE_CANCELED)

        assert "refund of 10.00" in html

    def test_shop_name_is_escaped(self):
        subject, _ = render_subscription_email({"shop_name": "<b>shop</b>"}, SubscriptionStatus.EXPIRED)

        assert "<b>" not in subject

    def test_unknown_status_is_template_error(self):
        with pytest.raises(EmailServiceError) as exc_info:
            render_subscription_email(SUBSCRIPTION_DATA, SubscriptionStatus.DECLINED)

        assert exc_info.value.code == TEMPLATE_ERROR

    def test_usage_email_includes_percentage(self):
        subject, html = render_usage_email(
            {"shop_name": SHOP_NAME, "title": "Approaching", "message": "Careful", "percentage_used": 85},
            NotificationType.USAGE_APPROACHING_LIMIT,
        )

        assert subject == f"Usage Limit Approaching - {SHOP_NAME}"
        assert "85%" in html

    def test_usage_email_without_template(self):
        with pytest.raises(EmailServiceError) as exc_info:
            render_usage_email({"shop_name": SHOP_NAME}, NotificationType.SUBSCRIPTION_STATUS)

        assert exc_info.value.code == TEMPLATE_ERROR


@pytest.mark.high
class TestSending:
    """Delivery through Resend and error classification"""

    def test_send_success(self, mock_email_service):
        assert send_subscription_email(SHOP_EMAIL, SUBSCRIPTION_DATA, SubscriptionStatus.ACTIVE) is True

        message = mock_email_service.Emails.send.call_args.args[0]
        assert message["to"] == SHOP_EMAIL
        assert message["from"] == settings.RESEND_FROM_EMAIL

    def test_not_configured_skips(self, mock_email_service):
        with patch.object(settings, "RESEND_API_KEY", ""):
            assert send_usage_email(SHOP_EMAIL, {"shop_name": SHOP_NAME}, NotificationType.TRIAL_ENDED) is False

        mock_email_service.Emails.send.assert_not_called()

    def test_missing_data_is_data_error(self, mock_email_service):
        with pytest.raises(EmailServiceError) as exc_info:
            send_subscription_email(SHOP_EMAIL, {"plan_name": "STANDARD"}, SubscriptionStatus.ACTIVE)
        assert exc_info.value.code == DATA_ERROR

        with pytest.raises(EmailServiceError) as exc_info:
            send_subscription_email("", SUBSCRIPTION_DATA, SubscriptionStatus.ACTIVE)
        assert exc_info.value.code == DATA_ERROR

        mock_email_service.Emails.send.assert_not_called()

    def test_provider_failure_is_send_error(self, mock_email_service):
        mock_email_service.Emails.send.side_effect = Exception("rate limited")

        with pytest.raises(EmailServiceError) as exc_info:
            send_subscription_email(SHOP_EMAIL, SUBSCRIPTION_DATA, SubscriptionStatus.ACTIVE)

        assert exc_info.value.code == SEND_ERROR

    def test_response_without_id_is_send_error(self, mock_email_service):
        mock_email_service.Emails.send.return_value = {}

        with pytest.raises(EmailServiceError) as exc_info:
            send_usage_email(SHOP_EMAIL, {"shop_name": SHOP_NAME}, NotificationType.TRIAL_ENDED)

        assert exc_info.value.code == SEND_ERROR

    def test_config_validation(self):
        assert validate_email_config() == (True, "")
        with patch.object(settings, "RESEND_API_KEY", ""):
            valid, message = validate_email_config()
        assert not valid
        assert "RESEND_API_KEY" in message


@pytest.mark.critical
class TestEmailAfterCommit:
    """A failed email never undoes billing state"""

    def test_subscription_is_kept_when_email_fails(self, db_session, shop, now, mock_email_service):
        mock_email_service.Emails.send.side_effect = Exception("provider down")

        with pytest.raises(EmailServiceError):
            subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)

        db_session.expire_all()
        subscription = db_session.query(Subscription).one()
        assert subscription.plan.name == "STANDARD"
        assert subscription.status == SubscriptionStatus.TRIAL
