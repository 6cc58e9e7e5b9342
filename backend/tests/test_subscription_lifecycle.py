"""Subscription lifecycle tests (trials, renewals, cancellation, plan changes)"""
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from shopmeter.core.constants import (
    BillingAction, LIVE_STATUSES, NotificationType, PaymentStatus, Service, SubscriptionStatus,
)
from shopmeter.core.errors import (
    AlreadyTerminated, DuplicateStatusUpdate, IdempotencyConflict, InvalidPlan, InvalidStatus,
    PaymentNotFound, SubscriptionFallbackFailed, SubscriptionIdMismatch, SubscriptionNotFound,
)
from shopmeter.models.notification import Notification
from shopmeter.models.subscription import Subscription
from shopmeter.services.subscription_service import (
    cancel, check_subscription_status, freeze, get_current_subscription, get_subscription_details,
    onboard_shop, renew, subscribe, unfreeze, update, update_payment_status, update_subscription_status,
)
from shopmeter.services.usage_service import report_usage
from shopmeter.utils.dates import as_utc

from conftest import SHOP_NAME


def _live(db_session):
    return db_session.query(Subscription).filter(Subscription.status.in_(LIVE_STATUSES)).all()


def _notifications(db_session, notification_type):
    return db_session.query(Notification).filter(Notification.type == notification_type).all()


def _sent_subjects(mock_email_service):
    return [call.args[0]["subject"] for call in mock_email_service.Emails.send.call_args_list]


@pytest.mark.high
class TestDefaultSubscription:
    """Shops without a subscription land on FREE"""

    def test_onboarding_starts_free_plan(self, db_session, catalog, now):
        result = onboard_shop("new.myshopify.com", db_session, email="Owner@New.test", now=now)

        assert result["plan"] == "FREE"
        assert result["status"] == SubscriptionStatus.ACTIVE
        subscription = get_current_subscription("new.myshopify.com", db_session, now=now)
        assert subscription.id == result["subscription_id"]
        # Free plan never records payments
        assert subscription.payments == []

    def test_first_read_creates_default(self, db_session, shop, now):
        subscription = get_current_subscription(SHOP_NAME, db_session, now=now)

        assert subscription.plan.name == "FREE"
        assert as_utc(subscription.end_date) == now + timedelta(days=28)
        assert len(_live(db_session)) == 1


@pytest.mark.critical
class TestTrial:
    """Trial start, reminders and conversion"""

    def test_subscribe_starts_trial_with_scheduled_payment(self, db_session, shop, now):
        subscription = subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)

        assert subscription.status == SubscriptionStatus.TRIAL
        assert subscription.has_trial is True
        assert as_utc(subscription.trial_end_date) == now + timedelta(days=7)
        assert as_utc(subscription.end_date) == now + timedelta(days=7)
        payment = subscription.latest_payment
        assert payment.status == PaymentStatus.SCHEDULED
        assert payment.amount == Decimal("20.00")
        assert as_utc(payment.billing_period_start) == now + timedelta(days=7)

    def test_trial_converts_exactly_once(self, db_session, shop, now):
        subscription = subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)
        after_trial = now + timedelta(days=7, seconds=1)

        converted = get_current_subscription(SHOP_NAME, db_session, now=after_trial)
        again = get_current_subscription(SHOP_NAME, db_session, now=after_trial + timedelta(minutes=5))

        assert converted.id == subscription.id == again.id
        assert again.status == SubscriptionStatus.ACTIVE
        assert again.has_trial_ended is True
        assert as_utc(again.start_date) == after_trial
        assert as_utc(again.end_date) == after_trial + timedelta(days=28)
        assert [payment.status for payment in again.payments] == [PaymentStatus.SUCCEEDED]
        assert len(_notifications(db_session, NotificationType.TRIAL_ENDED)) == 1

    def test_trial_ending_notices_once_per_day_count(self, db_session, shop, now):
        subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)

        get_current_subscription(SHOP_NAME, db_session, now=now + timedelta(days=3))
        get_current_subscription(SHOP_NAME, db_session, now=now + timedelta(days=3, hours=1))
        assert len(_notifications(db_session, NotificationType.TRIAL_ENDING)) == 1

        # 3 days left: not a reminder day
        get_current_subscription(SHOP_NAME, db_session, now=now + timedelta(days=4))
        assert len(_notifications(db_session, NotificationType.TRIAL_ENDING)) == 1

        get_current_subscription(SHOP_NAME, db_session, now=now + timedelta(days=5))
        notices = _notifications(db_session, NotificationType.TRIAL_ENDING)
        assert sorted(notice.dedup_key.rsplit(":", 1)[1] for notice in notices) == ["2", "4"]

    def test_no_second_trial_on_same_plan(self, db_session, shop, now):
        subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)
        subscribe(SHOP_NAME, "PREMIUM", "txn-2", db_session, now=now + timedelta(days=1))
        again = subscribe(SHOP_NAME, "STANDARD", "txn-3", db_session, now=now + timedelta(days=2))

        assert again.status == SubscriptionStatus.ACTIVE
        assert again.has_trial is False
        assert again.latest_payment.status == PaymentStatus.SUCCEEDED

    def test_trial_details_are_reported(self, db_session, shop, now):
        subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)

        details = get_subscription_details(SHOP_NAME, db_session, now=now + timedelta(days=1))

        assert details["status"] == SubscriptionStatus.TRIAL
        assert details["plan"]["name"] == "STANDARD"
        assert details["trial"]["has_trial"] is True
        assert details["trial"]["days_until_trial_ends"] == 6
        assert details["latest_payment"]["status"] == PaymentStatus.SCHEDULED


@pytest.mark.critical
class TestRenewal:
    """Automatic and explicit renewal"""

    def test_auto_renews_after_end_date(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        end = as_utc(subscription.end_date)
        report_usage(SHOP_NAME, Service.CRAWL_API, 10, db_session, now=now + timedelta(days=3))

        before = get_current_subscription(SHOP_NAME, db_session, now=end - timedelta(seconds=1))
        assert as_utc(before.start_date) == now
        assert len(before.payments) == 1

        renewed = get_current_subscription(SHOP_NAME, db_session, now=end + timedelta(seconds=1))
        assert renewed.id == subscription.id
        assert renewed.status == SubscriptionStatus.ACTIVE
        assert as_utc(renewed.start_date) == end + timedelta(seconds=1)
        assert len(renewed.payments) == 2
        assert renewed.latest_payment.status == PaymentStatus.SUCCEEDED
        # Allowance is granted afresh for the new cycle
        assert renewed.usage.detail_for(Service.CRAWL_API).total_requests_used == 0
        statuses = [
            notice.notification_metadata["status"]
            for notice in _notifications(db_session, NotificationType.SUBSCRIPTION_STATUS)
        ]
        assert statuses == [SubscriptionStatus.ACTIVE, SubscriptionStatus.RENEWING]

    def test_explicit_renew_extends_from_now(self, db_session, shop, pro_plan, now):
        subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        later = now + timedelta(days=10)

        renewed = renew(SHOP_NAME, "txn-renew", db_session, now=later)

        assert as_utc(renewed.start_date) == later
        assert as_utc(renewed.end_date) == later + timedelta(days=28)
        assert [payment.external_transaction_id for payment in renewed.payments] == ["txn-1", "txn-renew"]
        # Replayed reference returns the same subscription without charging again
        replay = renew(SHOP_NAME, "txn-renew", db_session, now=later + timedelta(minutes=1))
        assert replay.id == renewed.id
        assert len(replay.payments) == 2

    def test_renew_during_trial_ends_trial(self, db_session, shop, now):
        subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)

        renewed = renew(SHOP_NAME, "txn-renew", db_session, now=now + timedelta(days=2))

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.has_trial_ended is True
        assert [payment.status for payment in renewed.payments] == [PaymentStatus.CANCELLED, PaymentStatus.SUCCEEDED]

    def test_free_plan_cannot_be_renewed(self, db_session, shop, now):
        with pytest.raises(SubscriptionNotFound):
            renew(SHOP_NAME, "txn-renew", db_session, now=now)


@pytest.mark.critical
class TestCancellation:
    """End-of-cycle and prorated cancellation"""

    def test_cancel_holds_until_end_then_falls_back_to_free(self, db_session, shop, pro_plan, now, mock_email_service):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        end = as_utc(subscription.end_date)

        result = cancel(SHOP_NAME, db_session, reason="too expensive", now=now + timedelta(days=1))
        assert result["status"] == SubscriptionStatus.ON_HOLD

        # Still usable until the cycle ends
        held = get_current_subscription(SHOP_NAME, db_session, now=end - timedelta(minutes=1))
        assert held.id == subscription.id
        assert held.status == SubscriptionStatus.ON_HOLD

        fallback = get_current_subscription(SHOP_NAME, db_session, now=end + timedelta(seconds=1))
        assert fallback.plan.name == "FREE"
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert len(_live(db_session)) == 1
        assert "Subscription Expired - acme.myshopify.com" in _sent_subjects(mock_email_service)

    def test_prorated_cancel_refunds_unused_share(self, db_session, shop, pro_plan, now):
        subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        halfway = now + timedelta(days=14)

        result = cancel(SHOP_NAME, db_session, reason="closing", prorate=True, now=halfway)

        assert result["status"] == SubscriptionStatus.PRORATE_CANCELED
        assert result["refund_amount"] == 10
        assert result["adjusted_amount"] == 10
        cancelled = db_session.query(Subscription).filter(Subscription.id == result["subscription_id"]).one()
        assert as_utc(cancelled.end_date) == halfway
        assert cancelled.latest_payment.refunded_amount == Decimal("10.00")

        assert get_current_subscription(SHOP_NAME, db_session, now=halfway).plan.name == "FREE"

    def test_prorated_cancel_during_trial_refunds_nothing(self, db_session, shop, now):
        subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)

        result = cancel(SHOP_NAME, db_session, prorate=True, now=now + timedelta(days=2))

        assert result["refund_amount"] == 0
        cancelled = db_session.query(Subscription).filter(Subscription.id == result["subscription_id"]).one()
        assert cancelled.latest_payment.status == PaymentStatus.CANCELLED

    def test_free_plan_cannot_be_cancelled(self, db_session, shop, now):
        with pytest.raises(SubscriptionNotFound):
            cancel(SHOP_NAME, db_session, now=now)


@pytest.mark.critical
class TestStatusUpdates:
    """Externally reported status changes"""

    def test_duplicate_update_inside_debounce_window(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)

        with pytest.raises(DuplicateStatusUpdate):
            update_subscription_status(subscription.id, SubscriptionStatus.ACTIVE, db_session, now=now + timedelta(minutes=10))

        result = update_subscription_status(
            subscription.id, SubscriptionStatus.ACTIVE, db_session, now=now + timedelta(minutes=31)
        )
        assert result["previous_status"] == SubscriptionStatus.ACTIVE
        assert result["status"] == SubscriptionStatus.ACTIVE

    def test_cancel_request_becomes_on_hold(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)

        result = update_subscription_status(
            subscription.id, SubscriptionStatus.CANCELLED, db_session, cancel_reason="requested", now=now
        )

        assert result["status"] == SubscriptionStatus.ON_HOLD
        with pytest.raises(DuplicateStatusUpdate):
            update_subscription_status(subscription.id, SubscriptionStatus.ON_HOLD, db_session,
                                       now=now + timedelta(minutes=5))

    def test_terminated_subscription_rejects_updates(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        cancel(SHOP_NAME, db_session, prorate=True, now=now + timedelta(days=1))

        with pytest.raises(AlreadyTerminated):
            update_subscription_status(subscription.id, SubscriptionStatus.ACTIVE, db_session,
                                       now=now + timedelta(days=2))

    def test_prorate_after_cycle_end_terminates(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        after_end = as_utc(subscription.end_date) + timedelta(days=1)

        result = update_subscription_status(
            subscription.id, SubscriptionStatus.CANCELLED, db_session, prorate=True, now=after_end
        )

        assert result["status"] == SubscriptionStatus.TERMINATED

    def test_unknown_status_and_reference_mismatch(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)

        with pytest.raises(InvalidStatus):
            update_subscription_status(subscription.id, "PAUSED", db_session, now=now)
        with pytest.raises(SubscriptionIdMismatch):
            update_subscription_status(subscription.id, SubscriptionStatus.ACTIVE, db_session,
                                       external_subscription_id="txn-other", now=now + timedelta(hours=1))
        with pytest.raises(SubscriptionNotFound):
            update_subscription_status(9999, SubscriptionStatus.ACTIVE, db_session, now=now)

    def test_cancel_callback_on_frozen_subscription_retires_default(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        freeze(SHOP_NAME, db_session, now=now + timedelta(days=1))
        interim = get_current_subscription(SHOP_NAME, db_session, now=now + timedelta(days=2))
        assert interim.plan.name == "FREE"

        result = update_subscription_status(
            subscription.id, SubscriptionStatus.CANCELLED, db_session, now=now + timedelta(days=3)
        )

        assert result["status"] == SubscriptionStatus.ON_HOLD
        assert [row.id for row in _live(db_session)] == [subscription.id]
        db_session.refresh(interim)
        assert interim.status == SubscriptionStatus.CANCELLED


@pytest.mark.critical
class TestPlanChanges:
    """subscribe / update, idempotency and compensation"""

    def test_single_live_subscription(self, db_session, shop, pro_plan, now):
        subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        update(SHOP_NAME, "PREMIUM", "txn-2", db_session, now=now + timedelta(days=1))
        subscribe(SHOP_NAME, "STANDARD", "txn-3", db_session, now=now + timedelta(days=2))

        live = _live(db_session)
        assert len(live) == 1
        assert live[0].plan.name == "STANDARD"
        assert db_session.query(Subscription).count() == 3

    def test_replayed_subscribe_returns_same_subscription(self, db_session, shop, pro_plan, now):
        first = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        second = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now + timedelta(minutes=1))

        assert second.id == first.id
        assert len(second.payments) == 1
        with pytest.raises(IdempotencyConflict):
            renew(SHOP_NAME, "txn-1", db_session, now=now + timedelta(minutes=2))

    def test_update_to_same_plan_is_rejected(self, db_session, shop, pro_plan, now):
        subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)

        with pytest.raises(InvalidPlan):
            update(SHOP_NAME, "PRO", "txn-2", db_session, now=now)

    def test_unknown_plan_is_rejected(self, db_session, shop, now):
        with pytest.raises(InvalidPlan):
            subscribe(SHOP_NAME, "GOLD", "txn-1", db_session, now=now)

    def test_failed_update_restores_previous_subscription(self, db_session, shop, pro_plan, now):
        original = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        original_end = as_utc(original.end_date)

        with patch("shopmeter.services.subscription_service._start_subscription",
                   side_effect=RuntimeError("provisioning failed")):
            with pytest.raises(RuntimeError, match="provisioning failed"):
                update(SHOP_NAME, "STANDARD", "txn-2", db_session, now=now + timedelta(days=1))

        db_session.expire_all()
        restored = get_current_subscription(SHOP_NAME, db_session, now=now + timedelta(days=1))
        assert restored.id == original.id
        assert restored.status == SubscriptionStatus.ACTIVE
        assert as_utc(restored.end_date) == original_end
        assert restored.canceled_at is None

    def test_failed_restore_raises_fallback_failed(self, db_session, shop, pro_plan, now):
        subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)

        with patch("shopmeter.services.subscription_service._start_subscription",
                   side_effect=RuntimeError("provisioning failed")), \
                patch("shopmeter.services.subscription_service.get_subscription",
                      side_effect=SubscriptionNotFound("gone")):
            with pytest.raises(SubscriptionFallbackFailed) as exc_info:
                update(SHOP_NAME, "STANDARD", "txn-2", db_session, now=now + timedelta(days=1))

        assert isinstance(exc_info.value.original, RuntimeError)
        assert isinstance(exc_info.value.fallback, SubscriptionNotFound)


@pytest.mark.high
class TestFreeze:
    """Payment-failure pause and resume"""

    def test_freeze_and_unfreeze_trial(self, db_session, shop, now, mock_email_service):
        subscription = subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)

        frozen = freeze(SHOP_NAME, db_session, reason="card declined", now=now + timedelta(days=1))
        assert frozen["status"] == SubscriptionStatus.FROZEN
        assert "Payment Past Due - acme.myshopify.com" in _sent_subjects(mock_email_service)

        # While frozen the shop is served by a FREE default
        interim = get_current_subscription(SHOP_NAME, db_session, now=now + timedelta(days=2))
        assert interim.plan.name == "FREE"

        resumed = unfreeze(SHOP_NAME, db_session, now=now + timedelta(days=2))
        assert resumed["subscription_id"] == subscription.id
        assert resumed["status"] == SubscriptionStatus.TRIAL

        live = _live(db_session)
        assert [row.id for row in live] == [subscription.id]
        db_session.refresh(subscription)
        assert subscription.latest_payment.status == PaymentStatus.SCHEDULED

    def test_unfreeze_after_trial_end_converts_and_settles_payment(self, db_session, shop, now):
        subscription = subscribe(SHOP_NAME, "STANDARD", "txn-1", db_session, now=now)
        freeze(SHOP_NAME, db_session, now=now + timedelta(days=1))
        resumed_at = now + timedelta(days=10)

        resumed = unfreeze(SHOP_NAME, db_session, now=resumed_at)

        assert resumed["status"] == SubscriptionStatus.ACTIVE
        db_session.refresh(subscription)
        assert subscription.has_trial_ended
        assert as_utc(subscription.start_date) == resumed_at
        assert [(payment.status, payment.amount) for payment in subscription.payments] == [
            (PaymentStatus.SUCCEEDED, Decimal("20.00")),
        ]
        assert len(_notifications(db_session, NotificationType.TRIAL_ENDED)) == 1

    def test_unfreeze_without_frozen_subscription(self, db_session, shop, now):
        with pytest.raises(SubscriptionNotFound):
            unfreeze(SHOP_NAME, db_session, now=now)


@pytest.mark.high
class TestPaymentStatus:
    """Outcomes reported by the billing confirmation flow"""

    def test_pending_subscription_activates_on_success(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        subscription.status = SubscriptionStatus.PENDING
        db_session.commit()
        payment_id = subscription.latest_payment.id

        result = update_payment_status(payment_id, PaymentStatus.SUCCEEDED, db_session,
                                       shop_name=SHOP_NAME, now=now + timedelta(minutes=1))

        assert result["subscription_status"] == SubscriptionStatus.ACTIVE

    def test_pending_subscription_declined_on_failure(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        subscription.status = SubscriptionStatus.PENDING
        db_session.commit()

        result = update_payment_status(subscription.latest_payment.id, PaymentStatus.FAILED, db_session, now=now)

        assert result["status"] == PaymentStatus.FAILED
        assert result["subscription_status"] == SubscriptionStatus.DECLINED

    def test_payment_of_other_shop_is_not_found(self, db_session, shop, pro_plan, now):
        subscription = subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        onboard_shop("other.myshopify.com", db_session, now=now)

        with pytest.raises(PaymentNotFound):
            update_payment_status(subscription.latest_payment.id, PaymentStatus.FAILED, db_session,
                                  shop_name="other.myshopify.com", now=now)


@pytest.mark.medium
class TestBillingAction:
    """Routing a plan request to subscribe / update / renew / cancel"""

    def test_actions_follow_current_subscription(self, db_session, shop, pro_plan, now):
        def action(plan, moment=now):
            return check_subscription_status(SHOP_NAME, plan, db_session, now=moment)["action"]

        assert action("PRO") == BillingAction.SUBSCRIBE
        assert action("FREE") == BillingAction.NONE

        subscribe(SHOP_NAME, "PRO", "txn-1", db_session, now=now)
        assert action("STANDARD") == BillingAction.UPDATE
        assert action("FREE") == BillingAction.CANCEL
        assert action("PRO") == BillingAction.NONE

        cancel(SHOP_NAME, db_session, now=now + timedelta(days=1))
        assert action("PRO", now + timedelta(days=1)) == BillingAction.RENEW
