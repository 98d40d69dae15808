"""
Tests for account subscriptions (subscription_service.py).

Covers:
  - Base tier created on first access
  - Paid checkout through a subscription payment, settled into an active tier
  - Declines, duplicate checkouts and abandoned checkouts
  - Cancel at period end, resume, and period lapse
  - Refunds ending the subscription
"""

from datetime import timedelta

import pytest

from ticket_exchange.admin.maintenance_service import MaintenanceService
from ticket_exchange.database import as_utc, utcnow
from ticket_exchange.exceptions import InvalidState, ProcessorFailure
from ticket_exchange.models import PaymentStatus, SubscriptionStatus
from ticket_exchange.payments.checkout_service import CheckoutService
from ticket_exchange.payments.ledger_service import PaymentLedger
from ticket_exchange.subscriptions.subscription_service import SubscriptionService


@pytest.fixture
def subscriptions(db, processor):
    return SubscriptionService(db, processor)


@pytest.fixture
def subscribe(db, processor, notifier, stream, subscriptions):
    """Buy a tier and settle it synchronously."""
    def _subscribe(user, tier="pro"):
        started = subscriptions.start_checkout(user, tier)
        CheckoutService(db, processor, notifier, stream).complete_checkout(started["payment"].id, user.id)
        return subscriptions.get_subscription(user.id)
    return _subscribe


def _end_period(db, subscription):
    subscription.current_period_end = utcnow() - timedelta(minutes=1)
    db.commit()


class TestDefaults:
    def test_first_access_is_active_base(self, subscriptions, organizer):
        subscription = subscriptions.get_subscription(organizer.id)
        assert subscription.tier == "base"
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.effective_tier == "base"
        assert subscriptions.get_subscription(organizer.id).id == subscription.id


class TestCheckout:
    def test_paid_tier_settles(self, db, subscriptions, subscribe, organizer):
        started = subscriptions.start_checkout(organizer, "pro")
        payment = started["payment"]
        assert payment.type == "subscription"
        assert payment.amount_cents == 999
        assert payment.platform_fee_cents == 999
        assert payment.event_id is None
        assert started["client_secret"]
        assert started["subscription"].status == SubscriptionStatus.INCOMPLETE.value
        assert started["subscription"].effective_tier == "base"

        CheckoutService(db, subscriptions.processor).complete_checkout(payment.id, organizer.id)
        subscription = subscriptions.get_subscription(organizer.id)
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.effective_tier == "pro"
        period = as_utc(subscription.current_period_end) - as_utc(subscription.current_period_start)
        assert period == timedelta(days=30)

    def test_unknown_tier(self, subscriptions, organizer):
        with pytest.raises(ValueError):
            subscriptions.start_checkout(organizer, "base")

    def test_active_paid_tier_blocks_checkout(self, subscriptions, subscribe, organizer):
        subscribe(organizer)
        with pytest.raises(InvalidState):
            subscriptions.start_checkout(organizer, "enterprise")

    def test_one_checkout_at_a_time(self, subscriptions, organizer):
        subscriptions.start_checkout(organizer, "pro")
        with pytest.raises(InvalidState):
            subscriptions.start_checkout(organizer, "enterprise")

    def test_declined_card_keeps_base(self, db, processor, subscriptions, organizer):
        payment = subscriptions.start_checkout(organizer, "enterprise")["payment"]
        processor.declined_payers.add(organizer.id)
        with pytest.raises(ProcessorFailure):
            CheckoutService(db, processor).complete_checkout(payment.id, organizer.id)

        subscription = subscriptions.get_subscription(organizer.id)
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatus.INCOMPLETE.value
        assert subscription.effective_tier == "base"

        processor.declined_payers.clear()
        retry = subscriptions.start_checkout(organizer, "pro")["payment"]
        assert retry.id != payment.id

    def test_abandoned_checkout_can_be_restarted(self, db, processor, subscriptions, organizer):
        abandoned = subscriptions.start_checkout(organizer, "pro")["payment"]
        assert PaymentLedger(db).expire_abandoned(processor, utcnow() + timedelta(hours=1)) == 1
        db.refresh(abandoned)
        assert abandoned.status == PaymentStatus.FAILED.value
        assert subscriptions.start_checkout(organizer, "pro")["payment"].id != abandoned.id


class TestManage:
    def test_cancel_and_resume(self, subscriptions, subscribe, organizer):
        subscribe(organizer)
        assert subscriptions.set_cancel_at_period_end(organizer.id, True).cancel_at_period_end is True
        resumed = subscriptions.set_cancel_at_period_end(organizer.id, False)
        assert resumed.cancel_at_period_end is False
        assert resumed.effective_tier == "pro"

    def test_base_tier_cannot_be_cancelled(self, subscriptions, organizer):
        with pytest.raises(InvalidState):
            subscriptions.set_cancel_at_period_end(organizer.id, True)

    def test_cancelled_period_ends_as_canceled(self, db, subscriptions, subscribe, organizer):
        subscription = subscribe(organizer)
        subscriptions.set_cancel_at_period_end(organizer.id, True)
        _end_period(db, subscription)

        refreshed = subscriptions.refresh(organizer.id)
        assert refreshed.status == SubscriptionStatus.CANCELED.value
        assert refreshed.effective_tier == "base"

    def test_unrenewed_period_is_past_due(self, db, stream, subscribe, organizer):
        subscription = subscribe(organizer, "enterprise")
        _end_period(db, subscription)

        assert MaintenanceService(db, stream).run_sweeps()["subscriptions_lapsed"] == 1
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatus.PAST_DUE.value
        assert subscription.effective_tier == "base"
        assert MaintenanceService(db, stream).run_sweeps()["subscriptions_lapsed"] == 0

    def test_refund_ends_subscription(self, db, processor, subscribe, organizer):
        subscription = subscribe(organizer)
        PaymentLedger(db).refund(subscription.payment_id, organizer.id, processor)
        db.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert subscription.effective_tier == "base"
