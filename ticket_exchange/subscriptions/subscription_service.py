import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import atomic, utcnow
from ticket_exchange.exceptions import ConsistencyViolation, InvalidState, NotFound
from ticket_exchange.integrations.processor import PaymentProcessor
from ticket_exchange.models import (
    Payment, PaymentType, Subscription, SubscriptionStatus, SubscriptionTier, User,
)
from ticket_exchange.payments.fee_calculator import calculate_fees
from ticket_exchange.payments.ledger_service import OPEN_STATUSES, PaymentLedger

logger = logging.getLogger(__name__)

PAID_TIERS = (SubscriptionTier.PRO.value, SubscriptionTier.ENTERPRISE.value)
MANAGEABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)


def tier_price_cents(tier: str) -> int:
    if tier == SubscriptionTier.PRO.value:
        return settings.SUBSCRIPTION_PRO_PRICE_CENTS
    if tier == SubscriptionTier.ENTERPRISE.value:
        return settings.SUBSCRIPTION_ENTERPRISE_PRICE_CENTS
    raise ValueError("Tier must be pro or enterprise")


class SubscriptionService:
    """Organizer account tiers billed through the payment ledger.

    Every user has a subscription row, created on first access as an active
    base tier. A paid tier is bought with a ``subscription`` payment whose
    whole amount is platform revenue; the tier takes effect when that payment
    settles and lapses at the end of the billing period.
    """

    def __init__(self, db: Session, processor: Optional[PaymentProcessor] = None):
        self.db = db
        self.processor = processor
        self.ledger = PaymentLedger(db)

    def get_subscription(self, user_id: str) -> Subscription:
        subscription = self.db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if subscription is not None:
            return subscription
        if self.db.get(User, user_id) is None:
            raise NotFound("User not found", user_id=user_id)

        subscription = Subscription(user_id=user_id)
        try:
            with atomic(self.db):
                self.db.add(subscription)
        except IntegrityError:
            # Created by a concurrent first access
            return self.db.query(Subscription).filter(Subscription.user_id == user_id).one()
        self.db.refresh(subscription)
        return subscription

    def start_checkout(self, user: User, tier: str) -> dict:
        price_cents = tier_price_cents(tier)
        subscription = self.get_subscription(user.id)
        self.db.refresh(subscription)
        if subscription.status == SubscriptionStatus.ACTIVE.value and subscription.tier in PAID_TIERS:
            raise InvalidState("You already have an active subscription", subscription_id=subscription.id)
        previous_payment_id = subscription.payment_id
        if previous_payment_id:
            previous = self.db.get(Payment, previous_payment_id)
            if previous is not None and previous.status in OPEN_STATUSES:
                raise InvalidState("A subscription checkout is already in progress", payment_id=previous.id)

        fees = calculate_fees(PaymentType.SUBSCRIPTION.value, price_cents)
        with atomic(self.db):
            payment = self.ledger.open(
                PaymentType.SUBSCRIPTION.value,
                user.id,
                fees.total_cents,
                platform_fee_cents=fees.platform_fee_cents,
                metadata={"fees": fees.to_dict(), "tier": tier, "subscription_id": subscription.id},
            )
            claim = Subscription.payment_id.is_(None) if previous_payment_id is None \
                else Subscription.payment_id == previous_payment_id
            claimed = self.db.execute(
                update(Subscription)
                .where(Subscription.id == subscription.id, claim)
                .values(tier=tier, status=SubscriptionStatus.INCOMPLETE.value, payment_id=payment.id,
                        cancel_at_period_end=False)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                raise InvalidState("Subscription changed while starting checkout", subscription_id=subscription.id)

        intent = self.ledger.request_charge(self.processor, payment, user.id,
                                            {"subscription_id": subscription.id, "tier": tier})
        self.db.refresh(subscription)
        logger.info("Subscription checkout %s opened for %s (%s)", payment.id, user.id, tier)
        return {
            "subscription": subscription,
            "payment": payment,
            "client_secret": intent.client_secret,
            "fees": fees.to_dict(),
        }

    def activate(self, payment: Payment) -> None:
        """Put the purchased tier into effect; joins the settlement transaction"""
        tier = (payment.payment_metadata or {}).get("tier")
        now = utcnow()
        activated = self.db.execute(
            update(Subscription)
            .where(
                Subscription.payment_id == payment.id,
                Subscription.status == SubscriptionStatus.INCOMPLETE.value,
            )
            .values(
                tier=tier,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_start=now,
                current_period_end=now + timedelta(days=settings.SUBSCRIPTION_PERIOD_DAYS),
                cancel_at_period_end=False,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if not activated:
            raise ConsistencyViolation("Subscription is no longer awaiting this payment", payment_id=payment.id)
        logger.info("Subscription for %s active at %s", payment.user_id, tier)

    def set_cancel_at_period_end(self, user_id: str, cancel: bool) -> Subscription:
        """Stop or restart renewal; the paid tier stays in effect until the period ends"""
        subscription = self.get_subscription(user_id)
        self.db.refresh(subscription)
        if subscription.tier not in PAID_TIERS or subscription.status not in MANAGEABLE_STATUSES:
            raise InvalidState("No paid subscription to manage", subscription_id=subscription.id)
        with atomic(self.db):
            subscription.cancel_at_period_end = cancel
        self.db.refresh(subscription)
        logger.info("Subscription for %s %s", user_id, "set to cancel at period end" if cancel else "resumed")
        return subscription

    def refresh(self, user_id: str) -> Subscription:
        """Apply a lapsed billing period to one user's subscription and return it"""
        subscription = self.get_subscription(user_id)
        self.sweep_lapsed(user_id=user_id)
        self.db.refresh(subscription)
        return subscription

    def sweep_lapsed(self, now: Optional[datetime] = None, user_id: Optional[str] = None) -> int:
        """End paid periods that have run out.

        Subscriptions set to cancel become ``canceled``. The rest become
        ``past_due`` until a renewal payment settles.
        """
        now = now or utcnow()
        lapsed = 0
        with atomic(self.db):
            for cancel, target in ((True, SubscriptionStatus.CANCELED.value),
                                   (False, SubscriptionStatus.PAST_DUE.value)):
                statement = (
                    update(Subscription)
                    .where(
                        Subscription.status == SubscriptionStatus.ACTIVE.value,
                        Subscription.tier.in_(PAID_TIERS),
                        Subscription.current_period_end <= now,
                        Subscription.cancel_at_period_end == cancel,
                    )
                    .values(status=target)
                    .execution_options(synchronize_session=False)
                )
                if user_id is not None:
                    statement = statement.where(Subscription.user_id == user_id)
                lapsed += self.db.execute(statement).rowcount
        if lapsed:
            logger.info("Ended %d lapsed subscription periods", lapsed)
        return lapsed
