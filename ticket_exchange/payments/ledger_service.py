import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import atomic, utcnow
from ticket_exchange.events.event_service import EventService, ORGANIZER
from ticket_exchange.exceptions import (
    ConsistencyViolation, InvalidState, NotFound, ProcessorFailure, Unauthorized,
)
from ticket_exchange.integrations.processor import ChargeIntent, PaymentProcessor
from ticket_exchange.models import (
    Event, Payment, PaymentStatus, PaymentType, StaffRole, Subscription, SubscriptionStatus, Ticket,
    TicketStatus,
)
from ticket_exchange.payments.referral_service import ReferralService
from ticket_exchange.resale.listing_service import ListingService
from ticket_exchange.tickets.ticket_service import TicketService

logger = logging.getLogger(__name__)

OPEN_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)
TICKET_BEARING_TYPES = (
    PaymentType.PRIMARY_PURCHASE.value,
    PaymentType.FAVOR_TICKET_PURCHASE.value,
    PaymentType.VENDOR_POS.value,
)
CHECKOUT_TYPES = (
    PaymentType.PRIMARY_PURCHASE.value,
    PaymentType.FAVOR_TICKET_PURCHASE.value,
    PaymentType.RESALE_PURCHASE.value,
    PaymentType.SUBSCRIPTION.value,
)


class PaymentLedger:
    """Append-mostly record of money movement.

    Rows are opened ``pending``, move to ``processing`` once the processor
    has issued a charge intent, and are closed by the processor's outcome.
    Methods that do not commit join the caller's transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, payment_id: str) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found", payment_id=payment_id)
        return payment

    def get_by_intent(self, intent_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.processor_intent_id == intent_id).first()

    def list_for_user(self, user_id: str) -> List[Payment]:
        return self.db.query(Payment).filter(Payment.user_id == user_id).order_by(Payment.created_at.desc()).all()

    def open(self, payment_type: str, user_id: str, amount_cents: int, platform_fee_cents: int = 0,
             metadata: Optional[dict] = None, event_id: Optional[str] = None, listing_id: Optional[str] = None,
             offer_id: Optional[str] = None, pending_payment_id: Optional[str] = None) -> Payment:
        if amount_cents < 0 or platform_fee_cents < 0:
            raise ValueError("Payment amounts cannot be negative")
        payment = Payment(
            type=PaymentType(payment_type).value,
            user_id=user_id,
            event_id=event_id,
            amount_cents=amount_cents,
            platform_fee_cents=platform_fee_cents,
            currency=settings.CURRENCY,
            status=PaymentStatus.PENDING.value,
            listing_id=listing_id,
            offer_id=offer_id,
            pending_payment_id=pending_payment_id,
            payment_metadata=metadata or {},
        )
        self.db.add(payment)
        self.db.flush()
        logger.info("Opened %s payment %s for %s cents", payment.type, payment.id, amount_cents)
        return payment

    def attach_intent(self, payment_id: str, intent_id: str) -> None:
        attached = self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.PROCESSING.value, processor_intent_id=intent_id)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not attached:
            raise InvalidState("Payment is no longer pending", payment_id=payment_id)

    def mark_processor_result(self, payment_id: str, success: bool, processor_ref: Optional[str]) -> bool:
        """Close an open payment with the processor's verdict.

        Returns False when the same verdict was already recorded, so repeated
        deliveries are no-ops. A verdict contradicting the recorded one raises
        ``ConsistencyViolation``.
        """
        target = PaymentStatus.COMPLETED.value if success else PaymentStatus.FAILED.value
        values = {"status": target}
        if processor_ref:
            values["processor_charge_id"] = processor_ref

        closed = self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(OPEN_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if closed:
            logger.info("Payment %s %s", payment_id, target)
            return True

        current = self.db.query(Payment.status).filter(Payment.id == payment_id).scalar()
        if current is None:
            raise NotFound("Payment not found", payment_id=payment_id)
        if current == target or (success and current == PaymentStatus.REFUNDED.value):
            logger.info("Duplicate processor outcome for payment %s ignored", payment_id)
            return False
        raise ConsistencyViolation(
            f"Processor reported {target} for a payment already {current}", payment_id=payment_id
        )

    def request_charge(self, processor: PaymentProcessor, payment: Payment, payer_ref: str,
                       metadata: Optional[dict] = None) -> ChargeIntent:
        """Ask the processor for a charge intent for an already committed payment.

        No transaction is open while the processor is called. A transport
        error fails the payment and propagates.
        """
        payment_id = payment.id
        try:
            intent = processor.create_charge_intent(
                payment.amount_cents, payment.currency, payer_ref, {"payment_id": payment_id, **(metadata or {})}
            )
        except ProcessorFailure as exc:
            logger.error("Charge intent for payment %s failed: %s", payment_id, exc)
            with atomic(self.db):
                self.mark_processor_result(payment_id, False, None)
            raise

        with atomic(self.db):
            self.attach_intent(payment_id, intent.intent_id)
        self.db.refresh(payment)
        return intent

    def expire_abandoned(self, processor: Optional[PaymentProcessor], now: Optional[datetime] = None,
                         payment_types: Sequence[str] = CHECKOUT_TYPES) -> int:
        """Fail checkout payments left open past ``OPEN_PAYMENT_TTL_MINUTES``.

        The charge intent is voided at the processor first. An intent that was
        charged in the meantime is left alone so its outcome can still settle,
        and one that cannot be voided right now is retried on the next sweep.
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.OPEN_PAYMENT_TTL_MINUTES)
        stale = (
            self.db.query(Payment)
            .filter(
                Payment.type.in_(tuple(payment_types)),
                Payment.status.in_(OPEN_STATUSES),
                Payment.created_at <= cutoff,
            )
            .all()
        )

        expired = 0
        for payment in stale:
            if payment.processor_intent_id:
                if processor is None:
                    continue
                try:
                    if not processor.cancel_charge(payment.processor_intent_id):
                        logger.info("Payment %s was charged before it could be voided", payment.id)
                        continue
                except ProcessorFailure as exc:
                    logger.warning("Voiding payment %s failed: %s", payment.id, exc)
                    continue
            with atomic(self.db):
                expired += self.db.execute(
                    update(Payment)
                    .where(Payment.id == payment.id, Payment.status.in_(OPEN_STATUSES))
                    .values(status=PaymentStatus.FAILED.value)
                    .execution_options(synchronize_session=False)
                ).rowcount
        if expired:
            logger.info("Failed %d abandoned payments", expired)
        return expired

    # Refunds

    def refund(self, payment_id: str, actor_id: str, processor: PaymentProcessor) -> Payment:
        """Refund a completed payment and reverse what it paid for.

        Ticket-bearing payments move their tickets to ``refunded`` (which
        releases capacity and closes listings). Resale refunds only flag the
        listing; who should own the ticket afterwards is left to manual
        reconciliation.
        """
        payment = self.get(payment_id)
        self._authorize_refund(payment, actor_id)
        if payment.status != PaymentStatus.COMPLETED.value:
            raise InvalidState(f"Only completed payments can be refunded (payment is {payment.status})",
                               payment_id=payment_id)

        tickets = self.db.query(Ticket).filter(Ticket.payment_id == payment_id).all()
        if payment.type in TICKET_BEARING_TYPES:
            moved_on = [t.id for t in tickets if t.owner_user_id != payment.user_id]
            if moved_on:
                logger.error("Refund of payment %s blocked: tickets %s changed hands", payment_id, moved_on)
                raise ConsistencyViolation("Tickets bought with this payment now belong to someone else",
                                           payment_id=payment_id, ticket_ids=moved_on)

        if payment.processor_charge_id:
            processor.refund(payment.processor_charge_id)

        tickets_service = TicketService(self.db)
        with atomic(self.db):
            refunded = self.db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PaymentStatus.COMPLETED.value)
                .values(status=PaymentStatus.REFUNDED.value, refunded_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            if not refunded:
                logger.error("Payment %s refunded at the processor but changed locally", payment_id)
                raise ConsistencyViolation("Payment changed while the refund was in flight", payment_id=payment_id)

            if payment.type in TICKET_BEARING_TYPES:
                for ticket in tickets:
                    tickets_service.terminate(ticket, TicketStatus.REFUNDED.value)
            elif payment.type == PaymentType.RESALE_PURCHASE.value and payment.listing_id:
                ListingService(self.db).flag_refund(payment.listing_id)
            elif payment.type == PaymentType.SUBSCRIPTION.value:
                self._end_refunded_subscription(payment_id)

            ReferralService(self.db).cancel_earnings_for_payment(payment_id)

        self.db.refresh(payment)
        logger.info("Payment %s refunded by %s", payment_id, actor_id)
        return payment

    def _end_refunded_subscription(self, payment_id: str) -> None:
        now = utcnow()
        self.db.execute(
            update(Subscription)
            .where(
                Subscription.payment_id == payment_id,
                Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]),
            )
            .values(status=SubscriptionStatus.CANCELED.value, current_period_end=now, cancel_at_period_end=False)
            .execution_options(synchronize_session=False)
        )

    def _authorize_refund(self, payment: Payment, actor_id: str) -> None:
        if payment.user_id == actor_id:
            return
        if payment.event_id and self.db.get(Event, payment.event_id) is not None:
            events = EventService(self.db)
            role = events.role_of(events.get_event(payment.event_id), actor_id)
            if role in (ORGANIZER, StaffRole.ADMIN.value):
                return
        raise Unauthorized("Not permitted to refund this payment", payment_id=payment.id)
