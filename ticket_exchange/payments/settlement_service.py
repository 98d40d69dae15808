"""
Applies payment processor outcomes to the ledger and everything the
payment was for.

Outcomes arrive either synchronously (the caller confirms a charge and waits)
or through the processor webhook, possibly after the original caller is
gone. Both paths end in ``apply_outcome``, which commits the payment status
and all dependent mutations as one unit. A mismatch between the outcome and
current state rolls that unit back, is logged at ERROR, marks the payment
for manual reconciliation in a separate unit, and propagates.
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ticket_exchange.database import atomic, utcnow
from ticket_exchange.exceptions import CapacityExceeded, ConsistencyViolation, NotFound, ProcessorFailure
from ticket_exchange.handshake.stream import PaymentStreamManager, payment_stream, pending_payment_event
from ticket_exchange.integrations.notifications import NotificationSink
from ticket_exchange.integrations.processor import PaymentProcessor
from ticket_exchange.models import (
    HandshakeStatus, Payment, PaymentType, PendingPayment, ResaleListing, Ticket, User,
)
from ticket_exchange.offers.offer_service import OfferService
from ticket_exchange.payments.ledger_service import PaymentLedger
from ticket_exchange.payments.referral_service import ReferralService
from ticket_exchange.resale.listing_service import ListingService
from ticket_exchange.subscriptions.subscription_service import SubscriptionService
from ticket_exchange.tickets.ticket_service import TicketService
from ticket_exchange.wallet.balance_service import BalanceService

logger = logging.getLogger(__name__)


class SettlementService:
    def __init__(self, db: Session, processor: Optional[PaymentProcessor] = None,
                 notifier: Optional[NotificationSink] = None, stream: PaymentStreamManager = payment_stream):
        self.db = db
        self.processor = processor
        self.notifier = notifier
        self.stream = stream
        self.ledger = PaymentLedger(db)
        self.tickets = TicketService(db, notifier)
        self._after_commit: List[Callable[[], None]] = []

    def complete_synchronously(self, payment_id: str) -> Payment:
        """Confirm a processing payment with the processor and apply the verdict.

        Raises ``ProcessorFailure`` when the charge was declined or could not
        be confirmed; the payment is failed first either way.
        """
        payment = self.ledger.get(payment_id)
        intent_id = payment.processor_intent_id
        if not intent_id:
            raise ProcessorFailure("Payment has no charge intent", payment_id=payment_id)

        try:
            outcome = self.processor.confirm_charge(intent_id)
        except ProcessorFailure as exc:
            logger.error("Confirming payment %s failed: %s", payment_id, exc)
            self.apply_outcome(intent_id, False, None, failure_message=exc.message)
            raise

        payment = self.apply_outcome(outcome.intent_id, outcome.success, outcome.charge_ref,
                                     failure_message=outcome.failure_message)
        if not outcome.success:
            raise ProcessorFailure(outcome.failure_message or "Payment declined", payment_id=payment_id)
        return payment

    def apply_outcome(self, intent_id: str, success: bool, charge_ref: Optional[str],
                      failure_message: Optional[str] = None) -> Payment:
        payment = self.ledger.get_by_intent(intent_id)
        if payment is None:
            logger.error("Processor outcome for unknown intent %s", intent_id)
            raise NotFound("No payment for this charge intent", intent_id=intent_id)
        payment_id = payment.id
        self._after_commit = []

        try:
            with atomic(self.db):
                if not self.ledger.mark_processor_result(payment_id, success, charge_ref):
                    return self.ledger.get(payment_id)
                self.db.refresh(payment)
                if success:
                    self._apply_success(payment)
                else:
                    self._apply_failure(payment, failure_message)
        except ConsistencyViolation as exc:
            logger.error("Consistency violation settling payment %s: %s", payment_id, exc.message)
            self._flag_reconciliation(payment_id, exc.message)
            raise

        for callback in self._after_commit:
            callback()
        self._after_commit = []
        self.db.refresh(payment)
        return payment

    def _flag_reconciliation(self, payment_id: str, reason: str) -> None:
        with atomic(self.db):
            payment = self.db.get(Payment, payment_id)
            self.db.refresh(payment)
            payment.payment_metadata = {
                **(payment.payment_metadata or {}),
                "reconciliation_required": True,
                "reconciliation_reason": reason,
                "reconciliation_flagged_at": utcnow().isoformat(),
            }

    # Success paths

    def _apply_success(self, payment: Payment) -> None:
        if payment.type == PaymentType.PRIMARY_PURCHASE.value:
            self._settle_primary(payment)
        elif payment.type == PaymentType.FAVOR_TICKET_PURCHASE.value:
            ticket = OfferService(self.db, self.notifier).complete_paid_acceptance(payment)
            ReferralService(self.db).record_earning(payment)
            self._after_commit.append(lambda: self.tickets.notify_received(ticket))
        elif payment.type == PaymentType.RESALE_PURCHASE.value:
            self._settle_resale(payment)
        elif payment.type == PaymentType.VENDOR_POS.value:
            self._settle_handshake(payment)
        elif payment.type == PaymentType.SUBSCRIPTION.value:
            SubscriptionService(self.db).activate(payment)

    def _settle_primary(self, payment: Payment) -> None:
        metadata = payment.payment_metadata or {}
        buyer = self.db.get(User, payment.user_id)
        quantity = int(metadata.get("quantity", 1))
        unit_price = int(metadata.get("unit_price_cents", 0))
        try:
            issued = [
                self.tickets.issue_ticket(
                    event_id=payment.event_id,
                    ticket_type_id=metadata.get("ticket_type_id"),
                    owner=buyer,
                    price_paid_cents=unit_price,
                    payment_id=payment.id,
                )
                for _ in range(quantity)
            ]
        except CapacityExceeded as exc:
            raise ConsistencyViolation("Tier sold out before the payment settled", payment_id=payment.id) from exc
        ReferralService(self.db).record_earning(payment)
        self._after_commit.extend(lambda t=t: self.tickets.notify_received(t) for t in issued)

    def _settle_resale(self, payment: Payment) -> None:
        listing = self.db.get(ResaleListing, payment.listing_id) if payment.listing_id else None
        if listing is None:
            raise ConsistencyViolation("Listing for this payment no longer exists", payment_id=payment.id)
        ticket = ListingService(self.db).settle_listing(listing.id, payment.id)
        payout = int((payment.payment_metadata or {}).get("seller_payout_cents", 0))
        BalanceService(self.db).credit_pending(listing.seller_id, payout)
        self._after_commit.append(lambda: self.tickets.notify_received(ticket))

    def _settle_handshake(self, payment: Payment) -> None:
        pending = self.db.get(PendingPayment, payment.pending_payment_id) if payment.pending_payment_id else None
        if pending is None:
            raise ConsistencyViolation("Handshake for this payment no longer exists", payment_id=payment.id)

        completed = self.db.execute(
            update(PendingPayment)
            .where(PendingPayment.id == pending.id, PendingPayment.status == HandshakeStatus.PROCESSING.value)
            .values(status=HandshakeStatus.COMPLETED.value, completed_at=utcnow(),
                    version=PendingPayment.version + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not completed:
            self.db.refresh(pending)
            raise ConsistencyViolation(f"Processor confirmed a handshake that is {pending.status}",
                                       payment_id=payment.id, pending_payment_id=pending.id)

        customer = self.db.get(User, pending.customer_id)
        try:
            ticket = self.tickets.issue_ticket(
                event_id=pending.event_id,
                ticket_type_id=pending.ticket_type_id,
                owner=customer,
                price_paid_cents=pending.amount_cents,
                payment_id=payment.id,
                payment_method="tap",
                delivery_method="nfc",
                sold_by=pending.vendor_id,
            )
        except CapacityExceeded as exc:
            raise ConsistencyViolation("Tier sold out before the handshake settled",
                                       payment_id=payment.id, pending_payment_id=pending.id) from exc

        self.db.execute(
            update(PendingPayment)
            .where(PendingPayment.id == pending.id)
            .values(ticket_id=ticket.id)
            .execution_options(synchronize_session=False)
        )
        payout = int((payment.payment_metadata or {}).get("seller_payout_cents", 0))
        BalanceService(self.db).credit_pending(pending.vendor_id, payout)
        self._queue_publish(pending.id)
        self._after_commit.append(lambda: self.tickets.notify_received(ticket))

    # Failure paths

    def _apply_failure(self, payment: Payment, failure_message: Optional[str]) -> None:
        logger.warning("Payment %s failed: %s", payment.id, failure_message or "declined")
        if payment.type != PaymentType.VENDOR_POS.value or not payment.pending_payment_id:
            return

        failed = self.db.execute(
            update(PendingPayment)
            .where(PendingPayment.id == payment.pending_payment_id,
                   PendingPayment.status == HandshakeStatus.PROCESSING.value)
            .values(status=HandshakeStatus.FAILED.value, failure_reason=failure_message or "Payment declined",
                    version=PendingPayment.version + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not failed:
            raise ConsistencyViolation("Processor failed a handshake that is no longer processing",
                                       payment_id=payment.id, pending_payment_id=payment.pending_payment_id)
        self._queue_publish(payment.pending_payment_id)

    def _queue_publish(self, pending_id: str) -> None:
        def publish():
            row = self.db.query(PendingPayment).populate_existing().filter(PendingPayment.id == pending_id).one()
            self.stream.publish(pending_payment_event(row))
        self._after_commit.append(publish)


def tickets_for_payment(db: Session, payment_id: str) -> List[Ticket]:
    return db.query(Ticket).filter(Ticket.payment_id == payment_id).order_by(Ticket.created_at).all()


def is_reconciliation_required(payment: Payment) -> bool:
    return bool((payment.payment_metadata or {}).get("reconciliation_required"))
