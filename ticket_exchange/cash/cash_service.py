import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import atomic, utcnow
from ticket_exchange.events.event_service import CASH_SELLER_ROLES, MANAGERS, EventService
from ticket_exchange.exceptions import InvalidState, NotFound, ProcessorFailure
from ticket_exchange.integrations.notifications import NotificationSink
from ticket_exchange.integrations.processor import PaymentProcessor
from ticket_exchange.models import CashStatus, CashTransaction, DeliveryMethod, Event, Ticket, TicketType, User
from ticket_exchange.payments.fee_calculator import cash_sale_fee
from ticket_exchange.tickets.ticket_service import TicketService, generate_transfer_token

logger = logging.getLogger(__name__)

CASH_DELIVERY_METHODS = (DeliveryMethod.NFC.value, DeliveryMethod.EMAIL.value, DeliveryMethod.IN_PERSON.value)


class CashService:
    """Door sales paid in cash.

    The ticket and its cash transaction are written together. The platform's
    cut is billed to the organizer's stored card afterwards, outside that
    transaction, and its outcome never blocks reconciling the sale itself.
    """

    def __init__(self, db: Session, processor: Optional[PaymentProcessor] = None,
                 notifier: Optional[NotificationSink] = None):
        self.db = db
        self.processor = processor
        self.notifier = notifier
        self.events = EventService(db)

    def get_transaction(self, transaction_id: str) -> CashTransaction:
        txn = self.db.get(CashTransaction, transaction_id)
        if txn is None:
            raise NotFound("Cash transaction not found", transaction_id=transaction_id)
        return txn

    def list_for_event(self, event_id: str, actor_id: str, status: Optional[str] = None) -> List[CashTransaction]:
        self.events.require_role(event_id, actor_id, MANAGERS)
        query = self.db.query(CashTransaction).filter(CashTransaction.event_id == event_id)
        if status:
            query = query.filter(CashTransaction.status == CashStatus(status).value)
        return query.order_by(CashTransaction.created_at.desc()).all()

    def record_sale(self, event_id: str, seller_id: str, amount_cents: int, delivery_method: str,
                    customer_name: Optional[str] = None, customer_email: Optional[str] = None,
                    ticket_type_id: Optional[str] = None) -> Tuple[CashTransaction, Ticket]:
        event = self.events.require_role(event_id, seller_id, CASH_SELLER_ROLES)
        if not event.cash_sales_enabled:
            raise InvalidState("Cash sales are not enabled for this event", event_id=event_id)
        if delivery_method not in CASH_DELIVERY_METHODS:
            raise ValueError(f"Delivery method must be one of {', '.join(CASH_DELIVERY_METHODS)}")
        if amount_cents < 0:
            raise ValueError("Amount cannot be negative")
        if delivery_method == DeliveryMethod.EMAIL.value and not customer_email:
            raise ValueError("Email delivery needs a customer email")
        if ticket_type_id is not None:
            ticket_type = self.db.get(TicketType, ticket_type_id)
            if ticket_type is None or ticket_type.event_id != event_id:
                raise NotFound("Ticket type not found for this event", ticket_type_id=ticket_type_id)

        email = customer_email.strip().lower() if customer_email else None
        customer = self.db.query(User).filter(User.email == email).first() if email else None
        fee = cash_sale_fee(amount_cents)
        tickets = TicketService(self.db, self.notifier)

        with atomic(self.db):
            ticket = tickets.issue_ticket(
                event_id=event_id,
                ticket_type_id=ticket_type_id,
                owner=customer,
                owner_email=email,
                owner_name=customer_name,
                price_paid_cents=amount_cents,
                payment_method="cash",
                delivery_method=delivery_method,
                sold_by=seller_id,
            )
            if delivery_method == DeliveryMethod.NFC.value:
                ticket.transfer_token = generate_transfer_token()
                ticket.transfer_token_expires_at = utcnow() + timedelta(minutes=settings.TRANSFER_TOKEN_MINUTES)
            txn = CashTransaction(
                event_id=event_id,
                seller_id=seller_id,
                ticket_id=ticket.id,
                amount_cents=amount_cents,
                platform_fee_cents=fee,
                currency=settings.CURRENCY,
                status=CashStatus.PENDING.value,
                customer_name=customer_name,
                customer_email=email,
                delivery_method=delivery_method,
            )
            self.db.add(txn)

        self.db.refresh(txn)
        self.db.refresh(ticket)
        logger.info("Cash sale %s recorded by %s for event %s (%s cents)", txn.id, seller_id, event_id, amount_cents)

        self.charge_fee(txn, event)
        if customer is not None and delivery_method == DeliveryMethod.EMAIL.value:
            tickets.notify_received(ticket)
        return txn, ticket

    def charge_fee(self, txn: CashTransaction, event: Optional[Event] = None) -> CashTransaction:
        """Bill the platform fee to the organizer's stored method and record the result"""
        event = event or self.events.get_event(txn.event_id)
        if txn.fee_charged:
            return txn

        intent_id, error = None, None
        if txn.platform_fee_cents == 0:
            charged = True
        elif not event.organizer_processor_customer_id or not event.organizer_payment_method_id:
            charged, error = False, "Organizer has no payment method on file"
        elif self.processor is None:
            charged, error = False, "Payment processor unavailable"
        else:
            try:
                outcome = self.processor.charge_stored_method(
                    event.organizer_processor_customer_id,
                    event.organizer_payment_method_id,
                    txn.platform_fee_cents,
                    txn.currency,
                    {"cash_transaction_id": txn.id, "event_id": txn.event_id},
                )
                charged, intent_id, error = outcome.success, outcome.intent_id, outcome.failure_message
            except ProcessorFailure as exc:
                charged, error = False, exc.message

        with atomic(self.db):
            txn.fee_charged = charged
            txn.fee_payment_intent_id = intent_id
            txn.fee_charge_error = None if charged else error
        self.db.refresh(txn)

        if not charged:
            logger.warning("Cash sale fee for %s not charged: %s", txn.id, error)
        return txn

    def retry_fee(self, transaction_id: str, actor_id: str) -> CashTransaction:
        txn = self.get_transaction(transaction_id)
        event = self.events.require_role(txn.event_id, actor_id, MANAGERS)
        if txn.fee_charged:
            raise InvalidState("Fee already charged", transaction_id=transaction_id)
        return self.charge_fee(txn, event)

    def mark_collected(self, transaction_id: str, actor_id: str) -> CashTransaction:
        return self._reconcile(transaction_id, actor_id, CashStatus.COLLECTED.value,
                               (CashStatus.PENDING.value, CashStatus.DISPUTED.value))

    def mark_disputed(self, transaction_id: str, actor_id: str) -> CashTransaction:
        return self._reconcile(transaction_id, actor_id, CashStatus.DISPUTED.value, (CashStatus.PENDING.value,))

    def _reconcile(self, transaction_id: str, actor_id: str, status: str, from_statuses) -> CashTransaction:
        txn = self.get_transaction(transaction_id)
        self.events.require_role(txn.event_id, actor_id, MANAGERS)

        with atomic(self.db):
            moved = self.db.execute(
                update(CashTransaction)
                .where(CashTransaction.id == transaction_id, CashTransaction.status.in_(from_statuses))
                .values(status=status, reconciled_at=utcnow(), reconciled_by=actor_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not moved:
                self.db.refresh(txn)
                raise InvalidState(f"Cash sale is already {txn.status}", transaction_id=transaction_id)
        self.db.refresh(txn)
        logger.info("Cash sale %s marked %s by %s", transaction_id, status, actor_id)
        return txn
