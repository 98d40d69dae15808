import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import atomic, utcnow
from ticket_exchange.events.event_service import VENDOR_ROLES, EventService
from ticket_exchange.exceptions import Expired, InvalidState, NotFound, ProcessorFailure, Unauthorized
from ticket_exchange.handshake.stream import PaymentStreamManager, payment_stream, pending_payment_event
from ticket_exchange.integrations.notifications import NotificationSink
from ticket_exchange.integrations.processor import PaymentProcessor
from ticket_exchange.models import HandshakeStatus, PaymentType, PendingPayment, TicketType, User
from ticket_exchange.payments.fee_calculator import calculate_fees
from ticket_exchange.payments.ledger_service import PaymentLedger
from ticket_exchange.payments.settlement_service import SettlementService
from ticket_exchange.wallet.balance_service import BalanceService

logger = logging.getLogger(__name__)


class HandshakeService:
    """Proximity tap-to-pay between a vendor device and a customer device.

    ``pending -> processing -> completed | failed`` and
    ``pending -> cancelled | expired``. Every transition is a conditional
    update on the expected status, so confirmation and the expiry sweep can
    never both win. Each write bumps the row version and is published to the
    customer's stream after it commits.
    """

    def __init__(self, db: Session, processor: Optional[PaymentProcessor] = None,
                 notifier: Optional[NotificationSink] = None, stream: PaymentStreamManager = payment_stream):
        self.db = db
        self.processor = processor
        self.notifier = notifier
        self.stream = stream

    def get(self, pending_id: str) -> PendingPayment:
        row = self.db.get(PendingPayment, pending_id)
        if row is None:
            raise NotFound("Handshake not found", pending_payment_id=pending_id)
        return row

    def _publish(self, row: PendingPayment, kind: str = "update") -> None:
        self.db.refresh(row)
        self.stream.publish(pending_payment_event(row, kind))

    def _transition(self, pending_id: str, from_status: str, to_status: str, not_expired: bool = False,
                    **values) -> bool:
        stmt = update(PendingPayment).where(PendingPayment.id == pending_id, PendingPayment.status == from_status)
        if not_expired:
            stmt = stmt.where(PendingPayment.expires_at > utcnow())
        return bool(self.db.execute(
            stmt.values(status=to_status, version=PendingPayment.version + 1, **values)
            .execution_options(synchronize_session=False)
        ).rowcount)

    def initiate(self, vendor_id: str, customer_id: str, event_id: str, amount_cents: int,
                 ticket_type_id: Optional[str] = None) -> PendingPayment:
        EventService(self.db).require_role(event_id, vendor_id, VENDOR_ROLES)
        if amount_cents <= 0:
            raise ValueError("Amount must be positive")
        if customer_id == vendor_id:
            raise ValueError("Vendor and customer must be different people")
        if self.db.get(User, customer_id) is None:
            raise NotFound("Customer not found", customer_id=customer_id)

        ticket_type_name = None
        if ticket_type_id is not None:
            ticket_type = self.db.get(TicketType, ticket_type_id)
            if ticket_type is None or ticket_type.event_id != event_id:
                raise NotFound("Ticket type not found for this event", ticket_type_id=ticket_type_id)
            if not ticket_type.is_active:
                raise InvalidState("Ticket type is no longer on sale", ticket_type_id=ticket_type_id)
            ticket_type_name = ticket_type.name

        row = PendingPayment(
            vendor_id=vendor_id,
            customer_id=customer_id,
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            ticket_type_name=ticket_type_name,
            amount_cents=amount_cents,
            currency=settings.CURRENCY,
            status=HandshakeStatus.PENDING.value,
            version=1,
            expires_at=utcnow() + timedelta(minutes=settings.HANDSHAKE_EXPIRY_MINUTES),
        )
        with atomic(self.db):
            self.db.add(row)
        self._publish(row, "insert")
        logger.info("Handshake %s initiated by vendor %s for customer %s", row.id, vendor_id, customer_id)
        return row

    def confirm(self, pending_id: str, customer_id: str) -> PendingPayment:
        """Customer approves the charge.

        The move into ``processing`` re-checks the deadline, so a request
        past ``expires_at`` is refused even if the sweep has not run yet.
        """
        row = self.get(pending_id)
        if row.customer_id != customer_id:
            raise Unauthorized("This payment request is for another customer", pending_payment_id=pending_id)

        fees = calculate_fees(PaymentType.VENDOR_POS.value, row.amount_cents)
        vendor_account = BalanceService(self.db).get_account(row.vendor_id)
        ledger = PaymentLedger(self.db)

        with atomic(self.db):
            moved = self._transition(pending_id, HandshakeStatus.PENDING.value, HandshakeStatus.PROCESSING.value,
                                     not_expired=True)
            if moved:
                payment = ledger.open(
                    PaymentType.VENDOR_POS.value,
                    customer_id,
                    fees.total_cents,
                    platform_fee_cents=fees.platform_fee_cents,
                    event_id=row.event_id,
                    pending_payment_id=pending_id,
                    metadata={
                        "fees": fees.to_dict(),
                        "seller_payout_cents": fees.seller_payout_cents,
                        "vendor_id": row.vendor_id,
                    },
                )
                self.db.execute(
                    update(PendingPayment)
                    .where(PendingPayment.id == pending_id)
                    .values(payment_id=payment.id)
                    .execution_options(synchronize_session=False)
                )

        if not moved:
            self.db.refresh(row)
            if row.status == HandshakeStatus.PENDING.value:
                # Still pending, so the deadline is what stopped it
                self._expire(row)
                raise Expired("Payment request has expired", pending_payment_id=pending_id)
            if row.status == HandshakeStatus.EXPIRED.value:
                raise Expired("Payment request has expired", pending_payment_id=pending_id)
            raise InvalidState(f"Payment request is {row.status}", pending_payment_id=pending_id)

        self._publish(row)
        logger.info("Handshake %s processing as payment %s", pending_id, payment.id)

        metadata = {"pending_payment_id": pending_id}
        if vendor_account is not None:
            metadata.update(destination_account=vendor_account.processor_account_id,
                            transfer_amount_cents=fees.seller_payout_cents)
        try:
            ledger.request_charge(self.processor, payment, customer_id, metadata)
        except ProcessorFailure as exc:
            self._fail_after_intent_error(row, str(exc))
            raise

        settlement = SettlementService(self.db, self.processor, self.notifier, self.stream)
        settlement.complete_synchronously(payment.id)
        self.db.refresh(row)
        return row

    def _fail_after_intent_error(self, row: PendingPayment, reason: str) -> None:
        with atomic(self.db):
            moved = self._transition(row.id, HandshakeStatus.PROCESSING.value, HandshakeStatus.FAILED.value,
                                     failure_reason=reason)
        if moved:
            self._publish(row)

    def _expire(self, row: PendingPayment) -> bool:
        with atomic(self.db):
            moved = self._transition(row.id, HandshakeStatus.PENDING.value, HandshakeStatus.EXPIRED.value)
        if moved:
            self._publish(row)
        return moved

    def cancel(self, pending_id: str, actor_id: str) -> PendingPayment:
        row = self.get(pending_id)
        if actor_id not in (row.vendor_id, row.customer_id):
            raise Unauthorized("Only the vendor or customer can cancel", pending_payment_id=pending_id)

        with atomic(self.db):
            cancelled = self._transition(pending_id, HandshakeStatus.PENDING.value, HandshakeStatus.CANCELLED.value)
        if not cancelled:
            self.db.refresh(row)
            raise InvalidState(f"Payment request is {row.status}", pending_payment_id=pending_id)
        self._publish(row)
        logger.info("Handshake %s cancelled by %s", pending_id, actor_id)
        return row

    def list_pending_for_customer(self, customer_id: str) -> List[PendingPayment]:
        return (
            self.db.query(PendingPayment)
            .filter(
                PendingPayment.customer_id == customer_id,
                PendingPayment.status == HandshakeStatus.PENDING.value,
                PendingPayment.expires_at > utcnow(),
            )
            .order_by(PendingPayment.created_at)
            .all()
        )

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Expire overdue pending handshakes; rows already processing are left alone"""
        now = now or utcnow()
        due = (
            self.db.query(PendingPayment)
            .filter(PendingPayment.status == HandshakeStatus.PENDING.value, PendingPayment.expires_at <= now)
            .all()
        )
        expired = 0
        for row in due:
            if self._expire(row):
                expired += 1
        if expired:
            logger.info("Expired %d handshakes", expired)
        return expired
