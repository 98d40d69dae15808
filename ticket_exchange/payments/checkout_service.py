import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_exchange.database import atomic
from ticket_exchange.exceptions import CapacityExceeded, InvalidState, NotFound, Unauthorized
from ticket_exchange.handshake.stream import PaymentStreamManager, payment_stream
from ticket_exchange.integrations.notifications import NotificationSink
from ticket_exchange.integrations.processor import PaymentProcessor
from ticket_exchange.inventory.capacity_service import availability_of
from ticket_exchange.models import (
    Payment, PaymentStatus, PaymentType, ResaleListing, ResaleStatus, TicketType, User,
)
from ticket_exchange.payments.fee_calculator import calculate_fees
from ticket_exchange.payments.ledger_service import OPEN_STATUSES, PaymentLedger
from ticket_exchange.payments.referral_service import ReferralService
from ticket_exchange.payments.settlement_service import SettlementService
from ticket_exchange.tickets.ticket_service import TicketService
from ticket_exchange.wallet.balance_service import BalanceService

logger = logging.getLogger(__name__)

MAX_QUANTITY_PER_ORDER = 10


class CheckoutService:
    """Primary and resale purchases.

    Validation and the pending payment are committed first, the processor is
    called with no transaction open, and the settlement service applies the
    outcome in a fresh unit.
    """

    def __init__(self, db: Session, processor: PaymentProcessor, notifier: Optional[NotificationSink] = None,
                 stream: PaymentStreamManager = payment_stream):
        self.db = db
        self.processor = processor
        self.notifier = notifier
        self.ledger = PaymentLedger(db)
        self.settlement = SettlementService(db, processor, notifier, stream)

    def start_checkout(self, buyer: User, ticket_type_id: str, quantity: int = 1) -> dict:
        if not 1 <= quantity <= MAX_QUANTITY_PER_ORDER:
            raise ValueError(f"Quantity must be between 1 and {MAX_QUANTITY_PER_ORDER}")

        ticket_type = self.db.get(TicketType, ticket_type_id)
        if ticket_type is None:
            raise NotFound("Ticket type not found", ticket_type_id=ticket_type_id)
        self.db.refresh(ticket_type)
        if not ticket_type.is_active:
            raise InvalidState("Ticket type is no longer on sale", ticket_type_id=ticket_type_id)
        remaining = availability_of(ticket_type)["remaining"]
        if remaining is not None and remaining < quantity:
            raise CapacityExceeded("Not enough tickets left", ticket_type_id=ticket_type_id, remaining=remaining)

        snapshot = ReferralService(self.db).load_config_snapshot()
        referral = snapshot.context_for(buyer)
        fees = calculate_fees(PaymentType.PRIMARY_PURCHASE.value, ticket_type.price_cents * quantity, referral)

        if fees.total_cents == 0:
            tickets_service = TicketService(self.db, self.notifier)
            with atomic(self.db):
                tickets = [
                    tickets_service.issue_ticket(
                        event_id=ticket_type.event_id, ticket_type_id=ticket_type_id, owner=buyer,
                        payment_method="free",
                    )
                    for _ in range(quantity)
                ]
            for ticket in tickets:
                tickets_service.notify_received(ticket)
            logger.info("Issued %d free tickets of %s to %s", quantity, ticket_type_id, buyer.id)
            return {"payment": None, "client_secret": None, "fees": fees.to_dict(), "tickets": tickets}

        with atomic(self.db):
            payment = self.ledger.open(
                PaymentType.PRIMARY_PURCHASE.value,
                buyer.id,
                fees.total_cents,
                platform_fee_cents=fees.platform_fee_cents,
                event_id=ticket_type.event_id,
                metadata={
                    "fees": fees.to_dict(),
                    "referral": ReferralService.snapshot_metadata(referral),
                    "ticket_type_id": ticket_type_id,
                    "quantity": quantity,
                    "unit_price_cents": fees.effective_base_cents // quantity,
                },
            )
        intent = self.ledger.request_charge(self.processor, payment, buyer.id, {"ticket_type_id": ticket_type_id})
        return {"payment": payment, "client_secret": intent.client_secret, "fees": fees.to_dict(), "tickets": []}

    def complete_checkout(self, payment_id: str, user_id: str) -> Payment:
        """Confirm a processing payment on the buyer's behalf and settle it"""
        payment = self.ledger.get(payment_id)
        if payment.user_id != user_id:
            raise Unauthorized("This payment belongs to someone else", payment_id=payment_id)
        if payment.status != PaymentStatus.PROCESSING.value:
            raise InvalidState(f"Payment is {payment.status}", payment_id=payment_id)
        return self.settlement.complete_synchronously(payment_id)

    def purchase_listing(self, listing_id: str, buyer: User) -> dict:
        """Open a resale payment; the buyer pays exactly the listed price"""
        listing = self.db.get(ResaleListing, listing_id)
        if listing is None:
            raise NotFound("Listing not found", listing_id=listing_id)
        self.db.refresh(listing)
        if listing.status != ResaleStatus.ACTIVE.value:
            raise InvalidState(f"Listing is {listing.status}", listing_id=listing_id)
        if listing.seller_id == buyer.id:
            raise InvalidState("You cannot buy your own listing", listing_id=listing_id)
        in_flight = (
            self.db.query(Payment.id)
            .filter(Payment.listing_id == listing_id, Payment.status.in_(OPEN_STATUSES))
            .first()
        )
        if in_flight:
            raise InvalidState("Another purchase of this listing is in progress", listing_id=listing_id)

        fees = calculate_fees(PaymentType.RESALE_PURCHASE.value, listing.price_cents)
        ticket = TicketService(self.db).get_ticket(listing.ticket_id)
        try:
            with atomic(self.db):
                payment = self.ledger.open(
                    PaymentType.RESALE_PURCHASE.value,
                    buyer.id,
                    fees.total_cents,
                    platform_fee_cents=fees.platform_fee_cents,
                    event_id=ticket.event_id,
                    listing_id=listing_id,
                    metadata={
                        "fees": fees.to_dict(),
                        "seller_id": listing.seller_id,
                        "seller_payout_cents": fees.seller_payout_cents,
                    },
                )
        except IntegrityError as exc:
            logger.info("Concurrent purchase of listing %s rejected", listing_id)
            raise InvalidState("Another purchase of this listing is in progress", listing_id=listing_id) from exc

        charge_metadata = {"listing_id": listing_id}
        seller_account = BalanceService(self.db).get_account(listing.seller_id)
        if seller_account is not None:
            charge_metadata.update(destination_account=seller_account.processor_account_id,
                                   transfer_amount_cents=fees.seller_payout_cents)
        intent = self.ledger.request_charge(self.processor, payment, buyer.id, charge_metadata)
        logger.info("Resale payment %s opened for listing %s", payment.id, listing_id)
        return {"payment": payment, "client_secret": intent.client_secret, "fees": fees.to_dict(), "tickets": []}
