import logging
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import atomic, utcnow
from ticket_exchange.exceptions import (
    ConsistencyViolation, DuplicateListing, InvalidState, NotFound, Unauthorized,
)
from ticket_exchange.models import (
    ListingStatus, Payment, PaymentStatus, ResaleListing, ResaleStatus, Ticket, TicketMode,
    TicketStatus, User,
)

logger = logging.getLogger(__name__)


class ListingService:
    """Resale listing ledger.

    The ticket's ``listing_status``/``listing_price_cents`` mirror the active
    listing and are only written here, in the same unit as the listing row.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_listing(self, listing_id: str) -> ResaleListing:
        listing = self.db.get(ResaleListing, listing_id)
        if listing is None:
            raise NotFound("Listing not found", listing_id=listing_id)
        return listing

    def active_listing_for(self, ticket_id: str) -> Optional[ResaleListing]:
        return (
            self.db.query(ResaleListing)
            .filter(ResaleListing.ticket_id == ticket_id, ResaleListing.status == ResaleStatus.ACTIVE.value)
            .first()
        )

    def browse(self, event_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[ResaleListing]:
        query = self.db.query(ResaleListing).filter(ResaleListing.status == ResaleStatus.ACTIVE.value)
        if event_id:
            query = query.join(Ticket, Ticket.id == ResaleListing.ticket_id).filter(Ticket.event_id == event_id)
        return query.order_by(ResaleListing.price_cents, ResaleListing.created_at).offset(offset).limit(limit).all()

    def list_for_seller(self, seller_id: str) -> List[ResaleListing]:
        return (
            self.db.query(ResaleListing)
            .filter(ResaleListing.seller_id == seller_id)
            .order_by(ResaleListing.created_at.desc())
            .all()
        )

    def create_listing(self, ticket_id: str, seller_id: str, price_cents: int) -> ResaleListing:
        """List a ticket for resale.

        Uniqueness of the active listing holds under concurrent callers: the
        ticket row is locked where the database supports it, and the partial
        unique index rejects whichever insert commits second.
        """
        if price_cents is None or price_cents <= 0:
            raise ValueError("Listing price must be positive")

        try:
            with atomic(self.db):
                ticket = (
                    self.db.query(Ticket)
                    .filter(Ticket.id == ticket_id)
                    .with_for_update()
                    .populate_existing()
                    .first()
                )
                if ticket is None:
                    raise NotFound("Ticket not found", ticket_id=ticket_id)
                if ticket.ticket_mode == TicketMode.PRIVATE.value:
                    raise InvalidState("Private tickets cannot be resold", ticket_id=ticket_id)
                if ticket.owner_user_id != seller_id:
                    raise InvalidState("Only the current owner can list this ticket", ticket_id=ticket_id)
                if ticket.status != TicketStatus.VALID.value:
                    raise InvalidState(f"Ticket is {ticket.status}", ticket_id=ticket_id)
                if self.active_listing_for(ticket_id) is not None:
                    raise DuplicateListing("Ticket already has an active listing", ticket_id=ticket_id)

                listing = ResaleListing(
                    ticket_id=ticket_id,
                    seller_id=seller_id,
                    price_cents=price_cents,
                    currency=ticket.currency or settings.CURRENCY,
                )
                self.db.add(listing)
                self.db.flush()

                mirrored = self.db.execute(
                    update(Ticket)
                    .where(
                        Ticket.id == ticket_id,
                        Ticket.owner_user_id == seller_id,
                        Ticket.status == TicketStatus.VALID.value,
                    )
                    .values(listing_status=ListingStatus.LISTED.value, listing_price_cents=price_cents)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if mirrored != 1:
                    raise InvalidState("Ticket changed while listing", ticket_id=ticket_id)
        except IntegrityError as exc:
            logger.info("Concurrent listing for ticket %s rejected", ticket_id)
            raise DuplicateListing("Ticket already has an active listing", ticket_id=ticket_id) from exc

        self.db.refresh(listing)
        logger.info("Ticket %s listed by %s at %s", ticket_id, seller_id, price_cents)
        return listing

    def cancel_listing(self, listing_id: str, actor_id: str) -> ResaleListing:
        listing = self.get_listing(listing_id)
        if listing.seller_id != actor_id:
            raise Unauthorized("Only the seller can cancel this listing", listing_id=listing_id)

        with atomic(self.db):
            if not self._close_listing(listing_id, listing.ticket_id):
                raise InvalidState("Listing is no longer active", listing_id=listing_id)

        self.db.refresh(listing)
        logger.info("Listing %s cancelled by seller", listing_id)
        return listing

    def cancel_active_for_ticket(self, ticket_id: str) -> bool:
        """Close whatever listing is active for the ticket; joins the caller's transaction"""
        listing = self.active_listing_for(ticket_id)
        if listing is None:
            return False
        closed = self._close_listing(listing.id, ticket_id)
        if closed:
            logger.info("Listing %s cancelled with its ticket %s", listing.id, ticket_id)
        return closed

    def _close_listing(self, listing_id: str, ticket_id: str) -> bool:
        closed = self.db.execute(
            update(ResaleListing)
            .where(ResaleListing.id == listing_id, ResaleListing.status == ResaleStatus.ACTIVE.value)
            .values(status=ResaleStatus.CANCELLED.value, cancelled_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if not closed:
            return False
        self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.listing_status == ListingStatus.LISTED.value)
            .values(listing_status=ListingStatus.NONE.value, listing_price_cents=None)
            .execution_options(synchronize_session=False)
        )
        return True

    def settle_listing(self, listing_id: str, payment_id: str) -> Ticket:
        """Hand the ticket to the buyer once their payment has completed.

        Joins the caller's transaction. Any mismatch between the payment and
        the current listing or ticket state is a ``ConsistencyViolation``.
        """
        payment = self.db.get(Payment, payment_id)
        if payment is None or payment.status != PaymentStatus.COMPLETED.value:
            raise InvalidState("Listing can only settle against a completed payment", payment_id=payment_id)

        listing = self.get_listing(listing_id)
        buyer = self.db.get(User, payment.user_id)
        if buyer is None:
            raise ConsistencyViolation("Buyer no longer exists", payment_id=payment_id)
        if payment.amount_cents != listing.price_cents:
            raise ConsistencyViolation("Payment amount does not match the listing price",
                                       listing_id=listing_id, payment_id=payment_id)

        now = utcnow()
        sold = self.db.execute(
            update(ResaleListing)
            .where(ResaleListing.id == listing_id, ResaleListing.status == ResaleStatus.ACTIVE.value)
            .values(status=ResaleStatus.SOLD.value, buyer_id=buyer.id, payment_id=payment_id, sold_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if sold != 1:
            raise ConsistencyViolation("Listing is no longer active", listing_id=listing_id, payment_id=payment_id)

        moved = self.db.execute(
            update(Ticket)
            .where(
                Ticket.id == listing.ticket_id,
                Ticket.status == TicketStatus.VALID.value,
                Ticket.owner_user_id == listing.seller_id,
            )
            .values(
                owner_user_id=buyer.id,
                owner_email=buyer.email,
                owner_name=buyer.display_name,
                listing_status=ListingStatus.SOLD.value,
                listing_price_cents=None,
                price_paid_cents=listing.price_cents,
                transfer_token=None,
                transfer_token_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if moved != 1:
            raise ConsistencyViolation("Ticket no longer belongs to the seller or is not valid",
                                       listing_id=listing_id, ticket_id=listing.ticket_id)

        logger.info("Listing %s settled to buyer %s via payment %s", listing_id, buyer.id, payment_id)
        return self.db.query(Ticket).populate_existing().filter(Ticket.id == listing.ticket_id).one()

    def flag_refund(self, listing_id: str) -> None:
        """Mark a sold listing whose payment was refunded; ownership is left alone"""
        self.db.execute(
            update(ResaleListing)
            .where(ResaleListing.id == listing_id)
            .values(refund_flagged=True)
            .execution_options(synchronize_session=False)
        )
        logger.warning("Resale listing %s refunded; ownership needs manual reconciliation", listing_id)
