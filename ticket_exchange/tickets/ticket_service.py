from typing import List, Optional
from datetime import timedelta
from io import BytesIO
import hashlib
import hmac
import logging
import secrets

import qrcode
from qrcode import constants
from PIL import Image
from sqlalchemy import update
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import as_utc, atomic, utcnow
from ticket_exchange.events.event_service import CHECK_IN_ROLES, MANAGERS, EventService
from ticket_exchange.exceptions import Expired, InvalidState, NotFound, Unauthorized
from ticket_exchange.integrations.notifications import TICKET_PURCHASED, NotificationSink
from ticket_exchange.inventory.capacity_service import CapacityService
from ticket_exchange.models import (
    CashStatus, CashTransaction, Event, Ticket, TicketMode, TicketStatus, TERMINAL_TICKET_STATUSES, User,
)
from ticket_exchange.resale.listing_service import ListingService

logger = logging.getLogger(__name__)


def generate_ticket_number() -> str:
    return f"TKT-{utcnow():%Y%m%d}-{secrets.token_hex(4).upper()}"


def generate_transfer_token() -> str:
    return secrets.token_hex(32)


class TicketService:
    """Service for issuing tickets and moving them through their lifecycle"""

    def __init__(self, db: Session, notifier: Optional[NotificationSink] = None):
        self.db = db
        self.notifier = notifier
        self.capacity = CapacityService(db)
        self.listings = ListingService(db)

    def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.db.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFound("Ticket not found", ticket_id=ticket_id)
        return ticket

    def list_for_owner(self, user_id: str) -> List[Ticket]:
        return (
            self.db.query(Ticket)
            .filter(Ticket.owner_user_id == user_id)
            .order_by(Ticket.created_at.desc())
            .all()
        )

    def issue_ticket(
        self,
        event_id: str,
        ticket_type_id: Optional[str] = None,
        owner: Optional[User] = None,
        owner_email: Optional[str] = None,
        owner_name: Optional[str] = None,
        price_paid_cents: int = 0,
        ticket_mode: str = TicketMode.STANDARD.value,
        payment_id: Optional[str] = None,
        offer_id: Optional[str] = None,
        payment_method: str = "card",
        delivery_method: Optional[str] = "app",
        sold_by: Optional[str] = None,
    ) -> Ticket:
        """Mint a ticket inside the caller's transaction.

        When a tier is given its capacity is reserved first, so a sold-out
        tier aborts the whole unit before any ticket row exists.
        """
        ticket_mode = TicketMode(ticket_mode).value
        if ticket_type_id is not None:
            self.capacity.reserve_slot(ticket_type_id)

        ticket = Ticket(
            ticket_number=generate_ticket_number(),
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            payment_id=payment_id,
            offer_id=offer_id,
            owner_user_id=owner.id if owner else None,
            owner_email=(owner.email if owner else owner_email),
            owner_name=owner_name or (owner.display_name if owner else None),
            price_paid_cents=price_paid_cents,
            currency=settings.CURRENCY,
            ticket_mode=ticket_mode,
            payment_method=payment_method,
            delivery_method=delivery_method,
            sold_by=sold_by,
        )
        self.db.add(ticket)
        self.db.flush()
        logger.info("Issued ticket %s for event %s (%s)", ticket.ticket_number, event_id, ticket_mode)
        return ticket

    def notify_received(self, ticket: Ticket, transferred: bool = False) -> None:
        if not self.notifier or not ticket.owner_user_id:
            return
        event = self.db.get(Event, ticket.event_id)
        self.notifier.notify(
            ticket.owner_user_id,
            TICKET_PURCHASED,
            "Ticket Transferred!" if transferred else "Ticket Received!",
            f"You have received a ticket for {event.title if event else 'an event'}",
            {"ticket_id": ticket.id, "event_id": ticket.event_id},
        )

    # Admission

    def check_in(self, ticket_id: str, staff_user_id: str) -> Ticket:
        ticket = self.get_ticket(ticket_id)
        EventService(self.db).require_role(ticket.event_id, staff_user_id, CHECK_IN_ROLES)

        with atomic(self.db):
            used = self.db.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id, Ticket.status == TicketStatus.VALID.value)
                .values(status=TicketStatus.USED.value, checked_in_at=utcnow(), checked_in_by=staff_user_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not used:
                self.db.refresh(ticket)
                raise InvalidState(f"Ticket is {ticket.status}", ticket_id=ticket_id)
            self.listings.cancel_active_for_ticket(ticket_id)

        self.db.refresh(ticket)
        logger.info("Ticket %s checked in by %s", ticket.ticket_number, staff_user_id)
        return ticket

    # Cancellation and refund

    def terminate(self, ticket: Ticket, new_status: str) -> bool:
        """Move a non-terminal ticket into ``cancelled`` or ``refunded``.

        Joins the caller's transaction. Capacity is released and any active
        listing closed only when this call performed the transition, so a
        terminal-to-terminal retry changes nothing.
        """
        if new_status not in TERMINAL_TICKET_STATUSES:
            raise ValueError(f"{new_status} is not a terminal ticket status")

        moved = self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket.id, Ticket.status.notin_(TERMINAL_TICKET_STATUSES))
            .values(status=new_status, transfer_token=None, transfer_token_expires_at=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not moved:
            return False

        self.capacity.release_slot(ticket.ticket_type_id, ticket.id)
        self.listings.cancel_active_for_ticket(ticket.id)
        logger.info("Ticket %s moved to %s", ticket.id, new_status)
        return True

    def cancel_ticket(self, ticket_id: str, actor_id: str) -> Ticket:
        ticket = self.get_ticket(ticket_id)
        EventService(self.db).require_role(ticket.event_id, actor_id, MANAGERS)

        with atomic(self.db):
            if not self.terminate(ticket, TicketStatus.CANCELLED.value):
                self.db.refresh(ticket)
                raise InvalidState(f"Ticket is already {ticket.status}", ticket_id=ticket_id)
        self.db.refresh(ticket)
        return ticket

    # Transfer tokens

    def create_transfer_token(self, ticket_id: str, owner_id: str) -> Ticket:
        ticket = self.get_ticket(ticket_id)
        if ticket.owner_user_id != owner_id:
            raise Unauthorized("Only the owner can transfer this ticket", ticket_id=ticket_id)

        expires_at = utcnow() + timedelta(minutes=settings.TRANSFER_TOKEN_MINUTES)
        with atomic(self.db):
            issued = self.db.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id, Ticket.owner_user_id == owner_id,
                       Ticket.status == TicketStatus.VALID.value)
                .values(transfer_token=generate_transfer_token(), transfer_token_expires_at=expires_at)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not issued:
                raise InvalidState("Only valid tickets can be transferred", ticket_id=ticket_id)
        self.db.refresh(ticket)
        return ticket

    def claim_transfer(self, token: str, claimer: User) -> Ticket:
        """Take ownership of the ticket the token was issued for"""
        ticket = self.db.query(Ticket).filter(Ticket.transfer_token == token).first()
        if ticket is None:
            raise NotFound("Transfer token not recognised")
        if as_utc(ticket.transfer_token_expires_at) is None or as_utc(ticket.transfer_token_expires_at) <= utcnow():
            raise Expired("Transfer token has expired", ticket_id=ticket.id)
        if ticket.owner_user_id == claimer.id:
            raise InvalidState("You already own this ticket", ticket_id=ticket.id)

        with atomic(self.db):
            claimed = self.db.execute(
                update(Ticket)
                .where(
                    Ticket.id == ticket.id,
                    Ticket.transfer_token == token,
                    Ticket.transfer_token_expires_at > utcnow(),
                    Ticket.status == TicketStatus.VALID.value,
                )
                .values(
                    owner_user_id=claimer.id,
                    owner_email=claimer.email,
                    owner_name=claimer.display_name,
                    transfer_token=None,
                    transfer_token_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                raise InvalidState("Ticket can no longer be claimed", ticket_id=ticket.id)
            self.listings.cancel_active_for_ticket(ticket.id)
            self.db.execute(
                update(CashTransaction)
                .where(CashTransaction.ticket_id == ticket.id, CashTransaction.status == CashStatus.PENDING.value)
                .values(status=CashStatus.COLLECTED.value, reconciled_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        self.db.refresh(ticket)
        logger.info("Ticket %s claimed by %s", ticket.ticket_number, claimer.id)
        self.notify_received(ticket, transferred=True)
        return ticket

    def expire_transfer_tokens(self, now=None) -> int:
        now = now or utcnow()
        with atomic(self.db):
            cleared = self.db.execute(
                update(Ticket)
                .where(Ticket.transfer_token.isnot(None), Ticket.transfer_token_expires_at <= now)
                .values(transfer_token=None, transfer_token_expires_at=None)
                .execution_options(synchronize_session=False)
            ).rowcount
        return cleared

    # QR codes

    def qr_payload(self, ticket: Ticket) -> str:
        message = f"ticket:{ticket.id}:{ticket.ticket_number}"
        signature = hmac.new(settings.SECRET_KEY.encode(), message.encode(), hashlib.sha256).hexdigest()[:32]
        return f"{message}:{signature}"

    def verify_qr_payload(self, payload: str) -> Ticket:
        try:
            prefix, ticket_id, number, signature = payload.split(":")
        except ValueError:
            raise ValueError("Malformed ticket code")
        if prefix != "ticket":
            raise ValueError("Malformed ticket code")
        ticket = self.get_ticket(ticket_id)
        if not hmac.compare_digest(self.qr_payload(ticket), payload):
            raise Unauthorized("Ticket code signature mismatch", ticket_id=ticket_id)
        return ticket

    def render_qr_png(self, ticket: Ticket, size: int = 300) -> bytes:
        qr = qrcode.QRCode(
            version=1,
            error_correction=constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(self.qr_payload(ticket))
        qr.make(fit=True)

        image = qr.make_image(fill_color="black", back_color="white")
        image = image.resize((size, size), Image.LANCZOS)
        buffer = BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()
