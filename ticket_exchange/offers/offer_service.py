import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, exists, or_, update
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import as_utc, atomic, utcnow
from ticket_exchange.events.event_service import MANAGERS, EventService
from ticket_exchange.exceptions import ConsistencyViolation, Expired, InvalidState, NotFound, Unauthorized
from ticket_exchange.integrations.notifications import FAVOR_TICKET_OFFER, NotificationSink
from ticket_exchange.integrations.processor import PaymentProcessor
from ticket_exchange.models import (
    OfferStatus, Payment, PaymentType, Ticket, TicketMode, TicketOffer, TicketType, User,
)
from ticket_exchange.payments.fee_calculator import calculate_fees
from ticket_exchange.payments.ledger_service import OPEN_STATUSES, PaymentLedger
from ticket_exchange.payments.referral_service import ReferralService
from ticket_exchange.tickets.ticket_service import TicketService

logger = logging.getLogger(__name__)

OFFER_MODES = (TicketMode.PRIVATE.value, TicketMode.PUBLIC.value)


def format_price(price_cents: int) -> str:
    return "Free" if price_cents == 0 else f"${price_cents / 100:.2f}"


class OfferService:
    """Favor offers: organizer-initiated gifts and comps addressed by email.

    An offer is linked to a user as soon as one exists for its email, either
    at creation or when that email is provisioned later. Once it leaves
    ``pending`` it never changes again, except that acceptance records the
    minted ticket.
    """

    def __init__(self, db: Session, notifier: Optional[NotificationSink] = None,
                 processor: Optional[PaymentProcessor] = None):
        self.db = db
        self.notifier = notifier
        self.processor = processor
        self.tickets = TicketService(db, notifier)
        self.ledger = PaymentLedger(db)

    def get_offer(self, offer_id: str) -> TicketOffer:
        offer = self.db.get(TicketOffer, offer_id)
        if offer is None:
            raise NotFound("Offer not found", offer_id=offer_id)
        return offer

    def list_inbox(self, user: User) -> List[TicketOffer]:
        return (
            self.db.query(TicketOffer)
            .filter(or_(TicketOffer.recipient_user_id == user.id,
                        TicketOffer.recipient_email == user.email.lower()))
            .order_by(TicketOffer.created_at.desc())
            .all()
        )

    def list_for_event(self, event_id: str, actor_id: str) -> List[TicketOffer]:
        EventService(self.db).require_role(event_id, actor_id, MANAGERS)
        return (
            self.db.query(TicketOffer)
            .filter(TicketOffer.event_id == event_id)
            .order_by(TicketOffer.created_at.desc())
            .all()
        )

    def create_offer(self, organizer_id: str, event_id: str, recipient_email: str, price_cents: int = 0,
                     ticket_mode: str = TicketMode.PRIVATE.value, ticket_type_id: Optional[str] = None,
                     message: Optional[str] = None, expires_at: Optional[datetime] = None) -> TicketOffer:
        event = EventService(self.db).get_event(event_id)
        if event.organizer_id != organizer_id:
            raise Unauthorized("Only the organizer can send ticket offers", event_id=event_id)
        if not recipient_email or "@" not in recipient_email:
            raise ValueError("A valid recipient email is required")
        if price_cents < 0:
            raise ValueError("Price cannot be negative")
        if ticket_mode not in OFFER_MODES:
            raise ValueError("Offer ticket mode must be private or public")
        if ticket_type_id is not None:
            ticket_type = self.db.get(TicketType, ticket_type_id)
            if ticket_type is None or ticket_type.event_id != event_id:
                raise NotFound("Ticket type not found for this event", ticket_type_id=ticket_type_id)

        now = utcnow()
        expires_at = as_utc(expires_at) if expires_at else now + timedelta(days=settings.OFFER_EXPIRY_DAYS)
        if expires_at <= now:
            raise ValueError("Offer expiry must be in the future")

        email = recipient_email.strip().lower()
        recipient = self.db.query(User).filter(User.email == email).first()
        offer = TicketOffer(
            event_id=event_id,
            organizer_id=organizer_id,
            recipient_email=email,
            recipient_user_id=recipient.id if recipient else None,
            ticket_type_id=ticket_type_id,
            price_cents=price_cents,
            currency=settings.CURRENCY,
            ticket_mode=ticket_mode,
            message=message,
            expires_at=expires_at,
        )
        with atomic(self.db):
            self.db.add(offer)
        self.db.refresh(offer)
        logger.info("Offer %s created for %s on event %s", offer.id, email, event_id)

        if recipient is not None:
            self._notify_offer(offer)
        return offer

    def _notify_offer(self, offer: TicketOffer) -> None:
        if not self.notifier or not offer.recipient_user_id:
            return
        event = offer.event
        organizer = self.db.get(User, offer.organizer_id)
        sender = (organizer.display_name if organizer and organizer.display_name else "An organizer")
        self.notifier.notify(
            offer.recipient_user_id,
            FAVOR_TICKET_OFFER,
            "You received a ticket offer!",
            f"{sender} sent you a {format_price(offer.price_cents)} ticket for {event.title}",
            {
                "offer_id": offer.id,
                "event_id": offer.event_id,
                "price_cents": offer.price_cents,
                "ticket_mode": offer.ticket_mode,
                "message": offer.message,
            },
        )

    def _require_recipient(self, offer: TicketOffer, user: User) -> None:
        if offer.recipient_user_id != user.id and offer.recipient_email != user.email.lower():
            raise Unauthorized("This offer is addressed to someone else", offer_id=offer.id)

    def _payment_in_flight(self, offer: TicketOffer) -> Optional[Payment]:
        if not offer.payment_id:
            return None
        payment = self.db.get(Payment, offer.payment_id)
        if payment is not None and payment.status in OPEN_STATUSES:
            return payment
        return None

    def _reject_if_expired(self, offer: TicketOffer) -> None:
        """Expire a due offer on the spot so staleness is caught without the sweep.

        Like the sweep, an offer with a payment in flight stays pending until
        that payment settles or is failed as abandoned.
        """
        now = utcnow()
        if as_utc(offer.expires_at) > now:
            return
        with atomic(self.db):
            self.db.execute(
                update(TicketOffer)
                .where(
                    TicketOffer.id == offer.id,
                    TicketOffer.status == OfferStatus.PENDING.value,
                    ~self._payment_in_flight_clause(),
                )
                .values(status=OfferStatus.EXPIRED.value, resolved_at=now)
                .execution_options(synchronize_session=False)
            )
        raise Expired("Offer has expired", offer_id=offer.id)

    def _require_pending(self, offer: TicketOffer) -> None:
        self.db.refresh(offer)
        if offer.status != OfferStatus.PENDING.value:
            raise InvalidState(f"Offer is already {offer.status}", offer_id=offer.id)

    def accept_offer(self, offer_id: str, user: User, skip_fee: bool = False) -> dict:
        """Accept an offer.

        Free private offers, and free public offers whose recipient skips the
        mint fee, mint a private ticket at once. Everything that costs money
        opens a favor payment and returns its client secret; the ticket is
        minted when the payment settles.
        """
        offer = self.get_offer(offer_id)
        self._require_recipient(offer, user)
        self._require_pending(offer)
        if self._payment_in_flight(offer) is not None:
            raise InvalidState("Payment for this offer is already in progress", offer_id=offer_id)
        self._reject_if_expired(offer)

        free = offer.price_cents == 0
        if offer.ticket_mode == TicketMode.PRIVATE.value or (free and skip_fee):
            result_mode = TicketMode.PRIVATE.value
        else:
            result_mode = TicketMode.PUBLIC.value

        snapshot = ReferralService(self.db).load_config_snapshot()
        referral = snapshot.context_for(user)
        fees = calculate_fees(
            PaymentType.FAVOR_TICKET_PURCHASE.value, offer.price_cents, referral,
            include_mint_fee=result_mode == TicketMode.PUBLIC.value,
        )
        if fees.total_cents == 0:
            ticket = self._accept_without_payment(offer, user, result_mode)
            return {"offer": offer, "ticket": ticket, "payment": None, "client_secret": None, "fees": fees.to_dict()}

        if self.processor is None:
            raise InvalidState("Paid offers need a payment processor", offer_id=offer_id)

        previous_payment_id = offer.payment_id
        with atomic(self.db):
            payment = self.ledger.open(
                PaymentType.FAVOR_TICKET_PURCHASE.value,
                user.id,
                fees.total_cents,
                platform_fee_cents=fees.platform_fee_cents,
                event_id=offer.event_id,
                offer_id=offer.id,
                metadata={
                    "fees": fees.to_dict(),
                    "referral": ReferralService.snapshot_metadata(referral),
                    "ticket_mode": result_mode,
                    "price_cents": offer.price_cents,
                },
            )
            claim = TicketOffer.payment_id.is_(None) if previous_payment_id is None \
                else TicketOffer.payment_id == previous_payment_id
            linked = self.db.execute(
                update(TicketOffer)
                .where(TicketOffer.id == offer.id, TicketOffer.status == OfferStatus.PENDING.value, claim)
                .values(payment_id=payment.id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not linked:
                raise InvalidState("Offer changed while starting payment", offer_id=offer_id)

        intent = self.ledger.request_charge(self.processor, payment, user.id, {"offer_id": offer.id})
        self.db.refresh(offer)
        logger.info("Offer %s awaiting payment %s", offer_id, payment.id)
        return {
            "offer": offer,
            "ticket": None,
            "payment": payment,
            "client_secret": intent.client_secret,
            "fees": fees.to_dict(),
        }

    def _accept_without_payment(self, offer: TicketOffer, user: User, ticket_mode: str) -> Ticket:
        now = utcnow()
        with atomic(self.db):
            accepted = self.db.execute(
                update(TicketOffer)
                .where(
                    TicketOffer.id == offer.id,
                    TicketOffer.status == OfferStatus.PENDING.value,
                    TicketOffer.expires_at > now,
                )
                .values(status=OfferStatus.ACCEPTED.value, resolved_at=now, recipient_user_id=user.id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not accepted:
                raise InvalidState("Offer can no longer be accepted", offer_id=offer.id)
            ticket = self.tickets.issue_ticket(
                event_id=offer.event_id,
                ticket_type_id=offer.ticket_type_id,
                owner=user,
                price_paid_cents=0,
                ticket_mode=ticket_mode,
                offer_id=offer.id,
                payment_method="comp",
            )
            self._link_ticket(offer.id, ticket.id)

        self.db.refresh(offer)
        logger.info("Offer %s accepted; minted %s ticket %s", offer.id, ticket_mode, ticket.id)
        self.tickets.notify_received(ticket)
        return ticket

    def _link_ticket(self, offer_id: str, ticket_id: str) -> None:
        self.db.execute(
            update(TicketOffer)
            .where(TicketOffer.id == offer_id)
            .values(ticket_id=ticket_id)
            .execution_options(synchronize_session=False)
        )

    def complete_paid_acceptance(self, payment: Payment) -> Ticket:
        """Resolve the offer a settled favor payment was for; joins the caller's transaction"""
        offer = self.db.get(TicketOffer, payment.offer_id) if payment.offer_id else None
        if offer is None:
            raise ConsistencyViolation("Offer for this payment no longer exists", payment_id=payment.id)
        buyer = self.db.get(User, payment.user_id)

        accepted = self.db.execute(
            update(TicketOffer)
            .where(
                TicketOffer.id == offer.id,
                TicketOffer.status == OfferStatus.PENDING.value,
                TicketOffer.payment_id == payment.id,
            )
            .values(status=OfferStatus.ACCEPTED.value, resolved_at=utcnow(), recipient_user_id=buyer.id)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not accepted:
            raise ConsistencyViolation("Offer is no longer awaiting this payment",
                                       offer_id=offer.id, payment_id=payment.id)

        metadata = payment.payment_metadata or {}
        ticket = self.tickets.issue_ticket(
            event_id=offer.event_id,
            ticket_type_id=offer.ticket_type_id,
            owner=buyer,
            price_paid_cents=(metadata.get("fees") or {}).get("effective_base_cents", offer.price_cents),
            ticket_mode=metadata.get("ticket_mode", offer.ticket_mode),
            payment_id=payment.id,
            offer_id=offer.id,
        )
        self._link_ticket(offer.id, ticket.id)
        return ticket

    def decline_offer(self, offer_id: str, user: User) -> TicketOffer:
        offer = self.get_offer(offer_id)
        self._require_recipient(offer, user)
        self._require_pending(offer)
        self._reject_if_expired(offer)
        self._resolve(offer, OfferStatus.DECLINED.value)
        logger.info("Offer %s declined", offer_id)
        return offer

    def cancel_offer(self, offer_id: str, organizer_id: str) -> TicketOffer:
        offer = self.get_offer(offer_id)
        if offer.organizer_id != organizer_id:
            raise Unauthorized("Only the organizer can cancel this offer", offer_id=offer_id)
        self._require_pending(offer)
        self._resolve(offer, OfferStatus.CANCELLED.value)
        logger.info("Offer %s cancelled by organizer", offer_id)
        return offer

    def _resolve(self, offer: TicketOffer, status: str) -> None:
        with atomic(self.db):
            resolved = self.db.execute(
                update(TicketOffer)
                .where(
                    TicketOffer.id == offer.id,
                    TicketOffer.status == OfferStatus.PENDING.value,
                    ~self._payment_in_flight_clause(),
                )
                .values(status=status, resolved_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            if not resolved:
                raise InvalidState("Offer can no longer be changed", offer_id=offer.id)
        self.db.refresh(offer)

    @staticmethod
    def _payment_in_flight_clause():
        return (
            exists()
            .where(and_(Payment.id == TicketOffer.payment_id, Payment.status.in_(OPEN_STATUSES)))
            .correlate(TicketOffer)
        )

    def link_and_notify_on_signup(self, email: str, user_id: str) -> List[TicketOffer]:
        """Attach pending offers sent to ``email`` before its owner signed up.

        Safe to run more than once: only offers without a linked user are
        touched, and each is linked and announced exactly once.
        """
        email = email.strip().lower()
        candidates = (
            self.db.query(TicketOffer)
            .filter(
                TicketOffer.recipient_email == email,
                TicketOffer.recipient_user_id.is_(None),
                TicketOffer.status == OfferStatus.PENDING.value,
            )
            .all()
        )
        linked = []
        with atomic(self.db):
            for offer in candidates:
                claimed = self.db.execute(
                    update(TicketOffer)
                    .where(TicketOffer.id == offer.id, TicketOffer.recipient_user_id.is_(None))
                    .values(recipient_user_id=user_id)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed:
                    linked.append(offer)

        for offer in linked:
            self.db.refresh(offer)
            self._notify_offer(offer)
        if linked:
            logger.info("Linked %d pending offers to new user %s", len(linked), user_id)
        return linked

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Expire overdue pending offers.

        Favor payments left open past their lifetime are failed first, so an
        abandoned payment holds an offer back by at most that long.
        """
        now = now or utcnow()
        self.ledger.expire_abandoned(self.processor, now, (PaymentType.FAVOR_TICKET_PURCHASE.value,))
        with atomic(self.db):
            expired = self.db.execute(
                update(TicketOffer)
                .where(
                    TicketOffer.status == OfferStatus.PENDING.value,
                    TicketOffer.expires_at <= now,
                    ~self._payment_in_flight_clause(),
                )
                .values(status=OfferStatus.EXPIRED.value, resolved_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
        if expired:
            logger.info("Expired %d favor offers", expired)
        return expired
