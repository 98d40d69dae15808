import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import atomic
from ticket_exchange.exceptions import InvalidState, NotFound, Unauthorized
from ticket_exchange.integrations.notifications import STAFF_ADDED, NotificationSink
from ticket_exchange.models import Event, EventStaff, StaffRole, TicketType, User

logger = logging.getLogger(__name__)

ORGANIZER = "organizer"
MANAGERS = (StaffRole.MANAGER.value, StaffRole.ADMIN.value)
CHECK_IN_ROLES = (StaffRole.USHER.value, StaffRole.MANAGER.value, StaffRole.ADMIN.value)
CASH_SELLER_ROLES = (StaffRole.SELLER.value, StaffRole.MANAGER.value, StaffRole.ADMIN.value)
VENDOR_ROLES = (StaffRole.VENDOR.value, StaffRole.SELLER.value, StaffRole.MANAGER.value, StaffRole.ADMIN.value)


class EventService:
    """Events, their ticket tiers and their staff"""

    def __init__(self, db: Session, notifier: Optional[NotificationSink] = None):
        self.db = db
        self.notifier = notifier

    # Permissions

    def get_event(self, event_id: str) -> Event:
        event = self.db.get(Event, event_id)
        if event is None:
            raise NotFound("Event not found", event_id=event_id)
        return event

    def role_of(self, event: Event, user_id: str) -> Optional[str]:
        if event.organizer_id == user_id:
            return ORGANIZER
        staff = (
            self.db.query(EventStaff)
            .filter(EventStaff.event_id == event.id, EventStaff.user_id == user_id)
            .first()
        )
        return staff.role if staff else None

    def require_role(self, event_id: str, user_id: str, roles: Iterable[str] = ()) -> Event:
        """Return the event if ``user_id`` organizes it or holds one of ``roles``"""
        event = self.get_event(event_id)
        role = self.role_of(event, user_id)
        if role is None or (role != ORGANIZER and role not in roles):
            raise Unauthorized("Not permitted for this event", event_id=event_id)
        return event

    # Events

    def create_event(self, organizer_id: str, title: str, venue: Optional[str] = None,
                     starts_at: Optional[datetime] = None, price_cents: int = 0) -> Event:
        if not title or not title.strip():
            raise ValueError("Event title is required")
        if price_cents < 0:
            raise ValueError("Price cannot be negative")

        event = Event(
            organizer_id=organizer_id,
            title=title.strip(),
            venue=venue,
            starts_at=starts_at,
            price_cents=price_cents,
            currency=settings.CURRENCY,
        )
        with atomic(self.db):
            self.db.add(event)
        self.db.refresh(event)
        logger.info("Event %s created by %s", event.id, organizer_id)
        return event

    def list_events(self, organizer_id: Optional[str] = None) -> List[Event]:
        query = self.db.query(Event)
        if organizer_id:
            query = query.filter(Event.organizer_id == organizer_id)
        return query.order_by(Event.starts_at).all()

    def enable_cash_sales(self, event_id: str, actor_id: str, customer_ref: str, payment_method_ref: str) -> Event:
        """Store the organizer's processor references so cash-sale fees can be billed"""
        event = self.get_event(event_id)
        if event.organizer_id != actor_id:
            raise Unauthorized("Only the organizer can enable cash sales", event_id=event_id)
        if not customer_ref or not payment_method_ref:
            raise ValueError("A stored payment method is required to enable cash sales")

        with atomic(self.db):
            event.organizer_processor_customer_id = customer_ref
            event.organizer_payment_method_id = payment_method_ref
            event.cash_sales_enabled = True
        self.db.refresh(event)
        logger.info("Cash sales enabled for event %s", event_id)
        return event

    # Ticket types

    def create_ticket_type(self, event_id: str, actor_id: str, name: str, price_cents: int,
                           max_quantity: Optional[int] = None, description: Optional[str] = None,
                           sort_order: int = 0) -> TicketType:
        self.require_role(event_id, actor_id, MANAGERS)
        if price_cents < 0:
            raise ValueError("Price cannot be negative")
        if max_quantity is not None and max_quantity < 1:
            raise ValueError("Max quantity must be positive")

        ticket_type = TicketType(
            event_id=event_id,
            name=name,
            description=description,
            price_cents=price_cents,
            currency=settings.CURRENCY,
            max_quantity=max_quantity,
            sort_order=sort_order,
        )
        with atomic(self.db):
            self.db.add(ticket_type)
        self.db.refresh(ticket_type)
        return ticket_type

    def get_ticket_type(self, ticket_type_id: str) -> TicketType:
        ticket_type = self.db.get(TicketType, ticket_type_id)
        if ticket_type is None:
            raise NotFound("Ticket type not found", ticket_type_id=ticket_type_id)
        return ticket_type

    def update_ticket_type(self, ticket_type_id: str, actor_id: str, **changes) -> TicketType:
        """Edit a tier; ``sold_count`` is not editable and capacity may not drop below it"""
        ticket_type = self.get_ticket_type(ticket_type_id)
        self.require_role(ticket_type.event_id, actor_id, MANAGERS)

        allowed = {"name", "description", "price_cents", "max_quantity", "sort_order", "is_active"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if changes.get("price_cents") is not None and changes["price_cents"] < 0:
            raise ValueError("Price cannot be negative")

        values = {k: v for k, v in changes.items() if v is not None or k == "max_quantity"}
        stmt = update(TicketType).where(TicketType.id == ticket_type_id)
        if values.get("max_quantity") is not None:
            if values["max_quantity"] < 1:
                raise ValueError("Max quantity must be positive")
            stmt = stmt.where(TicketType.sold_count <= values["max_quantity"])

        with atomic(self.db):
            if values and self.db.execute(stmt.values(**values).execution_options(synchronize_session=False)).rowcount != 1:
                raise InvalidState("Capacity cannot be lower than tickets already sold",
                                   ticket_type_id=ticket_type_id)
        self.db.refresh(ticket_type)
        return ticket_type

    def disable_ticket_type(self, ticket_type_id: str, actor_id: str) -> TicketType:
        return self.update_ticket_type(ticket_type_id, actor_id, is_active=False)

    # Staff

    def grant_staff(self, event_id: str, actor_id: str, user_id: str, role: str) -> EventStaff:
        event = self.require_role(event_id, actor_id, (StaffRole.ADMIN.value,))
        role = StaffRole(role).value
        if user_id == event.organizer_id:
            raise InvalidState("The organizer already has full access", event_id=event_id)
        if self.db.get(User, user_id) is None:
            raise NotFound("User not found", user_id=user_id)

        staff = EventStaff(event_id=event_id, user_id=user_id, role=role)
        try:
            with atomic(self.db):
                self.db.add(staff)
        except IntegrityError as exc:
            raise InvalidState("User is already staff for this event", event_id=event_id) from exc
        self.db.refresh(staff)
        logger.info("Granted %s on event %s to %s", role, event_id, user_id)

        if self.notifier:
            self.notifier.notify(
                user_id, STAFF_ADDED, "You've been added as staff!",
                f"You are now a {role.capitalize()} for {event.title}",
                {"event_id": event_id, "role": role},
            )
        return staff

    def list_staff(self, event_id: str, actor_id: str) -> List[EventStaff]:
        self.require_role(event_id, actor_id, MANAGERS)
        return self.db.query(EventStaff).filter(EventStaff.event_id == event_id).all()
