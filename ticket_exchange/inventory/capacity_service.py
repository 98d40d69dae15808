import logging
from typing import Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ticket_exchange.database import utcnow
from ticket_exchange.exceptions import CapacityExceeded, InvalidState, NotFound
from ticket_exchange.models import Ticket, TicketType

logger = logging.getLogger(__name__)


class CapacityService:
    """Per-tier sold/max accounting.

    ``reserve_slot`` and ``release_slot`` never commit; they join the
    caller's transaction so the counter moves together with the ticket row.
    """

    def __init__(self, db: Session):
        self.db = db

    def reserve_slot(self, ticket_type_id: str, quantity: int = 1) -> None:
        """Atomically claim ``quantity`` slots or fail without touching the counter"""
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")

        stmt = (
            update(TicketType)
            .where(
                TicketType.id == ticket_type_id,
                TicketType.is_active.is_(True),
                or_(
                    TicketType.max_quantity.is_(None),
                    TicketType.sold_count + quantity <= TicketType.max_quantity,
                ),
            )
            .values(sold_count=TicketType.sold_count + quantity)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 1:
            return

        ticket_type = self.db.get(TicketType, ticket_type_id)
        if ticket_type is None:
            raise NotFound("Ticket type not found", ticket_type_id=ticket_type_id)
        if not ticket_type.is_active:
            raise InvalidState("Ticket type is no longer on sale", ticket_type_id=ticket_type_id)
        raise CapacityExceeded("Ticket type is sold out", ticket_type_id=ticket_type_id)

    def release_slot(self, ticket_type_id: Optional[str], ticket_id: str) -> bool:
        """Give back the slot held by ``ticket_id``.

        The ticket's ``capacity_released_at`` marker is claimed first, so a
        second call for the same ticket is a no-op. Returns whether a slot was
        actually released.
        """
        claimed = self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.capacity_released_at.is_(None))
            .values(capacity_released_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if not claimed:
            logger.debug("Capacity for ticket %s already released", ticket_id)
            return False

        if ticket_type_id is not None:
            self.db.execute(
                update(TicketType)
                .where(TicketType.id == ticket_type_id, TicketType.sold_count > 0)
                .values(sold_count=TicketType.sold_count - 1)
                .execution_options(synchronize_session=False)
            )
        logger.info("Released capacity on ticket type %s for ticket %s", ticket_type_id, ticket_id)
        return True

    def compute_availability(self, ticket_type_id: str) -> Dict[str, Optional[int]]:
        ticket_type = self.db.get(TicketType, ticket_type_id)
        if ticket_type is None:
            raise NotFound("Ticket type not found", ticket_type_id=ticket_type_id)
        self.db.refresh(ticket_type)
        return availability_of(ticket_type)

    def availability_for_event(self, event_id: str) -> List[dict]:
        ticket_types = (
            self.db.query(TicketType)
            .filter(TicketType.event_id == event_id)
            .order_by(TicketType.sort_order, TicketType.created_at)
            .all()
        )
        return [
            {"ticket_type_id": t.id, "name": t.name, "price_cents": t.price_cents,
             "is_active": t.is_active, **availability_of(t)}
            for t in ticket_types
        ]


def availability_of(ticket_type: TicketType) -> Dict[str, Optional[int]]:
    maximum = ticket_type.max_quantity
    sold = ticket_type.sold_count or 0
    remaining = None if maximum is None else max(0, maximum - sold)
    return {"max": maximum, "sold": sold, "remaining": remaining}
