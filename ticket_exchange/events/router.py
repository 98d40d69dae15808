from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.database import get_db
from ticket_exchange.events.event_service import EventService
from ticket_exchange.events.schemas import (
    AvailabilityResponse, CashSalesEnable, EventCreate, EventResponse, StaffGrant, StaffResponse,
    TicketTypeCreate, TicketTypeResponse, TicketTypeUpdate,
)
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.inventory.capacity_service import CapacityService
from ticket_exchange.models import User

router = APIRouter()


@router.post("/", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
def create_event(
    event: EventCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create an event organized by the current user"""
    try:
        return EventService(db).create_event(
            current_user.id, event.title, event.venue, event.starts_at, event.price_cents
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/", response_model=List[EventResponse])
def list_events(organizer_id: Optional[str] = None, db: Session = Depends(get_db)):
    return EventService(db).list_events(organizer_id)


@router.get("/{event_id}", response_model=EventResponse)
def get_event(event_id: str, db: Session = Depends(get_db)):
    return EventService(db).get_event(event_id)


@router.post("/{event_id}/cash-sales", response_model=EventResponse)
def enable_cash_sales(
    event_id: str,
    request: CashSalesEnable,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Enable door cash sales, billing platform fees to the stored payment method"""
    try:
        return EventService(db).enable_cash_sales(
            event_id, current_user.id, request.customer_ref, request.payment_method_ref
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# Ticket types

@router.post("/{event_id}/ticket-types", response_model=TicketTypeResponse, status_code=status.HTTP_201_CREATED)
def create_ticket_type(
    event_id: str,
    ticket_type: TicketTypeCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return EventService(db).create_ticket_type(
            event_id, current_user.id, ticket_type.name, ticket_type.price_cents,
            ticket_type.max_quantity, ticket_type.description, ticket_type.sort_order,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{event_id}/ticket-types", response_model=List[AvailabilityResponse])
def list_ticket_types(event_id: str, db: Session = Depends(get_db)):
    """Ticket tiers of an event with their remaining capacity"""
    EventService(db).get_event(event_id)
    return CapacityService(db).availability_for_event(event_id)


@router.patch("/ticket-types/{ticket_type_id}", response_model=TicketTypeResponse)
def update_ticket_type(
    ticket_type_id: str,
    changes: TicketTypeUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return EventService(db).update_ticket_type(
            ticket_type_id, current_user.id, **changes.model_dump(exclude_unset=True)
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/ticket-types/{ticket_type_id}", response_model=TicketTypeResponse)
def disable_ticket_type(
    ticket_type_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Stop selling a tier; tickets already sold stay valid"""
    return EventService(db).disable_ticket_type(ticket_type_id, current_user.id)


# Staff

@router.post("/{event_id}/staff", response_model=StaffResponse, status_code=status.HTTP_201_CREATED)
def grant_staff(
    event_id: str,
    grant: StaffGrant,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
):
    try:
        return EventService(db, notifier).grant_staff(event_id, current_user.id, grant.user_id, grant.role.value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{event_id}/staff", response_model=List[StaffResponse])
def list_staff(
    event_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return EventService(db).list_staff(event_id, current_user.id)
