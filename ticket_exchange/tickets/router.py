from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.database import get_db
from ticket_exchange.events.event_service import CHECK_IN_ROLES, EventService
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.models import User
from ticket_exchange.tickets.schemas import CheckInRequest, ClaimRequest, TicketResponse, TransferTokenResponse
from ticket_exchange.tickets.ticket_service import TicketService

router = APIRouter()


def _visible_ticket(service: TicketService, ticket_id: str, user: User):
    ticket = service.get_ticket(ticket_id)
    if ticket.owner_user_id != user.id:
        # Door staff may look up any ticket of their event
        EventService(service.db).require_role(ticket.event_id, user.id, CHECK_IN_ROLES)
    return ticket


@router.get("/mine", response_model=List[TicketResponse])
def list_my_tickets(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return TicketService(db).list_for_owner(current_user.id)


@router.get("/{ticket_id}", response_model=TicketResponse)
def get_ticket(ticket_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _visible_ticket(TicketService(db), ticket_id, current_user)


@router.get("/{ticket_id}/qr")
def get_ticket_qr(ticket_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Signed admission code for the ticket as a PNG image"""
    service = TicketService(db)
    ticket = service.get_ticket(ticket_id)
    if ticket.owner_user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your ticket")
    return Response(content=service.render_qr_png(ticket), media_type="image/png")


@router.post("/check-in", response_model=TicketResponse)
def check_in(request: CheckInRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    service = TicketService(db)
    try:
        if request.qr_payload:
            ticket_id = service.verify_qr_payload(request.qr_payload).id
        elif request.ticket_id:
            ticket_id = request.ticket_id
        else:
            raise ValueError("ticket_id or qr_payload is required")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return service.check_in(ticket_id, current_user.id)


@router.post("/{ticket_id}/cancel", response_model=TicketResponse)
def cancel_ticket(ticket_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return TicketService(db).cancel_ticket(ticket_id, current_user.id)


@router.post("/{ticket_id}/transfer-token", response_model=TransferTokenResponse)
def create_transfer_token(ticket_id: str, current_user: User = Depends(get_current_user),
                          db: Session = Depends(get_db)):
    """Issue a short-lived token the recipient presents to claim the ticket"""
    ticket = TicketService(db).create_transfer_token(ticket_id, current_user.id)
    return TransferTokenResponse(
        ticket_id=ticket.id,
        transfer_token=ticket.transfer_token,
        expires_at=ticket.transfer_token_expires_at,
    )


@router.post("/claim", response_model=TicketResponse)
def claim_transfer(
    request: ClaimRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
):
    return TicketService(db, notifier).claim_transfer(request.token, current_user)
