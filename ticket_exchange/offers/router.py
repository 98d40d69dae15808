from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.database import get_db
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import User
from ticket_exchange.offers.offer_service import OfferService
from ticket_exchange.offers.schemas import OfferAccept, OfferAcceptResponse, OfferCreate, OfferResponse

router = APIRouter()


@router.post("/", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
def create_offer(
    request: OfferCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Send a ticket offer to an email address"""
    try:
        return OfferService(db, notifier).create_offer(
            current_user.id, request.event_id, request.recipient_email, request.price_cents,
            request.ticket_mode, request.ticket_type_id, request.message, request.expires_at,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/inbox", response_model=List[OfferResponse])
def list_inbox(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return OfferService(db).list_inbox(current_user)


@router.get("/event/{event_id}", response_model=List[OfferResponse])
def list_event_offers(event_id: str, current_user: User = Depends(get_current_user),
                      db: Session = Depends(get_db)):
    return OfferService(db).list_for_event(event_id, current_user.id)


@router.get("/{offer_id}", response_model=OfferResponse)
def get_offer(offer_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    offer = OfferService(db).get_offer(offer_id)
    if current_user.id not in (offer.organizer_id, offer.recipient_user_id) \
            and offer.recipient_email != current_user.email.lower():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your offer")
    return offer


@router.post("/{offer_id}/accept", response_model=OfferAcceptResponse)
def accept_offer(
    offer_id: str,
    request: OfferAccept = OfferAccept(),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    notifier: NotificationSink = Depends(get_notifier),
):
    return OfferService(db, notifier, processor).accept_offer(offer_id, current_user, request.skip_fee)


@router.post("/{offer_id}/decline", response_model=OfferResponse)
def decline_offer(offer_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return OfferService(db).decline_offer(offer_id, current_user)


@router.post("/{offer_id}/cancel", response_model=OfferResponse)
def cancel_offer(offer_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return OfferService(db).cancel_offer(offer_id, current_user.id)
