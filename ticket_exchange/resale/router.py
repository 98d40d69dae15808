from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.database import get_db
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import User
from ticket_exchange.payments.checkout_service import CheckoutService
from ticket_exchange.payments.schemas import CheckoutResponse
from ticket_exchange.resale.listing_service import ListingService
from ticket_exchange.resale.schemas import ListingCreate, ListingResponse

router = APIRouter()


@router.post("/", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
def create_listing(request: ListingCreate, current_user: User = Depends(get_current_user),
                   db: Session = Depends(get_db)):
    """List an owned ticket for resale"""
    try:
        return ListingService(db).create_listing(request.ticket_id, current_user.id, request.price_cents)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/", response_model=List[ListingResponse])
def browse_listings(
    event_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    return ListingService(db).browse(event_id, limit, offset)


@router.get("/mine", response_model=List[ListingResponse])
def list_my_listings(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ListingService(db).list_for_seller(current_user.id)


@router.get("/{listing_id}", response_model=ListingResponse)
def get_listing(listing_id: str, db: Session = Depends(get_db)):
    return ListingService(db).get_listing(listing_id)


@router.delete("/{listing_id}", response_model=ListingResponse)
def cancel_listing(listing_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ListingService(db).cancel_listing(listing_id, current_user.id)


@router.post("/{listing_id}/purchase", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def purchase_listing(
    listing_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Open a payment for the listed price; complete it through the payments endpoints"""
    return CheckoutService(db, processor, notifier).purchase_listing(listing_id, current_user)
