from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.database import get_db
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import User
from ticket_exchange.subscriptions.schemas import (
    SubscriptionCheckoutRequest, SubscriptionCheckoutResponse, SubscriptionResponse,
)
from ticket_exchange.subscriptions.subscription_service import SubscriptionService

router = APIRouter()


@router.get("/me", response_model=SubscriptionResponse)
def get_my_subscription(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return SubscriptionService(db).get_subscription(current_user.id)


@router.post("/checkout", response_model=SubscriptionCheckoutResponse, status_code=status.HTTP_201_CREATED)
def start_subscription_checkout(
    request: SubscriptionCheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Open a payment for a paid tier; complete it through ``/payments/{id}/complete`` or the webhook"""
    try:
        return SubscriptionService(db, processor).start_checkout(current_user, request.tier)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel_subscription(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Cancel at the end of the current period"""
    return SubscriptionService(db).set_cancel_at_period_end(current_user.id, True)


@router.post("/resume", response_model=SubscriptionResponse)
def resume_subscription(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return SubscriptionService(db).set_cancel_at_period_end(current_user.id, False)


@router.post("/verify", response_model=SubscriptionResponse)
def verify_subscription(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Re-check the billing period and return the up-to-date subscription"""
    return SubscriptionService(db).refresh(current_user.id)
