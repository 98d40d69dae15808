from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.config import settings
from ticket_exchange.database import get_db
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import User
from ticket_exchange.payments.checkout_service import CheckoutService
from ticket_exchange.payments.fee_calculator import calculate_fees
from ticket_exchange.payments.ledger_service import PaymentLedger
from ticket_exchange.payments.referral_service import ReferralService
from ticket_exchange.payments.schemas import (
    CheckoutRequest, CheckoutResponse, FeeQuoteRequest, PaymentResponse, ProcessorWebhook,
)
from ticket_exchange.payments.settlement_service import SettlementService

router = APIRouter()


@router.post("/quote")
def quote_fees(request: FeeQuoteRequest, current_user: User = Depends(get_current_user),
               db: Session = Depends(get_db)):
    """Fee breakdown the current user would be charged, referral discount included"""
    referral = ReferralService(db).load_config_snapshot().context_for(current_user)
    return calculate_fees(request.payment_type.value, request.base_amount_cents, referral).to_dict()


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def start_checkout(
    request: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Start a primary purchase of one ticket type"""
    try:
        return CheckoutService(db, processor, notifier).start_checkout(
            current_user, request.ticket_type_id, request.quantity
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/{payment_id}/complete", response_model=PaymentResponse)
def complete_payment(
    payment_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Confirm the charge now and settle it instead of waiting for the webhook"""
    return CheckoutService(db, processor, notifier).complete_checkout(payment_id, current_user.id)


@router.get("/mine", response_model=List[PaymentResponse])
def list_my_payments(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return PaymentLedger(db).list_for_user(current_user.id)


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    payment = PaymentLedger(db).get(payment_id)
    if payment.user_id != current_user.id and not current_user.is_platform_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your payment")
    return payment


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
def refund_payment(
    payment_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    return PaymentLedger(db).refund(payment_id, current_user.id, processor)


@router.post("/webhook", response_model=PaymentResponse)
def processor_webhook(
    outcome: ProcessorWebhook,
    x_processor_secret: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Apply an asynchronous charge outcome; redelivery of the same outcome is a no-op"""
    if x_processor_secret != settings.PROCESSOR_WEBHOOK_SECRET:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")
    return SettlementService(db, processor, notifier).apply_outcome(
        outcome.intent_id, outcome.success, outcome.charge_ref, outcome.failure_message
    )
