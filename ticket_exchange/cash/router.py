from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.cash.cash_service import CashService
from ticket_exchange.cash.schemas import CashSaleCreate, CashSaleResponse, CashTransactionResponse
from ticket_exchange.database import get_db
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import User

router = APIRouter()


@router.post("/sales", response_model=CashSaleResponse, status_code=status.HTTP_201_CREATED)
def record_cash_sale(
    sale: CashSaleCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Record a door sale paid in cash and mint its ticket"""
    try:
        txn, ticket = CashService(db, processor, notifier).record_sale(
            sale.event_id, current_user.id, sale.amount_cents, sale.delivery_method,
            sale.customer_name, sale.customer_email, sale.ticket_type_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return CashSaleResponse(
        transaction=CashTransactionResponse.model_validate(txn),
        ticket=ticket,
        transfer_token=ticket.transfer_token,
    )


@router.get("/event/{event_id}", response_model=List[CashTransactionResponse])
def list_event_transactions(
    event_id: str,
    status_filter: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return CashService(db).list_for_event(event_id, current_user.id, status_filter)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/{transaction_id}/collect", response_model=CashTransactionResponse)
def mark_collected(transaction_id: str, current_user: User = Depends(get_current_user),
                   db: Session = Depends(get_db)):
    return CashService(db).mark_collected(transaction_id, current_user.id)


@router.post("/{transaction_id}/dispute", response_model=CashTransactionResponse)
def mark_disputed(transaction_id: str, current_user: User = Depends(get_current_user),
                  db: Session = Depends(get_db)):
    return CashService(db).mark_disputed(transaction_id, current_user.id)


@router.post("/{transaction_id}/retry-fee", response_model=CashTransactionResponse)
def retry_fee(
    transaction_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Bill a platform fee whose first charge attempt failed"""
    return CashService(db, processor).retry_fee(transaction_id, current_user.id)
