from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.database import get_db
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import User
from ticket_exchange.wallet.balance_service import BalanceService
from ticket_exchange.wallet.schemas import SellerBalanceResponse, WithdrawRequest, WithdrawResponse

router = APIRouter()


@router.post("/account", response_model=SellerBalanceResponse, status_code=status.HTTP_201_CREATED)
def create_seller_account(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Open a processor sub-account so sale proceeds can be routed to the current user"""
    return BalanceService(db, processor).create_account(current_user.id)


@router.get("/balance", response_model=SellerBalanceResponse)
def get_balance(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Current balance, refreshed from the processor"""
    return BalanceService(db, processor).sync(current_user.id)


@router.post("/withdraw", response_model=WithdrawResponse)
def withdraw(
    request: WithdrawRequest = WithdrawRequest(),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    try:
        return BalanceService(db, processor).withdraw(current_user.id, request.amount_cents)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
