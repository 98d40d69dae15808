import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_exchange.config import settings
from ticket_exchange.database import atomic, utcnow
from ticket_exchange.exceptions import InvalidState, NotFound
from ticket_exchange.integrations.processor import PaymentProcessor
from ticket_exchange.models import SellerBalance

logger = logging.getLogger(__name__)


class BalanceService:
    """Seller sub-balances.

    The processor owns the money; ``seller_balances`` is a cache refreshed
    from it and nudged optimistically when a sale settles.
    """

    def __init__(self, db: Session, processor: Optional[PaymentProcessor] = None):
        self.db = db
        self.processor = processor

    def get_account(self, user_id: str) -> Optional[SellerBalance]:
        return self.db.query(SellerBalance).filter(SellerBalance.user_id == user_id).first()

    def require_account(self, user_id: str) -> SellerBalance:
        balance = self.get_account(user_id)
        if balance is None:
            raise NotFound("No seller account; create one first", user_id=user_id)
        return balance

    def create_account(self, user_id: str) -> SellerBalance:
        existing = self.get_account(user_id)
        if existing is not None:
            return existing

        account_ref = self.processor.create_seller_account(user_id)
        balance = SellerBalance(user_id=user_id, processor_account_id=account_ref, currency=settings.CURRENCY)
        try:
            with atomic(self.db):
                self.db.add(balance)
        except IntegrityError:
            logger.info("Seller account for %s created concurrently", user_id)
            return self.require_account(user_id)
        self.db.refresh(balance)
        logger.info("Seller account %s created for %s", account_ref, user_id)
        return balance

    def sync(self, user_id: str) -> SellerBalance:
        balance = self.require_account(user_id)
        remote = self.processor.get_balance(balance.processor_account_id)
        with atomic(self.db):
            balance.available_balance_cents = remote.available_cents
            balance.pending_balance_cents = remote.pending_cents
            balance.payouts_enabled = remote.payouts_enabled
            balance.details_submitted = remote.payouts_enabled
            balance.last_synced_at = utcnow()
        self.db.refresh(balance)
        return balance

    def credit_pending(self, user_id: str, amount_cents: int) -> bool:
        """Bump the cached pending balance; joins the caller's transaction"""
        return bool(self.db.execute(
            update(SellerBalance)
            .where(SellerBalance.user_id == user_id)
            .values(pending_balance_cents=SellerBalance.pending_balance_cents + amount_cents)
            .execution_options(synchronize_session=False)
        ).rowcount)

    def withdraw(self, user_id: str, amount_cents: Optional[int] = None) -> dict:
        """Pay out up to the available balance.

        Without an amount everything available is withdrawn; a larger amount
        is capped at what is available. Sellers who have not finished
        onboarding get the onboarding link back instead of a payout.
        """
        if amount_cents is not None and amount_cents <= 0:
            raise ValueError("Withdrawal amount must be positive")

        balance = self.sync(user_id)
        if not balance.payouts_enabled:
            result = self.processor.withdraw(balance.processor_account_id, None)
            return {
                "completed": False,
                "needs_onboarding": True,
                "onboarding_url": result.onboarding_url,
                "amount_cents": 0,
            }

        available = balance.available_balance_cents
        amount = available if amount_cents is None else min(amount_cents, available)
        if amount <= 0:
            raise InvalidState("No funds available to withdraw", user_id=user_id)

        result = self.processor.withdraw(balance.processor_account_id, amount)
        if result.needs_onboarding:
            return {
                "completed": False,
                "needs_onboarding": True,
                "onboarding_url": result.onboarding_url,
                "amount_cents": 0,
            }

        with atomic(self.db):
            balance.available_balance_cents = max(0, balance.available_balance_cents - result.amount_cents)
        logger.info("Seller %s withdrew %s cents (payout %s)", user_id, result.amount_cents, result.payout_id)
        return {
            "completed": True,
            "needs_onboarding": False,
            "onboarding_url": None,
            "amount_cents": result.amount_cents,
            "payout_id": result.payout_id,
        }
