from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SellerBalanceResponse(BaseModel):
    user_id: str
    processor_account_id: str
    available_balance_cents: int
    pending_balance_cents: int
    currency: str
    payouts_enabled: bool
    details_submitted: bool
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WithdrawRequest(BaseModel):
    """Omit ``amount_cents`` to withdraw everything available"""
    amount_cents: Optional[int] = Field(None, gt=0)


class WithdrawResponse(BaseModel):
    completed: bool
    needs_onboarding: bool
    onboarding_url: Optional[str] = None
    amount_cents: int
    payout_id: Optional[str] = None
