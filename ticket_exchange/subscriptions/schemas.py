from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

from ticket_exchange.payments.schemas import PaymentResponse


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str
    tier: str
    status: str
    effective_tier: str
    payment_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool

    class Config:
        from_attributes = True


class SubscriptionCheckoutRequest(BaseModel):
    tier: Literal["pro", "enterprise"]


class SubscriptionCheckoutResponse(BaseModel):
    subscription: SubscriptionResponse
    payment: PaymentResponse
    client_secret: str
    fees: dict
