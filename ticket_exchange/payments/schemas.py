from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ticket_exchange.models import PaymentType
from ticket_exchange.tickets.schemas import TicketResponse


class PaymentResponse(BaseModel):
    id: str
    user_id: str
    event_id: Optional[str] = None
    type: str
    amount_cents: int
    platform_fee_cents: int
    currency: str
    status: str
    listing_id: Optional[str] = None
    offer_id: Optional[str] = None
    pending_payment_id: Optional[str] = None
    processor_intent_id: Optional[str] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CheckoutRequest(BaseModel):
    ticket_type_id: str
    quantity: int = Field(1, ge=1, le=10)


class CheckoutResponse(BaseModel):
    """``payment`` is empty when nothing had to be charged and tickets were issued directly"""
    payment: Optional[PaymentResponse] = None
    client_secret: Optional[str] = None
    fees: dict
    tickets: List[TicketResponse] = []


class FeeQuoteRequest(BaseModel):
    payment_type: PaymentType
    base_amount_cents: int = Field(..., ge=0)


class ProcessorWebhook(BaseModel):
    """Asynchronous charge outcome pushed by the payment processor"""
    intent_id: str
    success: bool
    charge_ref: Optional[str] = None
    failure_message: Optional[str] = None
