from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from ticket_exchange.payments.schemas import PaymentResponse
from ticket_exchange.tickets.schemas import TicketResponse


class OfferCreate(BaseModel):
    event_id: str
    recipient_email: EmailStr
    price_cents: int = Field(0, ge=0)
    ticket_mode: Literal["private", "public"] = "private"
    ticket_type_id: Optional[str] = None
    message: Optional[str] = None
    expires_at: Optional[datetime] = None


class OfferResponse(BaseModel):
    id: str
    event_id: str
    organizer_id: str
    recipient_email: str
    recipient_user_id: Optional[str] = None
    ticket_type_id: Optional[str] = None
    price_cents: int
    currency: str
    ticket_mode: str
    message: Optional[str] = None
    status: str
    ticket_id: Optional[str] = None
    payment_id: Optional[str] = None
    expires_at: datetime
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OfferAccept(BaseModel):
    """``skip_fee`` takes a free public offer as a private ticket without the mint fee"""
    skip_fee: bool = False


class OfferAcceptResponse(BaseModel):
    offer: OfferResponse
    ticket: Optional[TicketResponse] = None
    payment: Optional[PaymentResponse] = None
    client_secret: Optional[str] = None
    fees: dict
