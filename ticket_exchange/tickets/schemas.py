from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class TicketResponse(BaseModel):
    id: str
    ticket_number: str
    event_id: str
    ticket_type_id: Optional[str] = None
    payment_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    owner_email: Optional[str] = None
    owner_name: Optional[str] = None
    price_paid_cents: int
    currency: str
    status: str
    ticket_mode: str
    listing_status: str
    listing_price_cents: Optional[int] = None
    payment_method: Optional[str] = None
    delivery_method: Optional[str] = None
    checked_in_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransferTokenResponse(BaseModel):
    ticket_id: str
    transfer_token: str
    expires_at: datetime


class ClaimRequest(BaseModel):
    token: str = Field(..., min_length=1)


class CheckInRequest(BaseModel):
    """Either a ticket id or a scanned QR payload"""
    ticket_id: Optional[str] = None
    qr_payload: Optional[str] = None
