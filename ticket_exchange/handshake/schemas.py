from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class HandshakeInitiate(BaseModel):
    customer_id: str
    event_id: str
    amount_cents: int = Field(..., gt=0)
    ticket_type_id: Optional[str] = None


class PendingPaymentResponse(BaseModel):
    id: str
    vendor_id: str
    customer_id: str
    event_id: str
    ticket_type_id: Optional[str] = None
    ticket_type_name: Optional[str] = None
    amount_cents: int
    currency: str
    status: str
    version: int
    payment_id: Optional[str] = None
    ticket_id: Optional[str] = None
    failure_reason: Optional[str] = None
    expires_at: datetime
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
