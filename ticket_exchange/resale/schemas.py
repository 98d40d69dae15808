from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ListingCreate(BaseModel):
    ticket_id: str
    price_cents: int = Field(..., gt=0)


class ListingResponse(BaseModel):
    id: str
    ticket_id: str
    seller_id: str
    price_cents: int
    currency: str
    status: str
    buyer_id: Optional[str] = None
    payment_id: Optional[str] = None
    sold_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
