from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ticket_exchange.models import StaffRole


class EventCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    venue: Optional[str] = None
    starts_at: Optional[datetime] = None
    price_cents: int = Field(0, ge=0)


class EventResponse(BaseModel):
    id: str
    organizer_id: str
    title: str
    venue: Optional[str] = None
    starts_at: Optional[datetime] = None
    price_cents: int
    currency: str
    cash_sales_enabled: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CashSalesEnable(BaseModel):
    """Processor references of the organizer's stored payment method"""
    customer_ref: str
    payment_method_ref: str


class TicketTypeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    price_cents: int = Field(..., ge=0)
    max_quantity: Optional[int] = Field(None, ge=1)
    sort_order: int = 0


class TicketTypeUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price_cents: Optional[int] = Field(None, ge=0)
    max_quantity: Optional[int] = Field(None, ge=1)
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class TicketTypeResponse(BaseModel):
    id: str
    event_id: str
    name: str
    description: Optional[str] = None
    price_cents: int
    currency: str
    max_quantity: Optional[int] = None
    sold_count: int
    sort_order: int
    is_active: bool

    class Config:
        from_attributes = True


class AvailabilityResponse(BaseModel):
    ticket_type_id: str
    name: str
    price_cents: int
    is_active: bool
    max: Optional[int] = None
    sold: int
    remaining: Optional[int] = None


class StaffGrant(BaseModel):
    user_id: str
    role: StaffRole


class StaffResponse(BaseModel):
    id: str
    event_id: str
    user_id: str
    role: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
