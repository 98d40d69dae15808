from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from ticket_exchange.tickets.schemas import TicketResponse


class CashSaleCreate(BaseModel):
    event_id: str
    amount_cents: int = Field(..., ge=0)
    delivery_method: Literal["nfc", "email", "in_person"]
    ticket_type_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[EmailStr] = None


class CashTransactionResponse(BaseModel):
    id: str
    event_id: str
    seller_id: str
    ticket_id: str
    amount_cents: int
    platform_fee_cents: int
    currency: str
    status: str
    fee_charged: bool
    fee_charge_error: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    delivery_method: Optional[str] = None
    reconciled_at: Optional[datetime] = None
    reconciled_by: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CashSaleResponse(BaseModel):
    """``transfer_token`` is set for NFC hand-over; the customer's device claims the ticket with it"""
    transaction: CashTransactionResponse
    ticket: TicketResponse
    transfer_token: Optional[str] = None
