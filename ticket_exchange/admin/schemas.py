from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class SweepResult(BaseModel):
    payments_expired: int
    offers_expired: int
    handshakes_expired: int
    transfer_tokens_cleared: int
    subscriptions_lapsed: int


class CapacityDrift(BaseModel):
    ticket_type_id: str
    sold_count: int
    expected: int


class ListingDrift(BaseModel):
    ticket_id: str
    active_listings: int
    listing_status_listed: bool


class AuditReport(BaseModel):
    ok: bool
    capacity_drift: List[CapacityDrift]
    listing_drift: List[ListingDrift]
    checked_at: str


class ReferralConfigUpdate(BaseModel):
    discount_percent: Optional[Decimal] = Field(None, ge=0, le=1)
    revenue_share_percent: Optional[Decimal] = Field(None, ge=0, le=1)
    benefit_duration_days: Optional[int] = Field(None, ge=0)
    enabled: Optional[bool] = None


class ReferralConfigResponse(BaseModel):
    discount_percent: Decimal
    revenue_share_percent: Decimal
    benefit_duration_days: int
    enabled: bool

    class Config:
        from_attributes = True
