from typing import List

from pydantic import BaseModel


class CashSummary(BaseModel):
    total_cash_cents: int
    total_fees_cents: int
    fees_collected_cents: int
    transaction_count: int
    collected_count: int
    disputed_count: int
    pending_count: int


class SellerCashBreakdown(CashSummary):
    seller_id: str
    seller_email: str


class HourlyCheckins(BaseModel):
    hour: str
    count: int


class UsherStat(BaseModel):
    user_id: str
    count: int


class EventAnalytics(BaseModel):
    event_id: str
    total_sold: int
    checked_in: int
    revenue_cents: int
    hourly_checkins: List[HourlyCheckins]
    usher_stats: List[UsherStat]
