from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ticket_exchange.analytics.analytics_service import AnalyticsService
from ticket_exchange.analytics.schemas import CashSummary, EventAnalytics, SellerCashBreakdown
from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.database import get_db
from ticket_exchange.events.schemas import AvailabilityResponse
from ticket_exchange.models import User

router = APIRouter()


@router.get("/events/{event_id}/availability", response_model=List[AvailabilityResponse])
def ticket_type_availability(event_id: str, db: Session = Depends(get_db)):
    return AnalyticsService(db).ticket_type_availability(event_id)


@router.get("/events/{event_id}/cash-summary", response_model=CashSummary)
def event_cash_summary(event_id: str, current_user: User = Depends(get_current_user),
                       db: Session = Depends(get_db)):
    return AnalyticsService(db).event_cash_summary(event_id, current_user.id)


@router.get("/events/{event_id}/cash-by-seller", response_model=List[SellerCashBreakdown])
def seller_cash_breakdown(event_id: str, current_user: User = Depends(get_current_user),
                          db: Session = Depends(get_db)):
    """Cash totals per seller, largest first"""
    return AnalyticsService(db).seller_cash_breakdown(event_id, current_user.id)


@router.get("/events/{event_id}", response_model=EventAnalytics)
def event_analytics(event_id: str, current_user: User = Depends(get_current_user),
                    db: Session = Depends(get_db)):
    return AnalyticsService(db).event_analytics(event_id, current_user.id)
