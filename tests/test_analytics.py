"""
Tests for organizer read models (analytics_service.py).

Covers:
  - Tier availability
  - Cash summary per event and per seller
  - Sales, revenue and door activity per event
"""

from datetime import datetime, timezone

import pytest

from ticket_exchange.analytics.analytics_service import AnalyticsService
from ticket_exchange.cash.cash_service import CashService
from ticket_exchange.events.event_service import EventService
from ticket_exchange.exceptions import Unauthorized
from ticket_exchange.models import Ticket
from ticket_exchange.tickets.ticket_service import TicketService


@pytest.fixture
def analytics(db):
    return AnalyticsService(db)


@pytest.fixture
def sellers(db, make_user, organizer, event):
    events = EventService(db)
    events.enable_cash_sales(event.id, organizer.id, "cus_org", "pm_org")
    first = make_user("ann@example.com", "Ann")
    second = make_user("ben@example.com", "Ben")
    for user in (first, second):
        events.grant_staff(event.id, organizer.id, user.id, "seller")
    return first, second


class TestAvailability:
    def test_tiers_report_remaining(self, db, analytics, buyer, event, make_tier):
        capped = make_tier(price_cents=1500, max_quantity=3, name="VIP")
        make_tier(price_cents=500, name="Standing")
        TicketService(db).issue_ticket(event_id=event.id, ticket_type_id=capped.id, owner=buyer)
        db.commit()

        by_name = {row["name"]: row for row in analytics.ticket_type_availability(event.id)}
        assert (by_name["VIP"]["max"], by_name["VIP"]["sold"], by_name["VIP"]["remaining"]) == (3, 1, 2)
        assert by_name["Standing"]["remaining"] is None


class TestCashSummaries:
    def test_event_summary(self, db, processor, analytics, organizer, event, sellers):
        cash = CashService(db, processor)
        ann, ben = sellers
        first, _ = cash.record_sale(event.id, ann.id, 1000, "in_person")
        second, _ = cash.record_sale(event.id, ben.id, 3000, "in_person")
        cash.record_sale(event.id, ben.id, 2000, "in_person")
        cash.mark_collected(first.id, organizer.id)
        cash.mark_disputed(second.id, organizer.id)

        summary = analytics.event_cash_summary(event.id, organizer.id)
        assert summary["total_cash_cents"] == 6000
        assert summary["total_fees_cents"] == 300
        assert summary["fees_collected_cents"] == 300
        assert summary["transaction_count"] == 3
        assert (summary["collected_count"], summary["disputed_count"], summary["pending_count"]) == (1, 1, 1)

    def test_seller_breakdown_sorted_by_cash(self, db, processor, analytics, organizer, event, sellers):
        cash = CashService(db, processor)
        ann, ben = sellers
        cash.record_sale(event.id, ann.id, 1000, "in_person")
        cash.record_sale(event.id, ben.id, 2500, "in_person")
        cash.record_sale(event.id, ben.id, 500, "in_person")

        breakdown = analytics.seller_cash_breakdown(event.id, organizer.id)
        assert [row["seller_email"] for row in breakdown] == ["ben@example.com", "ann@example.com"]
        assert breakdown[0]["total_cash_cents"] == 3000
        assert breakdown[0]["transaction_count"] == 2

    def test_sellers_cannot_read_summaries(self, analytics, event, sellers):
        with pytest.raises(Unauthorized):
            analytics.event_cash_summary(event.id, sellers[0].id)


class TestEventAnalytics:
    def test_sales_and_door_activity(self, db, analytics, organizer, buyer, event, make_user):
        usher = make_user("usher@example.com")
        EventService(db).grant_staff(event.id, organizer.id, usher.id, "usher")
        tickets = TicketService(db)
        issued = [
            tickets.issue_ticket(event_id=event.id, owner=buyer, price_paid_cents=price)
            for price in (1000, 2000, 3000)
        ]
        db.commit()
        cancelled = issued[2]
        tickets.cancel_ticket(cancelled.id, organizer.id)

        door = [
            (issued[0], usher.id, datetime(2026, 7, 1, 19, 5, tzinfo=timezone.utc)),
            (issued[1], usher.id, datetime(2026, 7, 1, 19, 40, tzinfo=timezone.utc)),
        ]
        for ticket, staff_id, at in door:
            ticket.status = "used"
            ticket.checked_in_by = staff_id
            ticket.checked_in_at = at
        db.commit()

        report = analytics.event_analytics(event.id, organizer.id)
        assert report["total_sold"] == 2
        assert report["revenue_cents"] == 3000
        assert report["checked_in"] == 2
        assert report["hourly_checkins"] == [{"hour": "2026-07-01T19:00:00+00:00", "count": 2}]
        assert report["usher_stats"] == [{"user_id": usher.id, "count": 2}]
        assert db.get(Ticket, cancelled.id).status == "cancelled"

    def test_empty_event(self, analytics, organizer, event):
        report = analytics.event_analytics(event.id, organizer.id)
        assert report["total_sold"] == 0
        assert report["revenue_cents"] == 0
        assert report["hourly_checkins"] == []
