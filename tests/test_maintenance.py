"""
Tests for deadline sweeps and the counter auditor (maintenance_service.py).

Covers:
  - One sweep pass expiring abandoned payments, offers, handshakes and transfer tokens
  - Sweeps being idempotent
  - Capacity and listing drift detection
  - The background scheduler's single run
"""

from datetime import timedelta

import pytest

from ticket_exchange.admin.maintenance_service import MaintenanceService, SweepScheduler
from ticket_exchange.database import utcnow
from ticket_exchange.events.event_service import EventService
from ticket_exchange.handshake.handshake_service import HandshakeService
from ticket_exchange.models import OfferStatus, Ticket
from ticket_exchange.offers.offer_service import OfferService
from ticket_exchange.resale.listing_service import ListingService
from ticket_exchange.tickets.ticket_service import TicketService


@pytest.fixture
def overdue(db, stream, organizer, buyer, event, make_user):
    """One of each kind of row whose deadline has just passed."""
    past = utcnow() - timedelta(minutes=1)

    offer = OfferService(db).create_offer(organizer.id, event.id, buyer.email)
    offer.expires_at = past

    vendor = make_user("vendor@example.com")
    EventService(db).grant_staff(event.id, organizer.id, vendor.id, "vendor")
    handshake = HandshakeService(db, stream=stream).initiate(vendor.id, buyer.id, event.id, 800)
    handshake.expires_at = past

    tickets = TicketService(db)
    ticket = tickets.issue_ticket(event_id=event.id, owner=buyer)
    db.commit()
    ticket = tickets.create_transfer_token(ticket.id, buyer.id)
    ticket.transfer_token_expires_at = past
    db.commit()
    return offer, handshake, ticket


class TestSweeps:
    def test_run_sweeps(self, db, stream, overdue):
        offer, handshake, ticket = overdue
        result = MaintenanceService(db, stream).run_sweeps()
        assert result == {
            "payments_expired": 0, "offers_expired": 1, "handshakes_expired": 1, "transfer_tokens_cleared": 1,
            "subscriptions_lapsed": 0,
        }

        for row in overdue:
            db.refresh(row)
        assert offer.status == OfferStatus.EXPIRED.value
        assert handshake.status == "expired"
        assert ticket.transfer_token is None

        assert MaintenanceService(db, stream).run_sweeps() == {
            "payments_expired": 0, "offers_expired": 0, "handshakes_expired": 0, "transfer_tokens_cleared": 0,
            "subscriptions_lapsed": 0,
        }

    def test_scheduler_run_once(self, db, session_factory, stream, overdue):
        scheduler = SweepScheduler(session_factory, interval_seconds=60, stream=stream)
        assert not scheduler.running
        assert scheduler.run_once()["handshakes_expired"] == 1


class TestAudit:
    def test_clean_state_passes(self, db, buyer, event, make_tier):
        tier = make_tier(max_quantity=5)
        tickets = TicketService(db)
        ticket = tickets.issue_ticket(event_id=event.id, ticket_type_id=tier.id, owner=buyer)
        db.commit()
        ListingService(db).create_listing(ticket.id, buyer.id, 2500)

        report = MaintenanceService(db).audit()
        assert report["ok"]
        assert report["capacity_drift"] == []
        assert report["listing_drift"] == []

    def test_capacity_drift_reported(self, db, buyer, event, make_tier):
        tier = make_tier(max_quantity=5)
        TicketService(db).issue_ticket(event_id=event.id, ticket_type_id=tier.id, owner=buyer)
        tier.sold_count = 3
        db.commit()

        report = MaintenanceService(db).audit()
        assert not report["ok"]
        assert report["capacity_drift"] == [{"ticket_type_id": tier.id, "sold_count": 3, "expected": 1}]
        db.refresh(tier)
        assert tier.sold_count == 3

    def test_listing_flag_without_listing_reported(self, db, buyer, event):
        ticket = TicketService(db).issue_ticket(event_id=event.id, owner=buyer)
        ticket.listing_status = "listed"
        db.commit()

        report = MaintenanceService(db).audit()
        assert not report["ok"]
        assert report["listing_drift"] == [
            {"ticket_id": ticket.id, "active_listings": 0, "listing_status_listed": True},
        ]
        assert db.get(Ticket, ticket.id).listing_status == "listed"
