"""
Tests for the per-tier capacity ledger (capacity_service.py).

Covers:
  - Reservations up to and past the cap
  - Unlimited tiers and inactive tiers
  - Concurrent reservations from independent sessions
  - Idempotent release on ticket termination
  - Capacity edits that would undercut what is already sold
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from ticket_exchange.database import atomic
from ticket_exchange.events.event_service import EventService
from ticket_exchange.exceptions import CapacityExceeded, InvalidState, NotFound
from ticket_exchange.inventory.capacity_service import CapacityService
from ticket_exchange.models import TicketStatus, User
from ticket_exchange.tickets.ticket_service import TicketService


class TestReserve:
    def test_reserve_until_sold_out(self, db, make_tier):
        tier = make_tier(max_quantity=2)
        capacity = CapacityService(db)
        with atomic(db):
            capacity.reserve_slot(tier.id)
            capacity.reserve_slot(tier.id)
        with pytest.raises(CapacityExceeded):
            with atomic(db):
                capacity.reserve_slot(tier.id)
        assert capacity.compute_availability(tier.id) == {"max": 2, "sold": 2, "remaining": 0}

    def test_multi_slot_reservation_is_all_or_nothing(self, db, make_tier):
        tier = make_tier(max_quantity=3)
        capacity = CapacityService(db)
        with atomic(db):
            capacity.reserve_slot(tier.id, quantity=2)
        with pytest.raises(CapacityExceeded):
            with atomic(db):
                capacity.reserve_slot(tier.id, quantity=2)
        assert capacity.compute_availability(tier.id)["sold"] == 2

    def test_unlimited_tier(self, db, make_tier):
        tier = make_tier(max_quantity=None)
        capacity = CapacityService(db)
        with atomic(db):
            for _ in range(25):
                capacity.reserve_slot(tier.id)
        assert capacity.compute_availability(tier.id) == {"max": None, "sold": 25, "remaining": None}

    def test_inactive_tier_rejected(self, db, organizer, make_tier):
        tier = make_tier(max_quantity=10)
        EventService(db).disable_ticket_type(tier.id, organizer.id)
        with pytest.raises(InvalidState):
            with atomic(db):
                CapacityService(db).reserve_slot(tier.id)

    def test_unknown_tier(self, db):
        with pytest.raises(NotFound):
            with atomic(db):
                CapacityService(db).reserve_slot("missing")

    def test_quantity_must_be_positive(self, db, make_tier):
        tier = make_tier()
        with pytest.raises(ValueError):
            CapacityService(db).reserve_slot(tier.id, quantity=0)


class TestConcurrency:
    def test_concurrent_reservations_never_oversell(self, session_factory, make_tier):
        tier_id = make_tier(max_quantity=5).id

        def attempt(_):
            session = session_factory()
            try:
                with atomic(session):
                    CapacityService(session).reserve_slot(tier_id)
                return True
            except CapacityExceeded:
                return False
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(20)))

        assert sum(results) == 5
        check = session_factory()
        try:
            assert CapacityService(check).compute_availability(tier_id)["sold"] == 5
        finally:
            check.close()

    def test_concurrent_ticket_issue_matches_counter(self, session_factory, event, buyer, make_tier):
        tier_id, event_id, buyer_id = make_tier(max_quantity=3).id, event.id, buyer.id

        def attempt(_):
            session = session_factory()
            try:
                with atomic(session):
                    TicketService(session).issue_ticket(event_id, tier_id, owner=session.get(User, buyer_id))
                return True
            except CapacityExceeded:
                return False
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(attempt, range(10)))

        assert sum(results) == 3
        check = session_factory()
        try:
            assert len(TicketService(check).list_for_owner(buyer_id)) == 3
        finally:
            check.close()


class TestRelease:
    def test_termination_releases_once(self, db, event, organizer, buyer, make_tier):
        tier = make_tier(max_quantity=1)
        tickets = TicketService(db)
        with atomic(db):
            ticket = tickets.issue_ticket(event.id, tier.id, owner=buyer)

        tickets.cancel_ticket(ticket.id, organizer.id)
        assert ticket.status == TicketStatus.CANCELLED.value
        assert CapacityService(db).compute_availability(tier.id)["sold"] == 0

        with atomic(db):
            assert tickets.terminate(ticket, TicketStatus.REFUNDED.value) is False
            assert CapacityService(db).release_slot(tier.id, ticket.id) is False
        assert CapacityService(db).compute_availability(tier.id)["sold"] == 0

    def test_released_slot_can_be_resold(self, db, event, organizer, buyer, make_tier):
        tier = make_tier(max_quantity=1)
        tickets = TicketService(db)
        with atomic(db):
            first = tickets.issue_ticket(event.id, tier.id, owner=buyer)
        tickets.cancel_ticket(first.id, organizer.id)
        with atomic(db):
            tickets.issue_ticket(event.id, tier.id, owner=buyer)
        assert CapacityService(db).compute_availability(tier.id)["remaining"] == 0


class TestCapacityEdits:
    def test_cannot_shrink_below_sold(self, db, organizer, event, buyer, make_tier):
        tier = make_tier(max_quantity=5)
        with atomic(db):
            CapacityService(db).reserve_slot(tier.id, quantity=3)
        events = EventService(db)
        with pytest.raises(InvalidState):
            events.update_ticket_type(tier.id, organizer.id, max_quantity=2)
        updated = events.update_ticket_type(tier.id, organizer.id, max_quantity=3)
        assert updated.max_quantity == 3

    def test_sold_count_is_not_editable(self, db, organizer, make_tier):
        tier = make_tier()
        with pytest.raises(ValueError):
            EventService(db).update_ticket_type(tier.id, organizer.id, sold_count=0)
