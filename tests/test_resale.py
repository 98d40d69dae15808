"""
Tests for the resale listing ledger (listing_service.py) and resale checkout.

Covers:
  - Listing rules: owner only, valid tickets, no private tickets
  - One active listing per ticket, including under concurrent callers
  - Cancel and relist
  - Purchase settlement: ownership, mirror fields, seller payout
  - Listings closed by check-in and cancellation
  - One open purchase per listing, and abandoned purchases released by the sweep
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from ticket_exchange.admin.maintenance_service import MaintenanceService
from ticket_exchange.database import atomic, utcnow
from ticket_exchange.events.event_service import EventService
from ticket_exchange.exceptions import DuplicateListing, InvalidState, Unauthorized
from ticket_exchange.models import Payment, PaymentStatus, ResaleStatus, User
from ticket_exchange.payments.checkout_service import CheckoutService
from ticket_exchange.resale.listing_service import ListingService
from ticket_exchange.tickets.ticket_service import TicketService
from ticket_exchange.wallet.balance_service import BalanceService


@pytest.fixture
def listings(db):
    return ListingService(db)


@pytest.fixture
def owned_ticket(db, event, buyer, make_tier):
    tier = make_tier(max_quantity=10)
    with atomic(db):
        ticket = TicketService(db).issue_ticket(event.id, tier.id, owner=buyer, price_paid_cents=1500)
    return ticket


@pytest.fixture
def second_buyer(make_user):
    return make_user("second@example.com", "Sam Second")


class TestCreateListing:
    def test_listing_mirrors_onto_ticket(self, db, listings, owned_ticket, buyer):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        assert listing.status == ResaleStatus.ACTIVE.value
        db.refresh(owned_ticket)
        assert owned_ticket.listing_status == "listed"
        assert owned_ticket.listing_price_cents == 2000

    def test_price_must_be_positive(self, listings, owned_ticket, buyer):
        with pytest.raises(ValueError):
            listings.create_listing(owned_ticket.id, buyer.id, 0)

    def test_only_owner_can_list(self, listings, owned_ticket, second_buyer):
        with pytest.raises(InvalidState):
            listings.create_listing(owned_ticket.id, second_buyer.id, 2000)

    def test_private_ticket_cannot_be_listed(self, db, listings, event, buyer):
        with atomic(db):
            private = TicketService(db).issue_ticket(event.id, owner=buyer, ticket_mode="private")
        with pytest.raises(InvalidState):
            listings.create_listing(private.id, buyer.id, 2000)

    def test_used_ticket_cannot_be_listed(self, db, listings, owned_ticket, buyer, organizer):
        TicketService(db).check_in(owned_ticket.id, organizer.id)
        with pytest.raises(InvalidState):
            listings.create_listing(owned_ticket.id, buyer.id, 2000)

    def test_second_listing_rejected(self, listings, owned_ticket, buyer):
        listings.create_listing(owned_ticket.id, buyer.id, 2000)
        with pytest.raises(DuplicateListing):
            listings.create_listing(owned_ticket.id, buyer.id, 2500)

    def test_concurrent_listings_only_one_wins(self, session_factory, owned_ticket, buyer):
        ticket_id, seller_id = owned_ticket.id, buyer.id

        def attempt(price):
            session = session_factory()
            try:
                ListingService(session).create_listing(ticket_id, seller_id, price)
                return True
            except DuplicateListing:
                return False
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(attempt, [2000, 2100, 2200, 2300]))

        assert sum(results) == 1
        check = session_factory()
        try:
            active = ListingService(check).active_listing_for(ticket_id)
            assert active is not None
            assert MaintenanceService(check).audit()["ok"] is True
        finally:
            check.close()


class TestCancelListing:
    def test_cancel_and_relist(self, db, listings, owned_ticket, buyer):
        first = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        cancelled = listings.cancel_listing(first.id, buyer.id)
        assert cancelled.status == ResaleStatus.CANCELLED.value
        db.refresh(owned_ticket)
        assert owned_ticket.listing_status == "none"
        assert owned_ticket.listing_price_cents is None

        second = listings.create_listing(owned_ticket.id, buyer.id, 1800)
        assert second.id != first.id
        assert listings.active_listing_for(owned_ticket.id).id == second.id

    def test_only_seller_cancels(self, listings, owned_ticket, buyer, second_buyer):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        with pytest.raises(Unauthorized):
            listings.cancel_listing(listing.id, second_buyer.id)

    def test_cancel_twice(self, listings, owned_ticket, buyer):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        listings.cancel_listing(listing.id, buyer.id)
        with pytest.raises(InvalidState):
            listings.cancel_listing(listing.id, buyer.id)

    def test_check_in_closes_listing(self, db, listings, owned_ticket, buyer, organizer):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        TicketService(db).check_in(owned_ticket.id, organizer.id)
        db.refresh(listing)
        assert listing.status == ResaleStatus.CANCELLED.value

    def test_ticket_cancellation_closes_listing(self, db, listings, owned_ticket, buyer, organizer):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        TicketService(db).cancel_ticket(owned_ticket.id, organizer.id)
        db.refresh(listing)
        assert listing.status == ResaleStatus.CANCELLED.value
        assert listings.active_listing_for(owned_ticket.id) is None


class TestResalePurchase:
    def test_purchase_settles_listing(self, db, processor, notifier, listings, owned_ticket, buyer, second_buyer):
        BalanceService(db, processor).create_account(buyer.id)
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)

        checkout = CheckoutService(db, processor, notifier)
        started = checkout.purchase_listing(listing.id, second_buyer)
        payment = started["payment"]
        assert payment.amount_cents == 2000
        assert payment.platform_fee_cents == 100
        assert payment.status == PaymentStatus.PROCESSING.value
        assert started["client_secret"]

        completed = checkout.complete_checkout(payment.id, second_buyer.id)
        assert completed.status == PaymentStatus.COMPLETED.value

        db.refresh(listing)
        db.refresh(owned_ticket)
        assert listing.status == ResaleStatus.SOLD.value
        assert listing.buyer_id == second_buyer.id
        assert owned_ticket.owner_user_id == second_buyer.id
        assert owned_ticket.listing_status == "sold"
        assert owned_ticket.price_paid_cents == 2000

        balance = BalanceService(db, processor).sync(buyer.id)
        assert balance.pending_balance_cents == 1900

    def test_buyer_can_relist_after_purchase(self, db, processor, listings, owned_ticket, buyer, second_buyer):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        checkout = CheckoutService(db, processor)
        payment = checkout.purchase_listing(listing.id, second_buyer)["payment"]
        checkout.complete_checkout(payment.id, second_buyer.id)

        relisted = listings.create_listing(owned_ticket.id, second_buyer.id, 2600)
        assert relisted.seller_id == second_buyer.id
        with pytest.raises(InvalidState):
            listings.create_listing(owned_ticket.id, buyer.id, 2600)

    def test_cannot_buy_own_listing(self, db, processor, listings, owned_ticket, buyer):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        with pytest.raises(InvalidState):
            CheckoutService(db, processor).purchase_listing(listing.id, buyer)

    def test_one_purchase_in_flight(self, db, processor, listings, owned_ticket, buyer, second_buyer, make_user):
        third = make_user("third@example.com")
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        checkout = CheckoutService(db, processor)
        checkout.purchase_listing(listing.id, second_buyer)
        with pytest.raises(InvalidState):
            checkout.purchase_listing(listing.id, third)

    def test_concurrent_purchases_only_one_opens(self, db, session_factory, processor, listings, owned_ticket,
                                                  buyer, make_user):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        listing_id = listing.id
        buyer_ids = [make_user(f"rush{i}@example.com").id for i in range(4)]

        def attempt(user_id):
            session = session_factory()
            try:
                CheckoutService(session, processor).purchase_listing(listing_id, session.get(User, user_id))
                return True
            except InvalidState:
                return False
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(attempt, buyer_ids))

        assert sum(results) == 1
        assert db.query(Payment).filter(Payment.listing_id == listing_id).count() == 1

    def test_abandoned_purchase_released_by_sweep(self, db, processor, listings, owned_ticket, buyer,
                                                  second_buyer, make_user):
        third = make_user("third@example.com")
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        checkout = CheckoutService(db, processor)
        abandoned = checkout.purchase_listing(listing.id, second_buyer)["payment"]

        result = MaintenanceService(db, processor=processor).run_sweeps(utcnow() + timedelta(hours=1))
        assert result["payments_expired"] == 1
        db.refresh(abandoned)
        assert abandoned.status == PaymentStatus.FAILED.value

        payment = checkout.purchase_listing(listing.id, third)["payment"]
        checkout.complete_checkout(payment.id, third.id)
        db.refresh(owned_ticket)
        assert owned_ticket.owner_user_id == third.id

    def test_cancelled_listing_not_purchasable(self, db, processor, listings, owned_ticket, buyer, second_buyer):
        listing = listings.create_listing(owned_ticket.id, buyer.id, 2000)
        listings.cancel_listing(listing.id, buyer.id)
        with pytest.raises(InvalidState):
            CheckoutService(db, processor).purchase_listing(listing.id, second_buyer)

    def test_browse_filters_by_event(self, db, listings, owned_ticket, buyer, organizer):
        listings.create_listing(owned_ticket.id, buyer.id, 2000)
        other = EventService(db).create_event(organizer.id, "Winter Gala")
        assert len(listings.browse(owned_ticket.event_id)) == 1
        assert listings.browse(other.id) == []
