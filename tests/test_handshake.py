"""
Tests for proximity payment handshakes (handshake_service.py, stream.py).

Covers:
  - Initiation rules and staff roles
  - Confirmation settling payment, ticket and vendor payout
  - Expiry at confirmation time and by sweep
  - Cancellation, declines and processor outages
  - Versioned, ordered change stream per customer, including connect snapshots
  - Stream bookkeeping released once a row finishes
"""

import asyncio
from datetime import timedelta

import pytest

from ticket_exchange.database import utcnow
from ticket_exchange.events.event_service import EventService
from ticket_exchange.exceptions import Expired, InvalidState, ProcessorFailure, Unauthorized
from ticket_exchange.handshake.handshake_service import HandshakeService
from ticket_exchange.handshake.stream import PaymentStreamManager, pending_payment_event
from ticket_exchange.models import HandshakeStatus, Payment, PaymentStatus, Ticket
from ticket_exchange.wallet.balance_service import BalanceService


@pytest.fixture
def vendor(db, make_user, organizer, event):
    user = make_user("vendor@example.com", "Vic Vendor")
    EventService(db).grant_staff(event.id, organizer.id, user.id, "vendor")
    return user


@pytest.fixture
def handshakes(db, processor, notifier, stream):
    return HandshakeService(db, processor, notifier, stream)


def _backdate(db, row):
    row.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()


class TestInitiate:
    def test_initiate(self, handshakes, vendor, buyer, event):
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        assert row.status == HandshakeStatus.PENDING.value
        assert row.version == 1
        assert handshakes.list_pending_for_customer(buyer.id)[0].id == row.id

    def test_requires_vendor_role(self, handshakes, buyer, event, make_user):
        stranger = make_user("stranger@example.com")
        with pytest.raises(Unauthorized):
            handshakes.initiate(stranger.id, buyer.id, event.id, 1000)

    def test_amount_must_be_positive(self, handshakes, vendor, buyer, event):
        with pytest.raises(ValueError):
            handshakes.initiate(vendor.id, buyer.id, event.id, 0)

    def test_vendor_cannot_charge_self(self, handshakes, vendor, event):
        with pytest.raises(ValueError):
            handshakes.initiate(vendor.id, vendor.id, event.id, 1000)


class TestConfirm:
    def test_confirm_settles_everything(self, db, processor, handshakes, vendor, buyer, event, make_tier):
        BalanceService(db, processor).create_account(vendor.id)
        tier = make_tier(price_cents=1000, max_quantity=5)
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000, ticket_type_id=tier.id)

        done = handshakes.confirm(row.id, buyer.id)
        assert done.status == HandshakeStatus.COMPLETED.value
        assert done.completed_at is not None
        assert done.version == 3

        payment = db.get(Payment, done.payment_id)
        assert payment.type == "vendor_pos"
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.platform_fee_cents == 50

        ticket = db.get(Ticket, done.ticket_id)
        assert ticket.owner_user_id == buyer.id
        assert ticket.sold_by == vendor.id
        assert ticket.ticket_type_id == tier.id

        balance = BalanceService(db, processor).sync(vendor.id)
        assert balance.pending_balance_cents == 950

    def test_only_customer_confirms(self, handshakes, vendor, buyer, event):
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        with pytest.raises(Unauthorized):
            handshakes.confirm(row.id, vendor.id)

    def test_confirm_after_deadline_expires_row(self, db, handshakes, vendor, buyer, event):
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        _backdate(db, row)
        with pytest.raises(Expired):
            handshakes.confirm(row.id, buyer.id)
        db.refresh(row)
        assert row.status == HandshakeStatus.EXPIRED.value
        assert row.payment_id is None

    def test_confirm_twice(self, handshakes, vendor, buyer, event):
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        handshakes.confirm(row.id, buyer.id)
        with pytest.raises(InvalidState):
            handshakes.confirm(row.id, buyer.id)

    def test_declined_card_fails_handshake(self, db, processor, handshakes, vendor, buyer, event):
        processor.declined_payers.add(buyer.id)
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        with pytest.raises(ProcessorFailure):
            handshakes.confirm(row.id, buyer.id)
        db.refresh(row)
        assert row.status == HandshakeStatus.FAILED.value
        assert row.failure_reason
        assert db.get(Payment, row.payment_id).status == PaymentStatus.FAILED.value
        assert row.ticket_id is None

    def test_processor_outage_fails_handshake(self, db, processor, handshakes, vendor, buyer, event):
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        processor.unavailable = True
        with pytest.raises(ProcessorFailure):
            handshakes.confirm(row.id, buyer.id)
        db.refresh(row)
        assert row.status == HandshakeStatus.FAILED.value
        assert db.get(Payment, row.payment_id).status == PaymentStatus.FAILED.value


class TestCancelAndSweep:
    def test_either_party_cancels(self, handshakes, vendor, buyer, event):
        first = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        second = handshakes.initiate(vendor.id, buyer.id, event.id, 500)
        assert handshakes.cancel(first.id, vendor.id).status == HandshakeStatus.CANCELLED.value
        assert handshakes.cancel(second.id, buyer.id).status == HandshakeStatus.CANCELLED.value
        with pytest.raises(InvalidState):
            handshakes.confirm(first.id, buyer.id)

    def test_outsider_cannot_cancel(self, handshakes, vendor, buyer, event, make_user):
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        outsider = make_user("outsider@example.com")
        with pytest.raises(Unauthorized):
            handshakes.cancel(row.id, outsider.id)

    def test_sweep_expires_only_overdue_pending(self, db, handshakes, vendor, buyer, event):
        overdue = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        fresh = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        _backdate(db, overdue)
        assert handshakes.sweep_expired() == 1
        assert handshakes.sweep_expired() == 0
        db.refresh(overdue)
        db.refresh(fresh)
        assert overdue.status == HandshakeStatus.EXPIRED.value
        assert fresh.status == HandshakeStatus.PENDING.value


def _event(version, row_id="row-1", customer_id="cust-1", status="pending"):
    return {"id": row_id, "version": version, "customer_id": customer_id, "status": status}


@pytest.mark.asyncio
class TestStream:
    async def test_events_reach_subscriber_in_order(self, handshakes, stream, vendor, buyer, event):
        subscription = stream.subscribe(buyer.id)
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        handshakes.cancel(row.id, buyer.id)

        inserted = await asyncio.wait_for(subscription.queue.get(), timeout=2)
        updated = await asyncio.wait_for(subscription.queue.get(), timeout=2)
        assert (inserted["type"], inserted["version"], inserted["status"]) == ("insert", 1, "pending")
        assert (updated["version"], updated["status"]) == (2, "cancelled")
        stream.unsubscribe(subscription)
        assert stream.subscriber_count(buyer.id) == 0

    async def test_out_of_order_versions_are_held(self):
        manager = PaymentStreamManager()
        subscription = manager.subscribe("cust-1")
        manager.publish(_event(1))
        manager.publish(_event(3, status="completed"))
        manager.publish(_event(2, status="processing"))
        manager.publish(_event(2, status="processing"))

        received = [await asyncio.wait_for(subscription.queue.get(), timeout=2) for _ in range(3)]
        assert [e["version"] for e in received] == [1, 2, 3]
        await asyncio.sleep(0)
        assert subscription.queue.empty()

    async def test_other_customers_see_nothing(self):
        manager = PaymentStreamManager()
        mine = manager.subscribe("cust-1")
        theirs = manager.subscribe("cust-2")
        manager.publish(_event(1, customer_id="cust-1"))
        assert (await asyncio.wait_for(mine.queue.get(), timeout=2))["id"] == "row-1"
        await asyncio.sleep(0)
        assert theirs.queue.empty()

    async def test_replay_sends_open_requests(self, session_factory, handshakes, stream, vendor, buyer, event):
        open_row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        closed = handshakes.initiate(vendor.id, buyer.id, event.id, 700)
        handshakes.cancel(closed.id, vendor.id)

        subscription = stream.subscribe(buyer.id)
        stream.replay(subscription, session_factory)
        snapshot = await asyncio.wait_for(subscription.queue.get(), timeout=2)
        assert snapshot["type"] == "snapshot"
        assert snapshot["id"] == open_row.id
        await asyncio.sleep(0)
        assert subscription.queue.empty()

    async def test_replay_never_rewinds_a_queued_update(self, session_factory, handshakes, stream, vendor, buyer,
                                                        event):
        row = handshakes.initiate(vendor.id, buyer.id, event.id, 1000)
        subscription = stream.subscribe(buyer.id)
        # The store still holds v1 while v2 is already queued
        stream.publish({**pending_payment_event(row), "version": 2, "status": "processing"})
        stream.replay(subscription, session_factory)

        received = await asyncio.wait_for(subscription.queue.get(), timeout=2)
        assert (received["version"], received["status"]) == (2, "processing")
        await asyncio.sleep(0)
        assert subscription.queue.empty()
        assert subscription.queued is None

    async def test_finished_rows_are_forgotten(self):
        manager = PaymentStreamManager()
        for i in range(50):
            manager.publish(_event(1, row_id=f"row-{i}"))
            manager.publish(_event(2, row_id=f"row-{i}", status="processing"))
            manager.publish(_event(3, row_id=f"row-{i}", status="completed"))
        assert manager.tracked_rows() == 0

        subscription = manager.subscribe("cust-1")
        manager.publish(_event(2, row_id="row-0", status="processing"))
        await asyncio.sleep(0)
        assert subscription.queue.empty()

    async def test_open_rows_stay_tracked(self):
        manager = PaymentStreamManager()
        manager.publish(_event(1, row_id="open"))
        manager.publish(_event(1, row_id="done"))
        manager.publish(_event(2, row_id="done", status="cancelled"))
        assert manager.tracked_rows() == 1
