"""
Realtime change stream for proximity payment handshakes.

Customers subscribe by their user id and receive every insert and update
of handshake rows addressed to them. Publication is called from request
threads after the writing transaction commits; each event carries the
row's ``version`` and events for one row are released strictly in version
order, so a slow publisher for version N holds back version N+1 instead of
letting it overtake.
"""

import asyncio
import json
import logging
import threading
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from ticket_exchange.database import SessionLocal, as_utc, utcnow
from ticket_exchange.models import HandshakeStatus, PendingPayment

logger = logging.getLogger(__name__)

OPEN_STATUSES = (HandshakeStatus.PENDING.value, HandshakeStatus.PROCESSING.value)
TERMINAL_STATUSES = (
    HandshakeStatus.COMPLETED.value,
    HandshakeStatus.FAILED.value,
    HandshakeStatus.EXPIRED.value,
    HandshakeStatus.CANCELLED.value,
)
# Finished rows remembered so a late duplicate is still dropped
FINISHED_ROW_MEMORY = 1024


def pending_payment_event(row: PendingPayment, kind: str = "update") -> dict:
    return {
        "type": kind,
        "id": row.id,
        "version": row.version,
        "vendor_id": row.vendor_id,
        "customer_id": row.customer_id,
        "event_id": row.event_id,
        "ticket_type_id": row.ticket_type_id,
        "ticket_type_name": row.ticket_type_name,
        "amount_cents": row.amount_cents,
        "currency": row.currency,
        "status": row.status,
        "payment_id": row.payment_id,
        "ticket_id": row.ticket_id,
        "failure_reason": row.failure_reason,
        "expires_at": as_utc(row.expires_at).isoformat() if row.expires_at else None,
        "completed_at": as_utc(row.completed_at).isoformat() if row.completed_at else None,
    }


@dataclass
class Subscription:
    customer_id: str
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    # Last version queued per row, kept only until the connect snapshot is sent
    queued: Optional[Dict[str, int]] = field(default_factory=dict)

    def deliver(self, event: dict):
        if self.queued is not None:
            if event["version"] <= self.queued.get(event["id"], 0):
                return
            self.queued[event["id"]] = event["version"]
        self.loop.call_soon_threadsafe(self.queue.put_nowait, event)


class PaymentStreamManager:
    """Manager for per-customer handshake subscriptions"""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)
        self._delivered: Dict[str, int] = {}
        self._held: Dict[str, Dict[int, dict]] = defaultdict(dict)
        self._finished: "OrderedDict[str, int]" = OrderedDict()

    def subscribe(self, customer_id: str, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        subscription = Subscription(customer_id, asyncio.Queue(), loop or asyncio.get_running_loop())
        with self._lock:
            self._subscriptions[customer_id].append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            subscribers = self._subscriptions.get(subscription.customer_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscriptions.pop(subscription.customer_id, None)

    def subscriber_count(self, customer_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(customer_id, []))

    def publish(self, event: dict):
        row_id, version = event["id"], event["version"]
        with self._lock:
            if version <= self._finished.get(row_id, 0):
                return
            last = self._delivered.get(row_id)
            if last is not None and version <= last:
                return
            if last is not None and version > last + 1:
                self._held[row_id][version] = event
                return

            ready = [event]
            next_version = version + 1
            held = self._held.get(row_id, {})
            while next_version in held:
                ready.append(held.pop(next_version))
                next_version += 1
            if not held:
                self._held.pop(row_id, None)
            self._delivered[row_id] = next_version - 1
            if ready[-1]["status"] in TERMINAL_STATUSES:
                self._forget(row_id, next_version - 1)

            for subscription in list(self._subscriptions.get(event["customer_id"], [])):
                for item in ready:
                    subscription.deliver(item)

    def _forget(self, row_id: str, version: int):
        self._delivered.pop(row_id, None)
        self._held.pop(row_id, None)
        self._finished[row_id] = version
        if len(self._finished) > FINISHED_ROW_MEMORY:
            self._finished.popitem(last=False)

    def tracked_rows(self) -> int:
        with self._lock:
            return len(self._delivered) + len(self._held)

    def replay(self, subscription: Subscription, session_factory=SessionLocal):
        """Send the customer's open handshakes to a fresh subscriber.

        A snapshot older than an update already queued to the subscriber is
        dropped. Once the snapshot is sent the subscriber relies on
        ``publish`` ordering alone.
        """
        db = session_factory()
        try:
            rows = (
                db.query(PendingPayment)
                .filter(
                    PendingPayment.customer_id == subscription.customer_id,
                    PendingPayment.status.in_(OPEN_STATUSES),
                    PendingPayment.expires_at > utcnow(),
                )
                .order_by(PendingPayment.created_at)
                .all()
            )
            with self._lock:
                for row in rows:
                    subscription.deliver(pending_payment_event(row, "snapshot"))
                subscription.queued = None
        finally:
            db.close()


# Global stream manager instance
payment_stream = PaymentStreamManager()


async def handshake_stream_endpoint(websocket: WebSocket, customer_id: str,
                                    stream: PaymentStreamManager = payment_stream,
                                    session_factory=SessionLocal):
    """Push handshake events for ``customer_id`` until the client disconnects"""
    await websocket.accept()
    subscription = stream.subscribe(customer_id)
    await asyncio.to_thread(stream.replay, subscription, session_factory)

    async def _forward():
        while True:
            event = await subscription.queue.get()
            await websocket.send_text(json.dumps(event))

    async def _listen():
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue
            if message.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong", "timestamp": utcnow().isoformat()}))

    forward = asyncio.create_task(_forward())
    listen = asyncio.create_task(_listen())
    try:
        done, pending = await asyncio.wait({forward, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            task.result()
    except WebSocketDisconnect:
        logger.debug("Handshake stream for %s disconnected", customer_id)
    finally:
        stream.unsubscribe(subscription)
