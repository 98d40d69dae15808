import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from ticket_exchange.config import settings
from ticket_exchange.database import SessionLocal, utcnow
from ticket_exchange.handshake.handshake_service import HandshakeService
from ticket_exchange.handshake.stream import PaymentStreamManager, payment_stream
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import ListingStatus, ResaleListing, ResaleStatus, Ticket, TicketType
from ticket_exchange.offers.offer_service import OfferService
from ticket_exchange.payments.ledger_service import PaymentLedger
from ticket_exchange.subscriptions.subscription_service import SubscriptionService
from ticket_exchange.tickets.ticket_service import TicketService

logger = logging.getLogger(__name__)


class MaintenanceService:
    """Time-based sweeps and the denormalised-state auditor"""

    def __init__(self, db: Session, stream: PaymentStreamManager = payment_stream,
                 processor: Optional[PaymentProcessor] = None):
        self.db = db
        self.stream = stream
        self.processor = processor

    def run_sweeps(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Apply every wall-clock deadline that has passed. Idempotent and safe to retry."""
        now = now or utcnow()
        # Abandoned payments go first so the offers they held can expire in the same pass
        result = {
            "payments_expired": PaymentLedger(self.db).expire_abandoned(self.processor, now),
            "offers_expired": OfferService(self.db, processor=self.processor).sweep_expired(now),
            "handshakes_expired": HandshakeService(self.db, stream=self.stream).sweep_expired(now),
            "transfer_tokens_cleared": TicketService(self.db).expire_transfer_tokens(now),
            "subscriptions_lapsed": SubscriptionService(self.db).sweep_lapsed(now),
        }
        logger.debug("Sweep finished: %s", result)
        return result

    def audit(self) -> Dict[str, Any]:
        """Recompute cached counters from the rows they summarise and report drift.

        Nothing is repaired here; the caches are only ever written by their
        owning transitions.
        """
        held = dict(
            self.db.query(Ticket.ticket_type_id, func.count(Ticket.id))
            .filter(Ticket.ticket_type_id.isnot(None), Ticket.capacity_released_at.is_(None))
            .group_by(Ticket.ticket_type_id)
            .all()
        )
        capacity_drift = []
        for ticket_type in self.db.query(TicketType).all():
            expected = held.get(ticket_type.id, 0)
            if ticket_type.sold_count != expected:
                capacity_drift.append({"ticket_type_id": ticket_type.id, "sold_count": ticket_type.sold_count,
                                       "expected": expected})

        active = dict(
            self.db.query(ResaleListing.ticket_id, func.count(ResaleListing.id))
            .filter(ResaleListing.status == ResaleStatus.ACTIVE.value)
            .group_by(ResaleListing.ticket_id)
            .all()
        )
        listed = {
            ticket_id: price
            for ticket_id, price in self.db.query(Ticket.id, Ticket.listing_price_cents)
            .filter(Ticket.listing_status == ListingStatus.LISTED.value)
            .all()
        }
        listing_drift = []
        for ticket_id in set(active) | set(listed):
            count = active.get(ticket_id, 0)
            if count != 1 or ticket_id not in listed:
                listing_drift.append({"ticket_id": ticket_id, "active_listings": count,
                                      "listing_status_listed": ticket_id in listed})

        for drift in capacity_drift:
            logger.warning("Capacity drift: %s", drift)
        for drift in listing_drift:
            logger.warning("Listing drift: %s", drift)
        return {
            "ok": not capacity_drift and not listing_drift,
            "capacity_drift": capacity_drift,
            "listing_drift": listing_drift,
            "checked_at": utcnow().isoformat(),
        }


class SweepScheduler:
    """Runs ``MaintenanceService.run_sweeps`` in a background daemon thread"""

    def __init__(self, session_factory: sessionmaker = SessionLocal,
                 interval_seconds: int = settings.SWEEP_INTERVAL_SECONDS,
                 stream: PaymentStreamManager = payment_stream,
                 processor: Optional[PaymentProcessor] = None):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.stream = stream
        self.processor = processor or get_processor()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sweep-scheduler")
        self._thread.daemon = True
        self._thread.start()
        logger.info("Sweep scheduler started (every %ss)", self.interval_seconds)

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Sweep scheduler stopped")

    def run_once(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            return MaintenanceService(db, self.stream, self.processor).run_sweeps()
        finally:
            db.close()

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                # Sweeps are retried on the next tick
                logger.exception("Sweep run failed")
            self._stop.wait(self.interval_seconds)
