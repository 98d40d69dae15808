from collections import Counter
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from ticket_exchange.database import as_utc
from ticket_exchange.events.event_service import MANAGERS, EventService
from ticket_exchange.inventory.capacity_service import CapacityService
from ticket_exchange.models import CashStatus, CashTransaction, Ticket, TicketStatus, User

SOLD_STATUSES = (TicketStatus.VALID.value, TicketStatus.USED.value)


class AnalyticsService:
    """Read-only aggregates for organizers and their managers"""

    def __init__(self, db: Session):
        self.db = db
        self.events = EventService(db)

    def ticket_type_availability(self, event_id: str) -> List[dict]:
        self.events.get_event(event_id)
        return CapacityService(self.db).availability_for_event(event_id)

    def event_cash_summary(self, event_id: str, actor_id: str) -> Dict[str, Any]:
        self.events.require_role(event_id, actor_id, MANAGERS)
        transactions = self.db.query(CashTransaction).filter(CashTransaction.event_id == event_id).all()
        return self._summarise(transactions)

    def seller_cash_breakdown(self, event_id: str, actor_id: str) -> List[Dict[str, Any]]:
        self.events.require_role(event_id, actor_id, MANAGERS)
        rows = (
            self.db.query(CashTransaction, User.email)
            .join(User, User.id == CashTransaction.seller_id)
            .filter(CashTransaction.event_id == event_id)
            .all()
        )
        by_seller: Dict[str, dict] = {}
        for txn, email in rows:
            entry = by_seller.setdefault(txn.seller_id, {"seller_id": txn.seller_id, "seller_email": email,
                                                         "transactions": []})
            entry["transactions"].append(txn)

        breakdown = []
        for entry in by_seller.values():
            summary = self._summarise(entry.pop("transactions"))
            breakdown.append({**entry, **summary})
        return sorted(breakdown, key=lambda item: item["total_cash_cents"], reverse=True)

    @staticmethod
    def _summarise(transactions: List[CashTransaction]) -> Dict[str, Any]:
        statuses = Counter(txn.status for txn in transactions)
        return {
            "total_cash_cents": sum(txn.amount_cents for txn in transactions),
            "total_fees_cents": sum(txn.platform_fee_cents for txn in transactions),
            "fees_collected_cents": sum(txn.platform_fee_cents for txn in transactions if txn.fee_charged),
            "transaction_count": len(transactions),
            "collected_count": statuses[CashStatus.COLLECTED.value],
            "disputed_count": statuses[CashStatus.DISPUTED.value],
            "pending_count": statuses[CashStatus.PENDING.value],
        }

    def event_analytics(self, event_id: str, actor_id: str) -> Dict[str, Any]:
        """Sales, revenue and door activity for one event"""
        self.events.require_role(event_id, actor_id, MANAGERS)

        total_sold, revenue = (
            self.db.query(func.count(Ticket.id), func.coalesce(func.sum(Ticket.price_paid_cents), 0))
            .filter(Ticket.event_id == event_id, Ticket.status.in_(SOLD_STATUSES))
            .one()
        )
        checked_in = (
            self.db.query(Ticket.checked_in_at, Ticket.checked_in_by)
            .filter(Ticket.event_id == event_id, Ticket.checked_in_at.isnot(None))
            .all()
        )

        hours = Counter(as_utc(at).replace(minute=0, second=0, microsecond=0) for at, _ in checked_in)
        ushers = Counter(by for _, by in checked_in if by)
        return {
            "event_id": event_id,
            "total_sold": total_sold,
            "checked_in": len(checked_in),
            "revenue_cents": int(revenue),
            "hourly_checkins": [{"hour": hour.isoformat(), "count": count} for hour, count in sorted(hours.items())],
            "usher_stats": [{"user_id": user_id, "count": count} for user_id, count in ushers.most_common()],
        }
