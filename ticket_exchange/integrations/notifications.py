import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.orm import sessionmaker

from ticket_exchange.database import SessionLocal
from ticket_exchange.models import Notification

logger = logging.getLogger(__name__)

TICKET_PURCHASED = "ticketPurchased"
FAVOR_TICKET_OFFER = "favor_ticket_offer"
STAFF_ADDED = "staff_added"


class NotificationSink(ABC):
    """Fire-and-forget delivery; implementations must never raise"""

    @abstractmethod
    def notify(self, user_id: str, type: str, title: str, body: str, data: Optional[dict] = None) -> None:
        ...


class DatabaseNotificationSink(NotificationSink):
    """Writes in-app notification rows in a session of its own.

    Called only after the triggering transaction has committed, so a failed
    write here can never roll back business state.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def notify(self, user_id, type, title, body, data=None):
        db = self.session_factory()
        try:
            db.add(Notification(user_id=user_id, type=type, title=title, body=body, data=data or {}))
            db.commit()
        except Exception:
            db.rollback()
            logger.warning("Notification %s for user %s dropped", type, user_id, exc_info=True)
        finally:
            db.close()


_notifier: NotificationSink = DatabaseNotificationSink()


def get_notifier() -> NotificationSink:
    """FastAPI dependency returning the configured notification sink"""
    return _notifier
