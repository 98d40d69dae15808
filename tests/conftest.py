"""
Shared pytest fixtures for the ticket exchange test suite.

Every test gets its own SQLite file so concurrent tests see real locking
between sessions, plus a fresh simulated processor, notification sink and
handshake stream.
"""

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ticket_exchange.auth.service import IdentityService
from ticket_exchange.config import settings
from ticket_exchange.database import get_db, get_session_factory, init_db
from ticket_exchange.events.event_service import EventService
from ticket_exchange.handshake.stream import PaymentStreamManager
from ticket_exchange.integrations.notifications import DatabaseNotificationSink, get_notifier
from ticket_exchange.integrations.processor import SimulatedPaymentProcessor, get_processor
from ticket_exchange.models import User, new_id


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine with the full schema."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'exchange.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def processor():
    return SimulatedPaymentProcessor()


@pytest.fixture
def notifier(session_factory):
    return DatabaseNotificationSink(session_factory)


@pytest.fixture
def stream():
    return PaymentStreamManager()


@pytest.fixture
def make_user(db, notifier):
    """Provision a user; ``admin=True`` makes them a platform admin."""
    def _make(email, display_name=None, referral_code=None, admin=False):
        user = IdentityService(db, notifier).provision_identity(new_id(), email, display_name, referral_code)
        if admin:
            user.is_platform_admin = True
            db.commit()
            db.refresh(user)
        return user
    return _make


@pytest.fixture
def organizer(make_user):
    return make_user("organizer@example.com", "Olive Organizer")


@pytest.fixture
def buyer(make_user):
    return make_user("buyer@example.com", "Bea Buyer")


@pytest.fixture
def event(db, organizer):
    return EventService(db).create_event(organizer.id, "Summer Festival", venue="Riverside Park")


@pytest.fixture
def make_tier(db, organizer, event):
    def _make(price_cents=1000, max_quantity=None, name="General Admission"):
        return EventService(db).create_ticket_type(event.id, organizer.id, name, price_cents, max_quantity)
    return _make


@pytest.fixture
def token_for():
    """Bearer token as the identity provider would sign it."""
    def _token(user: User):
        return jwt.encode({"sub": user.id, "email": user.email}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return _token


@pytest.fixture
def client(session_factory, processor, notifier):
    from ticket_exchange.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()
