from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ticket_exchange.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Request threads share the file; wait on the write lock instead of failing fast
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.DATABASE_URL, echo=settings.DB_ECHO, **_engine_kwargs(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_session_factory() -> sessionmaker:
    """FastAPI dependency for code that opens its own sessions outside the request"""
    return SessionLocal


def get_db() -> Iterator[Session]:
    """FastAPI dependency yielding a request-scoped session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block as one unit, or nothing."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a stored timestamp to aware UTC.

    SQLite hands back naive values for ``DateTime(timezone=True)`` columns;
    everything is written in UTC so a naive value is UTC by construction.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def init_db(bind=None) -> None:
    from ticket_exchange import models  # noqa: F401  (register tables)

    Base.metadata.create_all(bind=bind or engine)
