"""
Log setup for the ticket exchange.

Every record is stamped with the id of the HTTP request that produced it
(``-`` for background work such as the sweep scheduler). Records may also
carry marketplace identifiers passed through ``extra=``; the JSON format
copies those onto the line so a payment can be followed across services.
"""

import json
import logging
import logging.config
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

# Identifiers copied from ``extra=`` onto JSON lines
CONTEXT_FIELDS = ("user_id", "event_id", "payment_id", "listing_id", "offer_id", "pending_payment_id")

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s [%(request_id)s] %(name)s: %(message)s"


def bind_request_id(request_id: Optional[str] = None):
    """Stamp later records in this context with ``request_id``; returns the reset token"""
    return _request_id.set(request_id or uuid.uuid4().hex)


def reset_request_id(token) -> None:
    _request_id.reset(token)


def current_request_id() -> str:
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        return True


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", _request_id.get()),
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                line[name] = value
        if record.exc_info:
            line["error"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def build_config(level: str = "INFO", fmt: str = "human", log_file: Optional[str] = None) -> dict:
    """``logging.config.dictConfig`` schema for the service.

    The console uses ``fmt`` (``human`` or ``json``); the optional file always
    gets JSON lines.
    """
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "formatter": "json" if fmt == "json" else "human",
            "filters": ["request_id"],
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "filename": log_file,
            "encoding": "utf-8",
            "formatter": "json",
            "filters": ["request_id"],
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"request_id": {"()": RequestIdFilter}},
        "formatters": {
            "human": {"format": CONSOLE_FORMAT, "datefmt": "%H:%M:%S"},
            "json": {"()": JsonLineFormatter},
        },
        "handlers": handlers,
        "root": {"level": level.upper(), "handlers": list(handlers)},
        "loggers": {
            # Statement echo is switched on through DB_ECHO instead
            "sqlalchemy.engine": {"level": "WARNING"},
            "uvicorn.access": {"level": "WARNING"},
        },
    }


def setup_logging(level: str = "INFO", fmt: str = "human", log_file: Optional[str] = None) -> None:
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_config(level, fmt, log_file))
