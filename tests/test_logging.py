"""
Tests for log setup (logging_config.py).

Covers:
  - Request id stamping and the X-Request-ID response header
  - JSON lines carrying marketplace identifiers
  - dictConfig schema for console and file output
"""

import json
import logging
import sys

from ticket_exchange.logging_config import (
    JsonLineFormatter, RequestIdFilter, bind_request_id, build_config, current_request_id, reset_request_id,
)


def _record(**extra):
    record = logging.LogRecord("ticket_exchange.payments", logging.INFO, __file__, 1, "Payment %s settled",
                               ("pay-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRequestId:
    def test_background_records_use_placeholder(self):
        record = _record()
        RequestIdFilter().filter(record)
        assert record.request_id == "-"

    def test_bound_id_is_stamped_and_reset(self):
        token = bind_request_id("req-42")
        try:
            record = _record()
            RequestIdFilter().filter(record)
            assert record.request_id == "req-42"
        finally:
            reset_request_id(token)
        assert current_request_id() == "-"

    def test_generated_when_missing(self):
        token = bind_request_id(None)
        try:
            assert len(current_request_id()) == 32
        finally:
            reset_request_id(token)

    def test_response_header(self, client):
        echoed = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert echoed.headers["X-Request-ID"] == "abc123"
        assert len(client.get("/health").headers["X-Request-ID"]) == 32


class TestJsonLines:
    def test_identifiers_copied(self):
        record = _record(request_id="req-7", payment_id="pay-1", listing_id=None)
        line = json.loads(JsonLineFormatter().format(record))
        assert line["message"] == "Payment pay-1 settled"
        assert line["severity"] == "INFO"
        assert line["request_id"] == "req-7"
        assert line["payment_id"] == "pay-1"
        assert "listing_id" not in line

    def test_exception_included(self):
        try:
            raise RuntimeError("processor down")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        line = json.loads(JsonLineFormatter().format(record))
        assert "processor down" in line["error"]


class TestConfig:
    def test_console_only(self):
        config = build_config("debug", "json")
        assert config["root"] == {"level": "DEBUG", "handlers": ["console"]}
        assert config["handlers"]["console"]["formatter"] == "json"

    def test_file_is_always_json(self, tmp_path):
        config = build_config("INFO", "human", str(tmp_path / "exchange.log"))
        assert config["root"]["handlers"] == ["console", "file"]
        assert config["handlers"]["console"]["formatter"] == "human"
        assert config["handlers"]["file"]["formatter"] == "json"
