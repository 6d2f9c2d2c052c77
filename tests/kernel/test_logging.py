"""Tests for the structured logging system (revrec_kernel/logging_config.py)."""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from revrec_kernel.exceptions import ScheduleBoundViolationError
from revrec_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "revrec.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("schedule_created", extra={"amount_cents": 10000, "product_code": "course"})

        record = _parse_log(stream)
        assert record["amount_cents"] == 10000
        assert record["product_code"] == "course"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(tenant_id="acme", payment_intent_id="pi_1")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["tenant_id"] == "acme"
        assert record["payment_intent_id"] == "pi_1"

    def test_engine_exception_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ScheduleBoundViolationError("sched-1", 100, 150)
        except ScheduleBoundViolationError:
            get_logger("test").error("bound_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "SCHEDULE_BOUND_VIOLATION"
        assert record["exc_type"] == "ScheduleBoundViolationError"
        assert record["exc_schedule_id"] == "sched-1"
        assert record["exc_recognized_amount_cents"] == 150
        assert "traceback" in record

    def test_uuid_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_uuid", extra={"run_id_value": uid})

        assert _parse_log(stream)["run_id_value"] == str(uid)

    def test_debug_filtered_at_info_level(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        assert [r["message"] for r in logs] == ["first", "second"]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_and_get(self):
        LogContext.set(tenant_id="acme", trigger="scheduled")
        assert LogContext.get_all() == {"tenant_id": "acme", "trigger": "scheduled"}

    def test_clear(self):
        LogContext.set(run_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_restores_outer_value(self):
        LogContext.set(tenant_id="outer")
        with LogContext.bind(tenant_id="inner"):
            assert LogContext.get_all()["tenant_id"] == "inner"
        assert LogContext.get_all()["tenant_id"] == "outer"

    def test_bind_restores_none(self):
        with LogContext.bind(payment_intent_id="pi_9"):
            assert LogContext.get_all()["payment_intent_id"] == "pi_9"
        assert "payment_intent_id" not in LogContext.get_all()

    def test_bind_ignores_none_values(self):
        with LogContext.bind(tenant_id=None, trigger="manual"):
            assert LogContext.get_all() == {"trigger": "manual"}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        handlers = logging.getLogger("revrec").handlers
        structured = [h for h in handlers if isinstance(h.formatter, StructuredFormatter)]
        assert structured == [h1]
        assert h2 not in handlers

    def test_get_logger_returns_child(self):
        assert get_logger("services.notifier").name == "revrec.services.notifier"
