"""
Pytest fixtures for the revenue engine test suite.

Provides:
- An in-memory SQLite database per test (StaticPool, one shared connection)
- SqlStore / DegradedStore
- Deterministic clock
- Wired revenue components and fake alert channels
- Structured log capture
"""

import json
import logging
from datetime import datetime, timezone
from io import StringIO

import pytest

from revrec_config.settings import (
    JobSettings,
    NotificationSettings,
    ReconciliationThresholds,
    RecognitionSettings,
)
from revrec_kernel.db.engine import create_engine_from_url, create_session_factory, create_tables
from revrec_kernel.domain.clock import DeterministicClock
from revrec_kernel.exceptions import ChannelDeliveryError
from revrec_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from revrec_kernel.store import DegradedStore, SqlStore
from revrec_modules.revenue import (
    CatalogResolver,
    RefundAllocator,
    RevenueQueries,
    ScheduleLifecycleManager,
    UsageRecorder,
)
from revrec_services.channels import NotificationChannel
from revrec_services.notifier import AlertNotifier
from revrec_services.reconciliation_service import ReconciliationService

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture revrec logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, lifecycle):
            lifecycle.on_payment_captured(...)
            logs = captured_logs()
            assert any(r["message"] == "schedule_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("revrec")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    engine = create_engine_from_url("sqlite://")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return SqlStore(session_factory)


@pytest.fixture
def degraded_store():
    return DegradedStore("tests")


# =============================================================================
# Clock and settings
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(T0)


@pytest.fixture
def recognition_settings():
    return RecognitionSettings()


@pytest.fixture
def thresholds():
    return ReconciliationThresholds()


@pytest.fixture
def notification_settings():
    return NotificationSettings(
        email_recipients=("finance@example.com",),
        acknowledgement_url="https://ops.example.com/revenue/alerts",
        cooldown_minutes=60,
    )


@pytest.fixture
def job_settings():
    return JobSettings(recognition_window_days=30, max_consecutive_failures=3, failure_backoff_minutes=10)


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def catalog(store, recognition_settings):
    return CatalogResolver(store, recognition_settings)


@pytest.fixture
def lifecycle(store, catalog, clock, recognition_settings):
    return ScheduleLifecycleManager(store, catalog, clock, recognition_settings)


@pytest.fixture
def refunds(store, clock, recognition_settings):
    return RefundAllocator(store, clock, recognition_settings)


@pytest.fixture
def usage_recorder(store, clock, recognition_settings):
    return UsageRecorder(store, clock, recognition_settings)


@pytest.fixture
def queries(store, clock):
    return RevenueQueries(store, clock)


@pytest.fixture
def reconciliation(store, thresholds, clock):
    return ReconciliationService(store, thresholds, clock)


class RecordingChannel(NotificationChannel):
    """Fake channel that records every message it is asked to send."""

    def __init__(self, name: str = "email", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent = []

    def send(self, message) -> None:
        if self.fail:
            raise ChannelDeliveryError(self.name, "simulated outage")
        self.sent.append(message)


@pytest.fixture
def email_channel():
    return RecordingChannel("email")


@pytest.fixture
def notifier(notification_settings, email_channel, reconciliation, clock):
    return AlertNotifier(notification_settings, [email_channel], reconciliation, clock)


# =============================================================================
# Event builders
# =============================================================================


def _payment_event(
    payment_id: str = "pi_1",
    *,
    amount: int = 10000,
    tenant: str = "acme",
    captured_at=T0,
    items=None,
    currency: str = "GBP",
    **metadata,
) -> dict:
    if isinstance(captured_at, datetime):
        captured_at = captured_at.isoformat()
    return {
        "id": payment_id,
        "public_id": f"pub_{payment_id}",
        "status": "succeeded",
        "currency": currency,
        "captured_at": captured_at,
        "amount_total_cents": amount,
        "metadata": {"tenant_id": tenant, "items": items, **metadata},
    }


def _line_item(
    item_id: str = "course-101",
    *,
    total: int = 10000,
    method: str | None = "deferred",
    duration_days: int | None = 30,
    currency: str | None = None,
    **metadata,
) -> dict:
    meta = dict(metadata)
    if method is not None:
        meta["revenue_recognition_method"] = method
    if duration_days is not None:
        meta["recognition_duration_days"] = duration_days
    item = {
        "id": item_id,
        "name": item_id.replace("-", " ").title(),
        "quantity": 1,
        "total": total,
        "metadata": meta,
    }
    if currency:
        item["currency"] = currency
    return item


@pytest.fixture
def payment_event():
    """Builder for payment capture events."""
    return _payment_event


@pytest.fixture
def line_item():
    """Builder for payment line items."""
    return _line_item


@pytest.fixture
def recording_channel():
    """Factory for fake channels: ``recording_channel("webhook", fail=True)``."""
    return RecordingChannel
