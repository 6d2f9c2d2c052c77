"""
build_engine / RevenueEngine: store selection, component wiring and
resource release.
"""

import pytest

from revrec_batch import RevenueEngine, build_engine
from revrec_config.loader import load_settings_from_dict
from revrec_config.settings import EngineSettings, JobSettings, NotificationSettings
from revrec_kernel.store import DegradedStore, SqlStore
from revrec_modules.revenue.models import CaptureStatus
from revrec_services.channels import NotificationChannel, WebhookChannel


class ClosingChannel(NotificationChannel):
    name = "webhook"

    def __init__(self):
        self.sent = []
        self.closed = False

    def send(self, message) -> None:
        self.sent.append(message)

    def close(self) -> None:
        self.closed = True


def _settings(database_url="sqlite://", **job) -> EngineSettings:
    return EngineSettings(
        database_url=database_url,
        job=JobSettings(run_on_startup=False, **job),
    )


@pytest.fixture
def runtime(clock, email_channel):
    engine = build_engine(_settings(), clock=clock, channels=[email_channel], create_schema=True)
    yield engine
    engine.close()


class TestStoreSelection:
    def test_sqlite_url_gives_sql_store(self, runtime):
        assert isinstance(runtime.store, SqlStore)
        assert runtime.db_engine is not None

    def test_missing_url_degrades(self, clock):
        runtime = build_engine(_settings(database_url=None), clock=clock)
        assert isinstance(runtime.store, DegradedStore)
        assert runtime.db_engine is None
        runtime.close()

    def test_unreachable_database_degrades(self, clock, tmp_path, captured_logs):
        url = f"sqlite:///{tmp_path}/missing/revrec.db"
        runtime = build_engine(_settings(database_url=url), clock=clock)

        assert isinstance(runtime.store, DegradedStore)
        assert runtime.store.reason == "connection failed: OperationalError"
        assert runtime.db_engine is None
        assert any(r["message"] == "database_unreachable" for r in captured_logs())
        runtime.close()

    def test_environment_url_reaches_store(self, clock):
        settings = load_settings_from_dict({}, environ={"REVREC_DATABASE_URL": "sqlite://"})
        runtime = build_engine(settings, clock=clock, create_schema=True)
        assert isinstance(runtime.store, SqlStore)
        runtime.close()


class TestWiring:
    def test_capture_and_cycle_run_end_to_end(self, runtime, payment_event, line_item):
        result = runtime.lifecycle.on_payment_captured(payment_event(items=[line_item()]))
        assert result.status is CaptureStatus.PROCESSED

        summary = runtime.job.run_cycle("manual")
        assert summary["status"] == "completed"
        assert [t["tenant_id"] for t in summary["tenants"]] == ["acme"]
        assert runtime.queries.get_revenue_overview("acme").deferred_revenue_cents == 10000

    def test_degraded_engine_reports_instead_of_raising(self, clock, payment_event, line_item):
        runtime = build_engine(_settings(database_url=None), clock=clock)
        result = runtime.lifecycle.on_payment_captured(payment_event(items=[line_item()]))
        assert result.status is CaptureStatus.CONNECTION_UNAVAILABLE

        summary = runtime.job.run_cycle("manual")
        assert summary["tenants"][0]["run_status"] == "skipped"
        runtime.close()

    def test_channels_built_from_settings(self, clock):
        settings = EngineSettings(
            notifications=NotificationSettings(webhook_url="https://hooks.example.com/revenue"),
        )
        runtime = build_engine(settings, clock=clock)
        assert [type(channel) for channel in runtime.channels] == [WebhookChannel]
        runtime.close()

    def test_thresholds_from_settings(self, clock):
        runtime = build_engine(_settings(), clock=clock, create_schema=True)
        assert runtime.reconciliation.thresholds is runtime.settings.thresholds
        runtime.close()


class TestClose:
    def test_close_releases_everything(self, clock, monkeypatch):
        channel = ClosingChannel()
        runtime = build_engine(
            _settings(tick_interval_seconds=60), clock=clock, channels=[channel], create_schema=True
        )
        disposed = []
        original_dispose = runtime.db_engine.dispose
        monkeypatch.setattr(
            runtime.db_engine, "dispose", lambda: (disposed.append(True), original_dispose())
        )

        runtime.scheduler.start()
        assert runtime.scheduler.is_running

        runtime.close()

        assert not runtime.scheduler.is_running
        assert channel.closed
        assert disposed == [True]
        assert runtime.closed

    def test_close_is_idempotent(self, runtime):
        runtime.close()
        runtime.close()
        assert runtime.closed

    def test_context_manager_closes(self, clock):
        channel = ClosingChannel()
        with build_engine(_settings(database_url=None), clock=clock, channels=[channel]) as runtime:
            assert isinstance(runtime, RevenueEngine)
        assert channel.closed
