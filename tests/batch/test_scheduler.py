"""
ReconciliationScheduler: tick semantics with a deterministic clock, and
the background thread lifecycle.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from revrec_batch import ReconciliationScheduler
from revrec_config.settings import JobSettings
from revrec_kernel.exceptions import ConfigError, ReconciliationCycleError, TenantFailure

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class StubJob:
    def __init__(self, fail=False):
        self.fail = fail
        self.triggers = []
        self.called = threading.Event()

    def run_cycle(self, trigger="manual"):
        self.triggers.append(trigger)
        self.called.set()
        if self.fail:
            raise ReconciliationCycleError(
                trigger,
                [TenantFailure("acme", "RuntimeError", "boom")],
                [{"tenant_id": "zeta"}],
            )
        return {"status": "completed", "trigger": trigger}


@pytest.fixture
def stub_job():
    return StubJob()


class TestTick:
    def test_first_tick_schedules_next_match(self, stub_job, clock):
        scheduler = ReconciliationScheduler(stub_job, JobSettings(cron_expression="5 * * * *"), clock)

        assert scheduler.tick() is None
        assert scheduler.next_fire_at == T0 + timedelta(minutes=5)
        assert stub_job.triggers == []

    def test_fires_when_due(self, stub_job, clock):
        scheduler = ReconciliationScheduler(stub_job, JobSettings(cron_expression="5 * * * *"), clock)
        scheduler.tick()

        clock.advance(minutes=4)
        assert scheduler.tick() is None

        clock.advance(minutes=1)
        assert scheduler.tick() == {"status": "completed", "trigger": "scheduled"}
        assert scheduler.next_fire_at == T0 + timedelta(hours=1, minutes=5)
        assert stub_job.triggers == ["scheduled"]

    def test_late_tick_fires_once(self, stub_job, clock):
        scheduler = ReconciliationScheduler(stub_job, JobSettings(cron_expression="5 * * * *"), clock)
        scheduler.tick()
        clock.advance(minutes=30)

        scheduler.tick()
        scheduler.tick()

        assert stub_job.triggers == ["scheduled"]

    def test_failed_cycle_reported_not_raised(self, clock):
        job = StubJob(fail=True)
        scheduler = ReconciliationScheduler(job, JobSettings(cron_expression="* * * * *"), clock)
        scheduler.tick()
        clock.advance(minutes=1)

        result = scheduler.tick()

        assert result["status"] == "failed"
        assert result["failures"] == [
            {"tenant_id": "acme", "error_type": "RuntimeError", "message": "boom"}
        ]
        assert result["tenants"] == [{"tenant_id": "zeta"}]

    def test_invalid_cron(self, stub_job, clock):
        scheduler = ReconciliationScheduler(stub_job, JobSettings(cron_expression="61 * * * *"), clock)
        with pytest.raises(ConfigError) as exc_info:
            scheduler.tick()
        assert exc_info.value.field_name == "cron_expression"


class TestThread:
    def test_start_runs_startup_cycle(self, stub_job, clock):
        settings = JobSettings(cron_expression="5 * * * *", tick_interval_seconds=0.01)
        scheduler = ReconciliationScheduler(stub_job, settings, clock)

        scheduler.start()
        try:
            assert stub_job.called.wait(timeout=5)
            assert scheduler.is_running
        finally:
            scheduler.stop(timeout=5)

        assert stub_job.triggers == ["startup"]
        assert not scheduler.is_running
        assert scheduler.next_fire_at == T0 + timedelta(minutes=5)

    def test_start_without_startup_cycle(self, stub_job, clock):
        settings = JobSettings(cron_expression="5 * * * *", run_on_startup=False, tick_interval_seconds=0.01)
        scheduler = ReconciliationScheduler(stub_job, settings, clock)

        scheduler.start()
        scheduler.stop(timeout=5)

        assert stub_job.triggers == []

    def test_disabled_never_starts(self, stub_job, clock):
        scheduler = ReconciliationScheduler(stub_job, JobSettings(enabled=False), clock)
        scheduler.start()
        assert not scheduler.is_running

    def test_invalid_cron_rejected_at_start(self, stub_job, clock):
        scheduler = ReconciliationScheduler(stub_job, JobSettings(cron_expression="not a cron"), clock)
        with pytest.raises(ConfigError):
            scheduler.start()
        assert not scheduler.is_running
