"""
ReconciliationJob: cycle orchestration, failure aggregation and backoff.
"""

from datetime import datetime, timedelta, timezone

import pytest

from revrec_batch import JobState, ReconciliationJob
from revrec_config.settings import JobSettings
from revrec_kernel.exceptions import ReconciliationCycleError
from revrec_modules.revenue import RevenueQueries
from revrec_services import ReconciliationService

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FlakyReconciliation(ReconciliationService):
    """Reconciliation service that fails for selected tenants."""

    def __init__(self, *args, failing=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.failing = set(failing)

    def run(self, tenant_id, window_start, window_end):
        if tenant_id in self.failing:
            raise RuntimeError(f"ledger unavailable for {tenant_id}")
        return super().run(tenant_id, window_start, window_end)


class CountingQueries(RevenueQueries):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tenant_lookups = 0

    def list_active_tenants(self):
        self.tenant_lookups += 1
        return super().list_active_tenants()


@pytest.fixture
def flaky(store, thresholds, clock):
    return FlakyReconciliation(store, thresholds, clock)


@pytest.fixture
def make_job(job_settings, lifecycle, flaky, notifier, queries, clock):
    def _make(settings=None, reconciliation=None, tenant_queries=None):
        return ReconciliationJob(
            settings or job_settings,
            lifecycle,
            reconciliation or flaky,
            notifier,
            tenant_queries or queries,
            clock,
        )

    return _make


@pytest.fixture
def seeded(lifecycle, payment_event, line_item):
    """acme has a 600 bps variance; zeta has a deferred item falling due."""
    lifecycle.on_payment_captured(
        payment_event("pi_acme", amount=100000, items=[line_item("course-live", total=106000, method="immediate")])
    )
    lifecycle.on_payment_captured(
        payment_event(
            "pi_zeta",
            tenant="zeta",
            amount=20000,
            captured_at=T0 - timedelta(days=5),
            items=[line_item("course-video", total=20000, duration_days=1)],
        )
    )


class TestRunCycle:
    def test_disabled(self, make_job):
        job = make_job(JobSettings(enabled=False))
        assert job.run_cycle() == {"status": "disabled", "trigger": "manual"}

    def test_completed_cycle(self, make_job, seeded, email_channel):
        job = make_job()

        summary = job.run_cycle("scheduled")

        assert summary["status"] == "completed"
        assert summary["trigger"] == "scheduled"
        assert summary["window_end"] == T0.isoformat()
        assert summary["window_start"] == (T0 - timedelta(days=30)).isoformat()
        by_tenant = {t["tenant_id"]: t for t in summary["tenants"]}
        assert set(by_tenant) == {"acme", "zeta"}

        acme = by_tenant["acme"]
        assert (acme["severity"], acme["run_status"], acme["alert_count"]) == ("medium", "attention", 1)
        assert acme["notification"]["dispatched"] is True

        zeta = by_tenant["zeta"]
        assert zeta["sweep"] == {"status": "recognized", "processed": 1, "amount_cents": 20000}
        assert zeta["severity"] == "normal"
        assert zeta["notification"] is None

        assert len(email_channel.sent) == 1
        assert job.status()["last_status"] == "completed"
        assert job.state is JobState.IDLE

    def test_cycle_logs_carry_trigger(self, make_job, seeded, captured_logs):
        make_job().run_cycle("startup")
        [started] = [r for r in captured_logs() if r["message"] == "reconciliation_cycle_started"]
        assert started["trigger"] == "startup"
        assert started["tenant_count"] == 2

    def test_tenant_failure_aggregated(self, make_job, flaky, seeded, email_channel):
        flaky.failing = {"acme"}
        job = make_job()

        with pytest.raises(ReconciliationCycleError) as exc_info:
            job.run_cycle("scheduled")

        error = exc_info.value
        assert [f.tenant_id for f in error.failures] == ["acme"]
        assert error.failures[0].error_type == "RuntimeError"
        assert [r["tenant_id"] for r in error.partial_results] == ["zeta"]
        assert job.consecutive_failures == 1
        assert job.status()["last_status"] == "failed"
        [notice] = email_channel.sent
        assert notice.payload["event"] == "revenue.reconciliation.job_failed"
        assert notice.payload["failures"][0]["tenant_id"] == "acme"

    def test_failure_logged_with_tenant(self, make_job, flaky, seeded, captured_logs):
        flaky.failing = {"acme"}
        with pytest.raises(ReconciliationCycleError):
            make_job().run_cycle()
        [record] = [r for r in captured_logs() if r["message"] == "tenant_reconciliation_failed"]
        assert record["tenant_id"] == "acme"
        assert record["exc_type"] == "RuntimeError"

    def test_success_resets_failure_counter(self, make_job, flaky, seeded):
        flaky.failing = {"acme"}
        job = make_job()
        with pytest.raises(ReconciliationCycleError):
            job.run_cycle()

        flaky.failing = set()
        job.run_cycle()

        assert job.consecutive_failures == 0


class TestBackoff:
    def _fail(self, job, times):
        for _ in range(times):
            with pytest.raises(ReconciliationCycleError):
                job.run_cycle("scheduled")

    def test_pauses_after_max_consecutive_failures(self, make_job, flaky, seeded, clock):
        flaky.failing = {"acme"}
        job = make_job()

        self._fail(job, 3)

        assert job.state is JobState.PAUSED
        assert job.paused_until == T0 + timedelta(minutes=10)
        assert job.consecutive_failures == 0
        assert job.run_cycle("scheduled") == {
            "status": "paused",
            "trigger": "scheduled",
            "resume_at": (T0 + timedelta(minutes=10)).isoformat(),
        }

    def test_resumes_after_backoff(self, make_job, flaky, seeded, clock, captured_logs):
        flaky.failing = {"acme"}
        job = make_job()
        self._fail(job, 3)

        flaky.failing = set()
        clock.advance(minutes=10)
        summary = job.run_cycle("scheduled")

        assert summary["status"] == "completed"
        assert job.paused_until is None
        assert job.state is JobState.IDLE
        assert any(r["message"] == "job_resumed" for r in captured_logs())

    def test_failures_below_max_do_not_pause(self, make_job, flaky, seeded):
        flaky.failing = {"acme"}
        job = make_job()
        self._fail(job, 2)
        assert job.state is JobState.IDLE
        assert job.consecutive_failures == 2


class TestTenantResolution:
    def test_allowlist_normalised_and_deduplicated(self, make_job):
        job = make_job(JobSettings(tenant_allowlist=(" Acme", "acme", "Zeta")))
        assert job.resolve_tenants() == ["acme", "zeta"]

    def test_discovered_tenants_cached(self, make_job, store, clock, seeded):
        counting = CountingQueries(store, clock)
        job = make_job(tenant_queries=counting)

        assert job.resolve_tenants() == ["acme", "zeta"]
        job.resolve_tenants()
        assert counting.tenant_lookups == 1

        clock.advance(minutes=10)
        job.resolve_tenants()
        assert counting.tenant_lookups == 2

        job.resolve_tenants(force_refresh=True)
        job.invalidate_tenant_cache()
        job.resolve_tenants()
        assert counting.tenant_lookups == 4

    def test_empty_store_reconciles_global(self, make_job):
        summary = make_job().run_cycle()
        assert [t["tenant_id"] for t in summary["tenants"]] == ["global"]


class BrokenDiscoveryQueries(RevenueQueries):
    def list_active_tenants(self):
        raise RuntimeError("db down")


class TestDiscoveryFailure:
    def test_discovery_failure_counts_as_failed_cycle(self, make_job, store, clock, email_channel):
        job = make_job(tenant_queries=BrokenDiscoveryQueries(store, clock))

        with pytest.raises(ReconciliationCycleError) as exc_info:
            job.run_cycle("scheduled")

        [failure] = exc_info.value.failures
        assert (failure.tenant_id, failure.error_type, failure.message) == ("*", "RuntimeError", "db down")
        assert job.consecutive_failures == 1
        assert job.status()["last_status"] == "failed"
        [notice] = email_channel.sent
        assert notice.payload["failures"][0]["tenant_id"] == "*"

    def test_discovery_failure_pauses_job(self, make_job, store, clock):
        job = make_job(
            JobSettings(max_consecutive_failures=1, failure_backoff_minutes=10),
            tenant_queries=BrokenDiscoveryQueries(store, clock),
        )

        with pytest.raises(ReconciliationCycleError):
            job.run_cycle()

        assert job.state is JobState.PAUSED
        assert job.paused_until == T0 + timedelta(minutes=10)

    def test_discovery_failure_logged(self, make_job, store, clock, captured_logs):
        job = make_job(tenant_queries=BrokenDiscoveryQueries(store, clock))
        with pytest.raises(ReconciliationCycleError):
            job.run_cycle()
        [record] = [r for r in captured_logs() if r["message"] == "tenant_discovery_failed"]
        assert record["exc_type"] == "RuntimeError"


class TestStatus:
    def test_initial_status(self, make_job):
        assert make_job().status() == {
            "state": "idle",
            "enabled": True,
            "trigger": None,
            "consecutive_failures": 0,
            "resume_at": None,
            "last_run_at": None,
            "last_status": None,
        }

    def test_window(self, make_job):
        assert make_job().compute_window() == (T0 - timedelta(days=30), T0)
