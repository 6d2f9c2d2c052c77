"""
ReconciliationJob -- one reconciliation cycle across every tenant.

Contract:
    ``run_cycle(trigger)`` resolves tenants and processes them
    sequentially: due sweep, reconciliation run, then alert notification
    when the run raised alerts.  A tenant's failure is collected and the
    loop continues; after the loop one ``ReconciliationCycleError``
    carries every failure plus the results of the tenants that succeeded.

States:
    idle -> running(trigger) -> idle
                             -> paused (after max consecutive failures)
    paused -> idle once ``resume_at`` passes (checked on the next cycle)

Invariants enforced:
    - All timestamps from the injected Clock.
    - The failure counter increments once per failed cycle and resets on
      any fully successful cycle.
    - Cycles are not re-entrant; callers serialize them (the scheduler
      holds a lock around ``run_cycle``).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from revrec_config.settings import JobSettings
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.exceptions import ReconciliationCycleError, TenantFailure
from revrec_kernel.logging_config import LogContext, get_logger
from revrec_modules.revenue.helpers import normalise_tenant_id
from revrec_modules.revenue.schedules import ScheduleLifecycleManager
from revrec_modules.revenue.selectors import RevenueQueries
from revrec_services.notifier import AlertNotifier, summarize_decision
from revrec_services.reconciliation_service import ReconciliationService

logger = get_logger("batch.job")

# Tenant id reported when the cycle fails before any tenant runs.
CYCLE_SCOPE = "*"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class ReconciliationJob:
    """Explicitly constructed, injected job; one per process."""

    def __init__(
        self,
        settings: JobSettings,
        lifecycle: ScheduleLifecycleManager,
        reconciliation: ReconciliationService,
        notifier: AlertNotifier,
        queries: RevenueQueries,
        clock: Clock | None = None,
    ):
        self._settings = settings
        self._lifecycle = lifecycle
        self._reconciliation = reconciliation
        self._notifier = notifier
        self._queries = queries
        self._clock = clock or SystemClock()

        self._running_trigger: str | None = None
        self._consecutive_failures = 0
        self._paused_until: datetime | None = None
        self._last_run_at: datetime | None = None
        self._last_status: str | None = None
        self._tenant_cache: list[str] | None = None
        self._tenant_cache_at: datetime | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> JobState:
        if self._running_trigger is not None:
            return JobState.RUNNING
        if self._paused_until is not None and self._clock.now() < self._paused_until:
            return JobState.PAUSED
        return JobState.IDLE

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def paused_until(self) -> datetime | None:
        return self._paused_until

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "enabled": self._settings.enabled,
            "trigger": self._running_trigger,
            "consecutive_failures": self._consecutive_failures,
            "resume_at": self._paused_until.isoformat() if self._paused_until else None,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_status": self._last_status,
        }

    # -------------------------------------------------------------------------
    # Tenants and window
    # -------------------------------------------------------------------------

    def resolve_tenants(self, force_refresh: bool = False) -> list[str]:
        """Allowlist when configured, else discovered tenants behind a TTL cache."""
        if self._settings.tenant_allowlist:
            seen: dict[str, None] = {}
            for tenant in self._settings.tenant_allowlist:
                seen.setdefault(normalise_tenant_id(tenant), None)
            return list(seen)

        now = self._clock.now()
        ttl = timedelta(minutes=self._settings.tenant_cache_minutes)
        if (
            not force_refresh
            and self._tenant_cache is not None
            and self._tenant_cache_at is not None
            and now - self._tenant_cache_at < ttl
        ):
            return list(self._tenant_cache)

        self._tenant_cache = self._queries.list_active_tenants()
        self._tenant_cache_at = now
        logger.debug("tenant_cache_refreshed", extra={"tenant_count": len(self._tenant_cache)})
        return list(self._tenant_cache)

    def invalidate_tenant_cache(self) -> None:
        self._tenant_cache = None
        self._tenant_cache_at = None

    def compute_window(self) -> tuple[datetime, datetime]:
        window_end = self._clock.now()
        return window_end - timedelta(days=self._settings.recognition_window_days), window_end

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def run_cycle(self, trigger: str = "manual") -> dict[str, Any]:
        """Run one cycle.

        Returns a summary dict on success, or a ``disabled`` / ``paused``
        status without doing any work.

        Raises:
            ReconciliationCycleError: If one or more tenants failed.
        """
        if not self._settings.enabled:
            logger.info("job_disabled", extra={"trigger": trigger})
            return {"status": "disabled", "trigger": trigger}

        now = self._clock.now()
        if self._paused_until is not None:
            if now < self._paused_until:
                logger.info(
                    "job_paused_skip",
                    extra={"trigger": trigger, "resume_at": self._paused_until.isoformat()},
                )
                return {
                    "status": "paused",
                    "trigger": trigger,
                    "resume_at": self._paused_until.isoformat(),
                }
            logger.info("job_resumed", extra={"paused_until": self._paused_until.isoformat()})
            self._paused_until = None

        window_start, window_end = self.compute_window()
        self._running_trigger = trigger
        results: list[dict[str, Any]] = []
        failures: list[TenantFailure] = []

        try:
            with LogContext.bind(trigger=trigger):
                try:
                    tenants = self.resolve_tenants()
                except Exception as exc:
                    failures.append(TenantFailure(CYCLE_SCOPE, type(exc).__name__, str(exc)))
                    logger.exception("tenant_discovery_failed")
                    self._last_run_at = now
                    self._record_failed_cycle(trigger, window_start, window_end, failures)
                    raise ReconciliationCycleError(trigger, failures, results) from exc

                logger.info(
                    "reconciliation_cycle_started",
                    extra={"tenant_count": len(tenants), "window_start": window_start, "window_end": window_end},
                )
                for tenant in tenants:
                    try:
                        results.append(self._run_tenant(tenant, window_start, window_end))
                    except Exception as exc:
                        failures.append(TenantFailure(tenant, type(exc).__name__, str(exc)))
                        logger.exception("tenant_reconciliation_failed", extra={"tenant_id": tenant})

                self._last_run_at = now
                if failures:
                    self._record_failed_cycle(trigger, window_start, window_end, failures)
                    raise ReconciliationCycleError(trigger, failures, results)

                self._consecutive_failures = 0
                self._paused_until = None
                self._last_status = "completed"
                logger.info(
                    "reconciliation_cycle_completed",
                    extra={"tenant_count": len(results)},
                )
                return {
                    "status": "completed",
                    "trigger": trigger,
                    "window_start": window_start.isoformat(),
                    "window_end": window_end.isoformat(),
                    "tenants": results,
                }
        finally:
            self._running_trigger = None

    def _run_tenant(self, tenant_id: str, window_start: datetime, window_end: datetime) -> dict[str, Any]:
        with LogContext.bind(tenant_id=tenant_id):
            sweep = self._lifecycle.sweep_due(tenant_id, as_of=window_end)
            run = self._reconciliation.run(tenant_id, window_start, window_end)
            notification = self._notifier.notify_run(run) if run.alerts else None
            return {
                "tenant_id": tenant_id,
                "sweep": {
                    "status": sweep.status,
                    "processed": sweep.processed,
                    "amount_cents": sweep.amount_cents,
                },
                "run_id": str(run.id) if run.id else None,
                "run_status": run.status,
                "severity": run.severity,
                "alert_count": len(run.alerts),
                "notification": summarize_decision(notification),
            }

    def _record_failed_cycle(
        self,
        trigger: str,
        window_start: datetime,
        window_end: datetime,
        failures: list[TenantFailure],
    ) -> None:
        self._consecutive_failures += 1
        self._last_status = "failed"
        logger.error(
            "reconciliation_cycle_failed",
            extra={
                "failures": [failure.to_dict() for failure in failures],
                "consecutive_failures": self._consecutive_failures,
            },
        )
        self._notifier.notify_job_failure(trigger, window_start, window_end, failures)

        if self._consecutive_failures >= self._settings.max_consecutive_failures:
            self._paused_until = self._clock.now() + timedelta(
                minutes=self._settings.failure_backoff_minutes
            )
            self._consecutive_failures = 0
            logger.warning(
                "job_paused",
                extra={
                    "resume_at": self._paused_until.isoformat(),
                    "backoff_minutes": self._settings.failure_backoff_minutes,
                },
            )
