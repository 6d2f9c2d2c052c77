"""
ReconciliationScheduler -- In-process polling scheduler.

Contract:
    Polls on ``tick_interval_seconds``; fires ``run_cycle("scheduled")``
    when the clock reaches the next cron match, and ``run_cycle("startup")``
    once on the first tick when ``run_on_startup`` is set.

Invariants enforced:
    - All timestamps from injected Clock.
    - Cycles never overlap: ``_fire`` holds a lock around ``run_cycle``.
    - Graceful shutdown: ``stop()`` sets the stop signal and joins the
      thread; an in-flight cycle completes.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from revrec_batch.cron import CronSpec, next_cron_match, parse_cron
from revrec_batch.job import ReconciliationJob
from revrec_config.settings import JobSettings
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.exceptions import ConfigError, ReconciliationCycleError
from revrec_kernel.logging_config import get_logger

logger = get_logger("batch.scheduler")


class ReconciliationScheduler:
    """Background driver for a ``ReconciliationJob``.

    Non-goals:
        - NOT a distributed scheduler (no leader election).
        - Does NOT handle timezone conversions (expects UTC).
    """

    def __init__(
        self,
        job: ReconciliationJob,
        settings: JobSettings,
        clock: Clock | None = None,
    ):
        self._job = job
        self._settings = settings
        self._clock = clock or SystemClock()
        self._spec: CronSpec | None = None
        self._next_fire_at: datetime | None = None
        self._startup_pending = False
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def next_fire_at(self) -> datetime | None:
        return self._next_fire_at

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _cron_spec(self) -> CronSpec:
        if self._spec is None:
            try:
                self._spec = parse_cron(self._settings.cron_expression)
            except ValueError as exc:
                raise ConfigError("cron_expression", str(exc)) from exc
        return self._spec

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> dict[str, Any] | None:
        """Fire a cycle if one is due (public for testing).

        Returns the cycle summary, or None when nothing fired.
        """
        if self._startup_pending:
            self._startup_pending = False
            return self._fire("startup")

        now = self._clock.now()
        spec = self._cron_spec()
        if self._next_fire_at is None:
            self._next_fire_at = next_cron_match(spec, now)
            return None
        if now < self._next_fire_at:
            return None

        self._next_fire_at = next_cron_match(spec, now)
        return self._fire("scheduled")

    def start(self) -> None:
        """Validate the cron expression and start the polling thread.

        Raises:
            ConfigError: If the cron expression does not parse.
        """
        if not self._settings.enabled:
            logger.info("scheduler_disabled")
            return
        if self.is_running:
            return

        spec = self._cron_spec()
        self._next_fire_at = next_cron_match(spec, self._clock.now())
        self._startup_pending = self._settings.run_on_startup
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="revrec-reconciliation-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={
                "cron_expression": self._settings.cron_expression,
                "next_fire_at": self._next_fire_at.isoformat(),
                "tick_interval": self._settings.tick_interval_seconds,
            },
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the polling thread to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("scheduler_stopped")

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self._settings.tick_interval_seconds)

    def _fire(self, trigger: str) -> dict[str, Any]:
        with self._cycle_lock:
            try:
                return self._job.run_cycle(trigger)
            except ReconciliationCycleError as exc:
                logger.error(
                    "scheduled_cycle_failed",
                    extra={
                        "trigger": trigger,
                        "failed_tenants": [failure.tenant_id for failure in exc.failures],
                    },
                )
                return {
                    "status": "failed",
                    "trigger": trigger,
                    "failures": [failure.to_dict() for failure in exc.failures],
                    "tenants": exc.partial_results,
                }
