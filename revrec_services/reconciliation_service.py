"""
revrec_services.reconciliation_service -- Per-tenant revenue reconciliation.

Responsibility:
    Gather a tenant's invoiced, usage, recognized and deferred totals per
    currency, hand them to the pure variance engine, and persist one
    ``ReconciliationRunModel`` with the result.  Also the read side of
    runs: history, latest run, open alerts, and operator
    acknowledgements.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes ``revrec_engines.reconciliation`` (pure) with
    ``RevenueSelector`` reads and the kernel ``Store``.

Invariants enforced:
    - A run never mutates schedules.
    - Every run persists a status: ``completed`` or ``attention``
      (severity medium or high).  A degraded store yields an unpersisted
      ``skipped`` run instead of an exception.
    - Acknowledgements and notification records are appended, never
      replaced.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from revrec_config.settings import ReconciliationThresholds, RecognitionSettings
from revrec_engines.reconciliation import Severity, evaluate_variance, merge_currency_totals
from revrec_kernel import metrics
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.domain.records import AlertAcknowledgement, NotificationRecord
from revrec_kernel.exceptions import MissingIdentifierError, ReconciliationRunNotFoundError
from revrec_kernel.logging_config import LogContext, get_logger
from revrec_kernel.models import ReconciliationRunModel, RunStatus
from revrec_kernel.store import Store
from revrec_modules.revenue.helpers import coerce_datetime, normalise_tenant_id
from revrec_modules.revenue.selectors import RevenueSelector

logger = get_logger("services.reconciliation")

_OPEN_SEVERITIES = (Severity.MEDIUM.value, Severity.HIGH.value)


def _parse_run_id(run_id: UUID | str) -> UUID:
    try:
        return run_id if isinstance(run_id, UUID) else UUID(str(run_id))
    except ValueError as exc:
        raise ReconciliationRunNotFoundError(str(run_id)) from exc


class ReconciliationService:
    """
    Runs and records reconciliations.

    The default currency from ``recognition_settings`` labels blended
    figures of multi-currency tenants; single-currency tenants are
    reported in their own currency.
    """

    def __init__(
        self,
        store: Store,
        thresholds: ReconciliationThresholds | None = None,
        clock: Clock | None = None,
        recognition_settings: RecognitionSettings | None = None,
    ):
        self._store = store
        self._thresholds = thresholds or ReconciliationThresholds()
        self._clock = clock or SystemClock()
        self._reporting_currency = (recognition_settings or RecognitionSettings()).default_currency

    @property
    def thresholds(self) -> ReconciliationThresholds:
        return self._thresholds

    def run(
        self,
        tenant_id: str | None,
        window_start: datetime | str,
        window_end: datetime | str,
    ) -> ReconciliationRunModel:
        tenant = normalise_tenant_id(tenant_id)
        start = coerce_datetime(window_start)
        end = coerce_datetime(window_end)
        now = self._clock.now()

        if not self._store.available:
            logger.warning("reconciliation_skipped", extra={"tenant_id": tenant})
            return ReconciliationRunModel(
                tenant_id=tenant,
                window_start=start,
                window_end=end,
                status=RunStatus.SKIPPED.value,
                severity=Severity.NORMAL.value,
                invoiced_cents=0,
                usage_cents=0,
                recognized_cents=0,
                deferred_cents=0,
                variance_cents=0,
                variance_ratio=0,
                metadata_={
                    "reconciliation_method": "automated",
                    "generated_at": now.isoformat(),
                    "reason": "connection-unavailable",
                },
                acknowledgements=[],
                notifications=[],
            )

        with LogContext.bind(tenant_id=tenant):
            with self._store.transaction("reconciliation_run") as session:
                selector = RevenueSelector(session, self._reporting_currency)
                totals = merge_currency_totals(
                    invoiced=selector.invoiced_by_currency(tenant, start, end),
                    usage=selector.usage_by_currency(tenant, start, end),
                    recognized=selector.recognized_by_currency(tenant, start, end),
                    deferred=selector.deferred_balance_by_currency(tenant),
                )
                report = evaluate_variance(totals, self._thresholds, self._reporting_currency)

                run = ReconciliationRunModel(
                    tenant_id=tenant,
                    window_start=start,
                    window_end=end,
                    status=(
                        RunStatus.ATTENTION.value if report.needs_attention else RunStatus.COMPLETED.value
                    ),
                    severity=report.severity.value,
                    invoiced_cents=report.invoiced_cents,
                    usage_cents=report.usage_cents,
                    recognized_cents=report.recognized_cents,
                    deferred_cents=report.deferred_cents,
                    variance_cents=report.variance_cents,
                    variance_ratio=report.variance_ratio,
                    metadata_={
                        "reconciliation_method": "automated",
                        "generated_at": now.isoformat(),
                        "severity": report.severity.value,
                        "variance_bps": report.variance_bps,
                        "usage_variance_cents": report.usage_variance_cents,
                        "usage_variance_bps": report.usage_variance_bps,
                        "alerts": [alert.to_dict() for alert in report.alerts],
                        "alert_digest": report.alert_digest,
                        "thresholds": self._thresholds.to_dict(),
                        "currency_breakdown": list(report.currency_breakdown),
                    },
                    acknowledgements=[],
                    notifications=[],
                )
                session.add(run)
                session.flush()

            metrics.record_reconciliation_run(tenant, report.severity.value)
            metrics.set_deferred_balance(tenant, report.deferred_cents)
            logger.info(
                "reconciliation_run_persisted",
                extra={
                    "run_id": str(run.id),
                    "run_status": run.status,
                    "severity": report.severity.value,
                    "variance_cents": report.variance_cents,
                    "variance_bps": report.variance_bps,
                    "alert_count": len(report.alerts),
                },
            )
            return run

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_reconciliation_runs(self, tenant_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        if not self._store.available:
            return []
        query = (
            select(ReconciliationRunModel)
            .order_by(ReconciliationRunModel.created_at.desc())
            .limit(max(1, min(limit, 200)))
        )
        if tenant_id is not None:
            query = query.where(ReconciliationRunModel.tenant_id == normalise_tenant_id(tenant_id))
        with self._store.reader("list_reconciliation_runs") as session:
            return [run.to_dict() for run in session.execute(query).scalars()]

    def latest_reconciliation(self, tenant_id: str | None = None) -> dict[str, Any] | None:
        runs = self.list_reconciliation_runs(tenant_id, limit=1)
        return runs[0] if runs else None

    def previous_run(self, run: ReconciliationRunModel) -> ReconciliationRunModel | None:
        """The tenant's run recorded immediately before ``run``."""
        with self._store.reader("previous_run") as session:
            return session.execute(
                select(ReconciliationRunModel)
                .where(
                    ReconciliationRunModel.tenant_id == run.tenant_id,
                    ReconciliationRunModel.id != run.id,
                    ReconciliationRunModel.created_at <= run.created_at,
                )
                .order_by(ReconciliationRunModel.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def list_open_alerts(self, tenant_id: str | None = None) -> list[dict[str, Any]]:
        """Alerts on each tenant's latest run at medium severity or above."""
        if not self._store.available:
            return []
        latest = (
            select(
                ReconciliationRunModel.tenant_id,
                func.max(ReconciliationRunModel.created_at).label("latest_at"),
            )
            .group_by(ReconciliationRunModel.tenant_id)
            .subquery()
        )
        query = (
            select(ReconciliationRunModel)
            .join(
                latest,
                (ReconciliationRunModel.tenant_id == latest.c.tenant_id)
                & (ReconciliationRunModel.created_at == latest.c.latest_at),
            )
            .where(ReconciliationRunModel.severity.in_(_OPEN_SEVERITIES))
            .order_by(ReconciliationRunModel.tenant_id)
        )
        if tenant_id is not None:
            query = query.where(ReconciliationRunModel.tenant_id == normalise_tenant_id(tenant_id))

        with self._store.reader("list_open_alerts") as session:
            runs = list(session.execute(query).scalars())

        open_alerts = []
        for run in runs:
            if not run.alerts:
                continue
            acknowledgements = run.acknowledgement_log
            open_alerts.append(
                {
                    "run_id": str(run.id),
                    "tenant_id": run.tenant_id,
                    "window_start": run.window_start.isoformat(),
                    "window_end": run.window_end.isoformat(),
                    "severity": run.severity,
                    "alert_digest": run.alert_digest,
                    "alerts": run.alerts,
                    "acknowledged": bool(acknowledgements),
                    "acknowledgements": [ack.to_dict() for ack in acknowledgements],
                }
            )
        return open_alerts

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def _load_run(self, session: Session, run_id: UUID | str) -> ReconciliationRunModel:
        run = session.get(ReconciliationRunModel, _parse_run_id(run_id))
        if run is None:
            raise ReconciliationRunNotFoundError(str(run_id))
        return run

    def acknowledge_alert(
        self,
        run_id: UUID | str,
        operator_id: str,
        operator_name: str | None = None,
        operator_email: str | None = None,
        channel: str | None = None,
        note: str | None = None,
    ) -> AlertAcknowledgement:
        if not operator_id:
            raise MissingIdentifierError("operator_id", "acknowledge an alert")
        record = AlertAcknowledgement(
            acknowledged_at=self._clock.now(),
            operator_id=operator_id,
            operator_name=operator_name,
            operator_email=operator_email,
            channel=channel,
            note=note,
        )
        with self._store.transaction("acknowledge_alert") as session:
            run = self._load_run(session, run_id)
            run.append_acknowledgement(record)
            tenant = run.tenant_id
        logger.info(
            "alert_acknowledged",
            extra={"run_id": str(run_id), "tenant_id": tenant, "operator_id": operator_id},
        )
        return record

    def record_notification(self, run_id: UUID | str, record: NotificationRecord) -> None:
        with self._store.transaction("record_notification") as session:
            self._load_run(session, run_id).append_notification(record)
