"""
revrec_services.notifier -- Alert dispatch with digest dedup.

Responsibility:
    Decide whether a reconciliation run's alerts go out, format them for
    each configured channel, and append the decision to the run's
    notification log.  Also dispatches job-level failure notices.

Dispatch rule (``should_notify``), first match wins:
    1. no earlier dispatch state for the tenant   -> notify
    2. severity rank rose versus the prior run    -> notify
    3. alert digest differs from the last sent    -> notify
    4. cooldown elapsed since the last dispatch   -> notify
    otherwise suppress.

Suppressed and failed decisions carry ``last_sent_at`` / ``last_digest``
forward unchanged so the next cycle compares against the last delivery
that actually happened.  Channel failures are logged and counted; they
never propagate to the reconciliation cycle.
"""

from __future__ import annotations

import html
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from revrec_config.settings import NotificationSettings, RecognitionSettings
from revrec_engines.reconciliation import Severity
from revrec_kernel import metrics
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.domain.currency import format_minor_units
from revrec_kernel.domain.records import NotificationRecord
from revrec_kernel.exceptions import ChannelDeliveryError, TenantFailure
from revrec_kernel.logging_config import LogContext, get_logger
from revrec_kernel.models import ReconciliationRunModel
from revrec_kernel.utils.hashing import hash_payload
from revrec_services.channels import AlertMessage, NotificationChannel
from revrec_services.reconciliation_service import ReconciliationService

logger = get_logger("services.notifier")


@dataclass(frozen=True)
class NotificationDecision:
    notify: bool
    reason: str


def _severity(value: str | None) -> Severity:
    try:
        return Severity(value or Severity.NORMAL.value)
    except ValueError:
        return Severity.NORMAL


def should_notify(
    *,
    severity: str,
    digest: str | None,
    previous_severity: str | None,
    last_sent_at: datetime | None,
    last_digest: str | None,
    now: datetime,
    cooldown: timedelta,
) -> NotificationDecision:
    if last_sent_at is None:
        return NotificationDecision(True, "first_notification")
    if previous_severity is not None and _severity(severity).rank > _severity(previous_severity).rank:
        return NotificationDecision(True, "severity_escalated")
    if digest != last_digest:
        return NotificationDecision(True, "digest_changed")
    if now - last_sent_at >= cooldown:
        return NotificationDecision(True, "cooldown_elapsed")
    return NotificationDecision(False, "suppressed")


def _acknowledgement_link(base_url: str | None, run_id: str) -> str | None:
    if not base_url:
        return None
    if "{run_id}" in base_url:
        return base_url.replace("{run_id}", run_id)
    return f"{base_url.rstrip('/')}/{run_id}"


class AlertNotifier:
    """Dispatches reconciliation alerts over the configured channels."""

    def __init__(
        self,
        settings: NotificationSettings,
        channels: Sequence[NotificationChannel],
        reconciliation_service: ReconciliationService,
        clock: Clock | None = None,
        recognition_settings: RecognitionSettings | None = None,
    ):
        self._settings = settings
        self._channels = list(channels)
        self._service = reconciliation_service
        self._clock = clock or SystemClock()
        self._default_currency = (recognition_settings or RecognitionSettings()).default_currency
        self._job_failure_digest: str | None = None
        self._job_failure_sent_at: datetime | None = None

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self._settings.cooldown_minutes)

    @property
    def channel_names(self) -> tuple[str, ...]:
        return tuple(channel.name for channel in self._channels)

    # ------------------------------------------------------------------
    # Run alerts
    # ------------------------------------------------------------------

    def notify_run(self, run: ReconciliationRunModel) -> NotificationRecord | None:
        """
        Apply the dispatch rule to ``run`` and record the outcome.

        Returns None for runs with no alerts or that were never persisted.
        """
        if run.id is None or not run.alerts:
            return None

        now = self._clock.now()
        digest = run.alert_digest
        previous = self._service.previous_run(run)
        previous_record = previous.notification_log[-1] if previous and previous.notifications else None
        last_sent_at = previous_record.last_sent_at if previous_record else None
        last_digest = previous_record.last_digest if previous_record else None

        with LogContext.bind(tenant_id=run.tenant_id, run_id=str(run.id)):
            if not self._channels:
                record = self._carry_forward(run, now, "no_channels", last_sent_at, last_digest)
                self._service.record_notification(run.id, record)
                logger.info("alert_notification_skipped", extra={"reason": "no_channels"})
                return record

            decision = should_notify(
                severity=run.severity,
                digest=digest,
                previous_severity=previous.severity if previous else None,
                last_sent_at=last_sent_at,
                last_digest=last_digest,
                now=now,
                cooldown=self.cooldown,
            )
            if not decision.notify:
                record = self._carry_forward(run, now, decision.reason, last_sent_at, last_digest)
                self._service.record_notification(run.id, record)
                for name in self.channel_names:
                    metrics.record_alert_dispatch(name, "suppressed")
                logger.info(
                    "alert_notification_suppressed",
                    extra={"digest": digest, "last_sent_at": last_sent_at},
                )
                return record

            message = self.build_run_message(run)
            delivered, failed = self._dispatch(message)
            if delivered:
                record = NotificationRecord(
                    decided_at=now,
                    dispatched=True,
                    reason=decision.reason,
                    digest=digest,
                    severity=run.severity,
                    last_sent_at=now,
                    last_digest=digest,
                    channels=tuple(delivered),
                    recipients=tuple(self._settings.email_recipients) if "email" in delivered else (),
                    failed_channels=tuple(failed),
                )
            else:
                record = self._carry_forward(
                    run, now, "delivery_failed", last_sent_at, last_digest, failed=tuple(failed)
                )
            self._service.record_notification(run.id, record)
            logger.info(
                "alert_notification_recorded",
                extra={
                    "dispatched": record.dispatched,
                    "decision_reason": record.reason,
                    "channels": list(record.channels),
                    "failed_channels": list(record.failed_channels),
                },
            )
            return record

    def _carry_forward(
        self,
        run: ReconciliationRunModel,
        now: datetime,
        reason: str,
        last_sent_at: datetime | None,
        last_digest: str | None,
        failed: tuple[str, ...] = (),
    ) -> NotificationRecord:
        return NotificationRecord(
            decided_at=now,
            dispatched=False,
            reason=reason,
            digest=run.alert_digest,
            severity=run.severity,
            last_sent_at=last_sent_at,
            last_digest=last_digest,
            failed_channels=failed,
        )

    def _dispatch(self, message: AlertMessage) -> tuple[list[str], list[str]]:
        delivered: list[str] = []
        failed: list[str] = []
        for channel in self._channels:
            try:
                channel.send(message)
            except ChannelDeliveryError as exc:
                failed.append(channel.name)
                metrics.record_alert_dispatch(channel.name, "failed")
                logger.warning(
                    "alert_dispatch_failed",
                    extra={"channel": channel.name, "reason": exc.reason},
                )
                continue
            delivered.append(channel.name)
            metrics.record_alert_dispatch(channel.name, "sent")
        return delivered, failed

    def _run_currency(self, run: ReconciliationRunModel) -> str:
        breakdown = (run.metadata_ or {}).get("currency_breakdown") or []
        if len(breakdown) == 1:
            return breakdown[0].get("currency") or self._default_currency
        return self._default_currency

    def build_run_message(self, run: ReconciliationRunModel) -> AlertMessage:
        """Plain-text, HTML and JSON renderings of one run's alerts."""
        currency = self._run_currency(run)
        run_id = str(run.id)
        metadata = run.metadata_ or {}
        ack_url = _acknowledgement_link(self._settings.acknowledgement_url, run_id)
        figures = {
            "invoiced": run.invoiced_cents,
            "recognized": run.recognized_cents,
            "usage": run.usage_cents,
            "deferred": run.deferred_cents,
            "variance": run.variance_cents,
        }
        formatted = {key: format_minor_units(value, currency) for key, value in figures.items()}

        subject = (
            f"[{run.severity.upper()}] Revenue reconciliation variance for tenant {run.tenant_id}"
        )
        lines = [
            f"Tenant: {run.tenant_id}",
            f"Window: {run.window_start.isoformat()} to {run.window_end.isoformat()}",
            f"Severity: {run.severity}",
            f"Invoiced: {formatted['invoiced']}",
            f"Recognized: {formatted['recognized']}",
            f"Usage: {formatted['usage']}",
            f"Deferred balance: {formatted['deferred']}",
            f"Variance: {formatted['variance']} ({metadata.get('variance_bps', 0)} bps)",
            "",
            "Alerts:",
        ]
        for alert in run.alerts:
            lines.append(f"- [{alert['severity']}] {alert['message']}")
            lines.append(f"  Suggested action: {alert['suggested_action']}")
        if ack_url:
            lines.extend(["", f"Acknowledge: {ack_url}"])
        lines.extend(["", f"Digest: {run.alert_digest}"])
        text = "\n".join(lines)

        alert_items = "".join(
            f"<li><strong>{html.escape(alert['severity'])}</strong> "
            f"{html.escape(alert['message'])}<br><em>{html.escape(alert['suggested_action'])}</em></li>"
            for alert in run.alerts
        )
        figure_rows = "".join(
            f"<tr><th>{html.escape(key.title())}</th><td>{html.escape(value)}</td></tr>"
            for key, value in formatted.items()
        )
        ack_html = (
            f'<p><a href="{html.escape(ack_url, quote=True)}">Acknowledge these alerts</a></p>'
            if ack_url
            else ""
        )
        body_html = (
            f"<h2>{html.escape(subject)}</h2>"
            f"<table>{figure_rows}</table>"
            f"<ul>{alert_items}</ul>"
            f"{ack_html}"
            f"<p><small>Digest: {html.escape(run.alert_digest or '')}</small></p>"
        )

        payload = {
            "event": "revenue.reconciliation.alert",
            "run_id": run_id,
            "tenant_id": run.tenant_id,
            "severity": run.severity,
            "window_start": run.window_start.isoformat(),
            "window_end": run.window_end.isoformat(),
            "currency": currency,
            "figures": {f"{key}_cents": value for key, value in figures.items()},
            "formatted": formatted,
            "variance_bps": metadata.get("variance_bps"),
            "alerts": run.alerts,
            "alert_digest": run.alert_digest,
            "acknowledgement_url": ack_url,
        }
        return AlertMessage(
            subject=subject,
            text=text,
            html=body_html,
            payload=payload,
            recipients=tuple(self._settings.email_recipients),
        )

    # ------------------------------------------------------------------
    # Job failures
    # ------------------------------------------------------------------

    def notify_job_failure(
        self,
        trigger: str,
        window_start: datetime,
        window_end: datetime,
        failures: Iterable[TenantFailure],
    ) -> bool:
        """
        Notify operators that a cycle failed for some tenants.

        Dedup keys on trigger, the window's calendar dates and the set of
        failing tenants, and is guarded by the same cooldown as run alerts.
        Returns True when at least one channel accepted the notice.
        """
        failures = list(failures)
        tenants = sorted({failure.tenant_id for failure in failures})
        digest = hash_payload(
            {
                "trigger": trigger,
                "window": [window_start.date().isoformat(), window_end.date().isoformat()],
                "tenants": tenants,
            }
        )
        now = self._clock.now()

        if not self._channels:
            logger.info("job_failure_notification_skipped", extra={"reason": "no_channels"})
            return False
        if (
            digest == self._job_failure_digest
            and self._job_failure_sent_at is not None
            and now - self._job_failure_sent_at < self.cooldown
        ):
            logger.info("job_failure_notification_suppressed", extra={"digest": digest})
            return False

        subject = f"Revenue reconciliation job failed for {len(tenants)} tenant(s)"
        lines = [
            f"Trigger: {trigger}",
            f"Window: {window_start.isoformat()} to {window_end.isoformat()}",
            "",
            "Failures:",
        ]
        lines.extend(f"- {f.tenant_id}: {f.error_type}: {f.message}" for f in failures)
        items = "".join(
            f"<li>{html.escape(f.tenant_id)}: {html.escape(f.error_type)}: {html.escape(f.message)}</li>"
            for f in failures
        )
        message = AlertMessage(
            subject=subject,
            text="\n".join(lines),
            html=f"<h2>{html.escape(subject)}</h2><ul>{items}</ul>",
            payload={
                "event": "revenue.reconciliation.job_failed",
                "trigger": trigger,
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
                "failures": [failure.to_dict() for failure in failures],
                "digest": digest,
            },
            recipients=tuple(self._settings.email_recipients),
        )
        delivered, failed = self._dispatch(message)
        if delivered:
            self._job_failure_digest = digest
            self._job_failure_sent_at = now
        logger.info(
            "job_failure_notification_recorded",
            extra={"channels": delivered, "failed_channels": failed, "digest": digest},
        )
        return bool(delivered)


def summarize_decision(record: NotificationRecord | None) -> dict[str, Any] | None:
    return record.to_dict() if record is not None else None
