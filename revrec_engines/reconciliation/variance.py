"""
revrec_engines.reconciliation.variance -- Revenue variance and severity.

Responsibility:
    Compare recognized revenue against invoiced and usage totals for one
    tenant and window, rank the result, and build the alert set.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Consumed by
    ``revrec_services.reconciliation_service``.

Formulas:
    variance_cents = recognized - invoiced
    variance_bps   = round(variance_cents / max(|invoiced|, floor) * 10000)
    usage bps      = same against usage, evaluated only when usage > 0

Severity ranks normal < low < medium < high and only ever escalates
within one evaluation:
    |bps| >= critical_bps -> high
    |bps| >= alert_bps    -> medium (alert raised)
    bps != 0              -> low (no alert)
    deferred balance < 0  -> high, unconditionally

Multi-currency tenants also get one ``currency_variance`` alert per
currency breaching the threshold and one ``deferred_balance_negative``
alert per currency whose deferred balance is below zero, so a blended
total cannot mask them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Protocol

from revrec_config.settings import DEFAULT_CURRENCY
from revrec_kernel.domain.currency import format_minor_units
from revrec_kernel.utils.hashing import alert_digest


class Severity(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {
    Severity.NORMAL: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
}


class AlertType(str, Enum):
    RECOGNIZED_VS_INVOICED = "recognized_vs_invoiced"
    RECOGNIZED_VS_USAGE = "recognized_vs_usage"
    DEFERRED_BALANCE_NEGATIVE = "deferred_balance_negative"
    CURRENCY_VARIANCE = "currency_variance"


class Thresholds(Protocol):
    alert_bps: int
    critical_bps: int
    minimum_invoiced_cents_floor: int


def escalate(current: Severity, candidate: Severity) -> Severity:
    return candidate if candidate.rank > current.rank else current


def variance_bps(variance_cents: int, baseline_cents: int, floor_cents: int) -> int:
    """Basis points of ``variance_cents`` over a floor-protected baseline, half away from zero."""
    denominator = max(abs(baseline_cents), floor_cents, 1)
    ratio = Decimal(variance_cents) * 10000 / Decimal(denominator)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def classify_bps(bps: int, thresholds: Thresholds) -> Severity:
    magnitude = abs(bps)
    if magnitude >= thresholds.critical_bps:
        return Severity.HIGH
    if magnitude >= thresholds.alert_bps:
        return Severity.MEDIUM
    if magnitude > 0:
        return Severity.LOW
    return Severity.NORMAL


@dataclass(frozen=True)
class Alert:
    type: AlertType
    severity: Severity
    message: str
    suggested_action: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "suggested_action": self.suggested_action,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class CurrencyTotals:
    currency: str
    invoiced_cents: int = 0
    usage_cents: int = 0
    recognized_cents: int = 0
    deferred_cents: int = 0

    @property
    def variance_cents(self) -> int:
        return self.recognized_cents - self.invoiced_cents

    def to_dict(self, floor_cents: int) -> dict[str, Any]:
        return {
            "currency": self.currency,
            "invoiced_cents": self.invoiced_cents,
            "usage_cents": self.usage_cents,
            "recognized_cents": self.recognized_cents,
            "deferred_cents": self.deferred_cents,
            "variance_cents": self.variance_cents,
            "variance_bps": variance_bps(self.variance_cents, self.invoiced_cents, floor_cents),
        }


@dataclass(frozen=True)
class VarianceReport:
    invoiced_cents: int
    usage_cents: int
    recognized_cents: int
    deferred_cents: int
    variance_cents: int
    variance_ratio: Decimal
    variance_bps: int
    usage_variance_cents: int
    usage_variance_bps: int | None
    severity: Severity
    alerts: tuple[Alert, ...]
    alert_digest: str | None
    currency_breakdown: tuple[dict[str, Any], ...]

    @property
    def needs_attention(self) -> bool:
        return self.severity.rank >= Severity.MEDIUM.rank


def _direction(bps: int) -> str:
    return "above" if bps > 0 else "below"


def _variance_alert(
    alert_type: AlertType,
    severity: Severity,
    bps: int,
    variance_cents: int,
    baseline_label: str,
    baseline_cents: int,
    recognized_cents: int,
    currency: str,
    thresholds: Thresholds,
) -> Alert:
    limit = thresholds.critical_bps if severity is Severity.HIGH else thresholds.alert_bps
    scope = f" in {currency}" if alert_type is AlertType.CURRENCY_VARIANCE else ""
    message = (
        f"Recognized revenue{scope} is {abs(bps)} bps {_direction(bps)} {baseline_label} "
        f"({format_minor_units(variance_cents, currency)}; threshold {limit} bps)"
    )
    if bps > 0:
        action = f"Check for revenue recognized ahead of {baseline_label} or missing captures."
    else:
        action = f"Check for {baseline_label} awaiting recognition or schedules stuck in pending."
    return Alert(
        type=alert_type,
        severity=severity,
        message=message,
        suggested_action=action,
        details={
            "currency": currency,
            "variance_cents": variance_cents,
            "variance_bps": bps,
            "baseline_cents": baseline_cents,
            "recognized_cents": recognized_cents,
            "threshold_bps": limit,
        },
    )


def _negative_deferred_alert(deferred_cents: int, currency: str, scoped: bool) -> Alert:
    scope = f" in {currency}" if scoped else ""
    return Alert(
        type=AlertType.DEFERRED_BALANCE_NEGATIVE,
        severity=Severity.HIGH,
        message=(
            f"Deferred revenue balance{scope} is negative "
            f"({format_minor_units(deferred_cents, currency)})"
        ),
        suggested_action=(
            "Audit recent refunds and reversals; a schedule was reduced below "
            "its recognized amount."
        ),
        details={
            "currency": currency,
            "deferred_cents": deferred_cents,
            "scope": "currency" if scoped else "tenant",
        },
    )


def evaluate_variance(
    totals: Iterable[CurrencyTotals],
    thresholds: Thresholds,
    reporting_currency: str = DEFAULT_CURRENCY,
) -> VarianceReport:
    """
    Evaluate a tenant's per-currency totals.

    Blended figures sum across currencies; the breakdown keeps them apart
    and is ordered by |variance| descending, then currency code.
    """
    per_currency = sorted(totals, key=lambda t: t.currency)
    floor = thresholds.minimum_invoiced_cents_floor

    invoiced = sum(t.invoiced_cents for t in per_currency)
    usage = sum(t.usage_cents for t in per_currency)
    recognized = sum(t.recognized_cents for t in per_currency)
    deferred = sum(t.deferred_cents for t in per_currency)
    currency = per_currency[0].currency if len(per_currency) == 1 else reporting_currency

    variance = recognized - invoiced
    bps = variance_bps(variance, invoiced, floor)
    ratio = (
        (Decimal(variance) / Decimal(invoiced)).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
        if invoiced > 0
        else Decimal("0")
    )

    severity = Severity.NORMAL
    alerts: list[Alert] = []

    invoiced_severity = classify_bps(bps, thresholds)
    severity = escalate(severity, invoiced_severity)
    if invoiced_severity.rank >= Severity.MEDIUM.rank:
        alerts.append(
            _variance_alert(
                AlertType.RECOGNIZED_VS_INVOICED, invoiced_severity, bps, variance,
                "invoiced totals", invoiced, recognized, currency, thresholds,
            )
        )

    usage_variance = recognized - usage
    usage_bps: int | None = None
    if usage > 0:
        usage_bps = variance_bps(usage_variance, usage, floor)
        usage_severity = classify_bps(usage_bps, thresholds)
        severity = escalate(severity, usage_severity)
        if usage_severity.rank >= Severity.MEDIUM.rank:
            alerts.append(
                _variance_alert(
                    AlertType.RECOGNIZED_VS_USAGE, usage_severity, usage_bps, usage_variance,
                    "usage totals", usage, recognized, currency, thresholds,
                )
            )

    if deferred < 0:
        severity = Severity.HIGH
        alerts.append(_negative_deferred_alert(deferred, currency, scoped=False))

    if len(per_currency) > 1:
        for totals_row in per_currency:
            if totals_row.deferred_cents < 0:
                severity = Severity.HIGH
                alerts.append(
                    _negative_deferred_alert(totals_row.deferred_cents, totals_row.currency, scoped=True)
                )

        for totals_row in per_currency:
            row_bps = variance_bps(totals_row.variance_cents, totals_row.invoiced_cents, floor)
            row_severity = classify_bps(row_bps, thresholds)
            if row_severity.rank >= Severity.MEDIUM.rank:
                severity = escalate(severity, row_severity)
                alerts.append(
                    _variance_alert(
                        AlertType.CURRENCY_VARIANCE, row_severity, row_bps, totals_row.variance_cents,
                        "invoiced totals", totals_row.invoiced_cents, totals_row.recognized_cents,
                        totals_row.currency, thresholds,
                    )
                )

    breakdown = tuple(
        row.to_dict(floor)
        for row in sorted(per_currency, key=lambda t: (-abs(t.variance_cents), t.currency))
    )
    alert_dicts = [alert.to_dict() for alert in alerts]

    return VarianceReport(
        invoiced_cents=invoiced,
        usage_cents=usage,
        recognized_cents=recognized,
        deferred_cents=deferred,
        variance_cents=variance,
        variance_ratio=ratio,
        variance_bps=bps,
        usage_variance_cents=usage_variance,
        usage_variance_bps=usage_bps,
        severity=severity,
        alerts=tuple(alerts),
        alert_digest=alert_digest(alert_dicts),
        currency_breakdown=breakdown,
    )


def merge_currency_totals(
    invoiced: Mapping[str, int],
    usage: Mapping[str, int],
    recognized: Mapping[str, int],
    deferred: Mapping[str, int],
) -> list[CurrencyTotals]:
    """Join per-currency sums into ``CurrencyTotals`` rows."""
    currencies = sorted(set(invoiced) | set(usage) | set(recognized) | set(deferred))
    return [
        CurrencyTotals(
            currency=code,
            invoiced_cents=int(invoiced.get(code, 0)),
            usage_cents=int(usage.get(code, 0)),
            recognized_cents=int(recognized.get(code, 0)),
            deferred_cents=int(deferred.get(code, 0)),
        )
        for code in currencies
    ]
