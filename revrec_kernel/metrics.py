"""
Prometheus metrics for revenue recognition and reconciliation.

All collectors live on a dedicated ``REGISTRY`` so embedding processes
decide whether to expose them, and tests read values back with
``REGISTRY.get_sample_value``.  Label values are normalised here so
callers pass raw strings.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge

REGISTRY = CollectorRegistry(auto_describe=True)

REVENUE_RECOGNIZED_CENTS = Counter(
    "revrec_revenue_recognized_cents_total",
    "Revenue recognized, in minor units",
    ["product_code", "currency", "method"],
    registry=REGISTRY,
)

REVENUE_REVERSED_CENTS = Counter(
    "revrec_revenue_reversed_cents_total",
    "Recognized revenue reversed by refunds, in minor units",
    ["product_code", "currency", "reason"],
    registry=REGISTRY,
)

DEFERRED_BALANCE_CENTS = Gauge(
    "revrec_deferred_revenue_balance_cents",
    "Current deferred revenue balance per tenant, in minor units",
    ["tenant_id"],
    registry=REGISTRY,
)

USAGE_RECORDED_CENTS = Counter(
    "revrec_usage_recorded_cents_total",
    "Usage value ingested, in minor units",
    ["product_code", "source", "currency"],
    registry=REGISTRY,
)

RECONCILIATION_RUNS = Counter(
    "revrec_reconciliation_runs_total",
    "Reconciliation runs by tenant and severity",
    ["tenant_id", "severity"],
    registry=REGISTRY,
)

ALERT_DISPATCHES = Counter(
    "revrec_alert_dispatches_total",
    "Alert delivery attempts by channel and outcome",
    ["channel", "outcome"],
    registry=REGISTRY,
)

CATALOG_ITEMS = Gauge(
    "revrec_catalog_items",
    "Catalog items by status",
    ["status"],
    registry=REGISTRY,
)


def _label(value: str | None, default: str = "unknown") -> str:
    return str(value).strip().lower() if value else default


def record_revenue_recognized(product_code: str, currency: str, method: str, amount_cents: int) -> None:
    if amount_cents <= 0:
        return
    REVENUE_RECOGNIZED_CENTS.labels(
        product_code=_label(product_code),
        currency=_label(currency),
        method=_label(method),
    ).inc(amount_cents)


def record_revenue_reversed(product_code: str, currency: str, reason: str | None, amount_cents: int) -> None:
    if amount_cents <= 0:
        return
    REVENUE_REVERSED_CENTS.labels(
        product_code=_label(product_code),
        currency=_label(currency),
        reason=_label(reason, "refund"),
    ).inc(amount_cents)


def set_deferred_balance(tenant_id: str, balance_cents: int) -> None:
    DEFERRED_BALANCE_CENTS.labels(tenant_id=_label(tenant_id, "global")).set(balance_cents)


def record_usage(product_code: str, source: str | None, currency: str, amount_cents: int) -> None:
    if amount_cents <= 0:
        return
    USAGE_RECORDED_CENTS.labels(
        product_code=_label(product_code),
        source=_label(source, "manual"),
        currency=_label(currency),
    ).inc(amount_cents)


def record_reconciliation_run(tenant_id: str, severity: str) -> None:
    RECONCILIATION_RUNS.labels(tenant_id=_label(tenant_id, "global"), severity=_label(severity)).inc()


def record_alert_dispatch(channel: str, outcome: str) -> None:
    ALERT_DISPATCHES.labels(channel=_label(channel), outcome=_label(outcome)).inc()


def set_catalog_counts(counts: dict[str, int]) -> None:
    """Replace the catalog gauge with ``counts`` keyed by status."""
    for status in ("draft", "active"):
        CATALOG_ITEMS.labels(status=status).set(counts.get(status, 0))
