"""Reconciliation variance engine."""

from revrec_engines.reconciliation.variance import (
    Alert,
    AlertType,
    CurrencyTotals,
    Severity,
    VarianceReport,
    classify_bps,
    escalate,
    evaluate_variance,
    merge_currency_totals,
    variance_bps,
)

__all__ = [
    "Alert",
    "AlertType",
    "CurrencyTotals",
    "Severity",
    "VarianceReport",
    "classify_bps",
    "escalate",
    "evaluate_variance",
    "merge_currency_totals",
    "variance_bps",
]
