"""
Module: revrec_modules.revenue.planner
Responsibility:
    Turn a catalog policy and a captured line item into a
    ``RecognitionPlan``.  Pure: same inputs, same plan.

Rules:
    immediate  -> recognized = amount, deferred = 0, start = end = captured_at,
                  status recognized.
    schedule   -> with an explicit ``recognition_end`` in the line item
                  metadata: recognized = 0, end = that value verbatim,
                  status pending.  Without one the end date follows the
                  deferred rule but the method stays ``schedule``.
    deferred   -> recognized = 0, end = start + duration days, status
                  pending.  This is also the plan for unknown methods:
                  unclassified revenue is never recognized early.

Line item metadata (``revenue_recognition_method``,
``recognition_duration_days``, ``recognition_start``, ``recognition_end``)
overrides the catalog policy.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from revrec_kernel.models import RecognitionMethod, ScheduleStatus
from revrec_modules.revenue.helpers import coerce_cents, coerce_datetime, round_cents
from revrec_modules.revenue.models import LineItem, RecognitionPlan


@dataclass(frozen=True)
class RecognitionStrategy:
    method: RecognitionMethod
    duration_days: int
    recognition_start: datetime | None
    recognition_end: datetime | None


def parse_method(value: Any) -> RecognitionMethod | None:
    """Case-insensitive method lookup; None for blank or unknown values."""
    try:
        return RecognitionMethod(str(value).strip().lower()) if value else None
    except ValueError:
        return None


def derive_strategy(catalog_item: Any, item_metadata: dict[str, Any]) -> RecognitionStrategy:
    method = (
        parse_method(item_metadata.get("revenue_recognition_method"))
        or parse_method(getattr(catalog_item, "revenue_recognition_method", None))
        or RecognitionMethod.DEFERRED
    )
    duration = item_metadata.get("recognition_duration_days")
    if duration is None:
        duration = getattr(catalog_item, "recognition_duration_days", 0)
    return RecognitionStrategy(
        method=method,
        duration_days=coerce_cents(duration),
        recognition_start=coerce_datetime(item_metadata.get("recognition_start")),
        recognition_end=coerce_datetime(item_metadata.get("recognition_end")),
    )


def line_item_amount(item: LineItem) -> int:
    """``total`` when present, else ``unit_amount * quantity`` rounded to cents."""
    if item.total_cents is not None:
        return item.total_cents
    return max(0, round_cents(item.unit_amount_cents * item.quantity))


def build_plan(
    catalog_item: Any,
    item: LineItem,
    captured_at: datetime | str,
    default_duration_days: int = 30,
) -> RecognitionPlan:
    strategy = derive_strategy(catalog_item, item.metadata)
    amount = line_item_amount(item)
    start = strategy.recognition_start or coerce_datetime(captured_at)

    if strategy.method is RecognitionMethod.IMMEDIATE:
        return RecognitionPlan(
            method=RecognitionMethod.IMMEDIATE,
            status=ScheduleStatus.RECOGNIZED,
            amount_cents=amount,
            recognized_amount_cents=amount,
            deferred_amount_cents=0,
            recognition_start=start,
            recognition_end=start,
            recognized_at=start,
        )

    if strategy.method is RecognitionMethod.SCHEDULE and strategy.recognition_end is not None:
        return RecognitionPlan(
            method=RecognitionMethod.SCHEDULE,
            status=ScheduleStatus.PENDING,
            amount_cents=amount,
            recognized_amount_cents=0,
            deferred_amount_cents=amount,
            recognition_start=start,
            recognition_end=strategy.recognition_end,
        )

    end = strategy.recognition_end or start + timedelta(
        days=strategy.duration_days or default_duration_days
    )
    return RecognitionPlan(
        method=strategy.method,
        status=ScheduleStatus.PENDING,
        amount_cents=amount,
        recognized_amount_cents=0,
        deferred_amount_cents=amount,
        recognition_start=start,
        recognition_end=end,
    )
