"""
Module: revrec_modules.revenue.helpers
Responsibility:
    Pure normalisation functions shared by the revenue module: tenant and
    product code normalisation, cents coercion, timestamp parsing and the
    line-item breakdown of a captured payment.

Architecture:
    revrec_modules layer -- pure functions with ZERO I/O.

Invariants:
    - Tenant ids are lower-case and never empty (``"global"`` default).
    - Product codes only contain ``[a-z0-9_.-]``.
    - Cents are non-negative integers; anything unusable becomes the
      fallback, never a float.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

DEFAULT_TENANT = "global"

_PRODUCT_CODE_INVALID = re.compile(r"[^a-z0-9_.-]")


def normalise_tenant_id(tenant_id: Any) -> str:
    if tenant_id is None:
        return DEFAULT_TENANT
    return str(tenant_id).strip().lower() or DEFAULT_TENANT


def normalise_product_code(value: Any, fallback: Any = None) -> str | None:
    """Lower-case ``value`` (or ``fallback``) and replace disallowed characters with '-'."""
    source = value if value is not None else fallback
    if source is None or str(source).strip() == "":
        return None
    return _PRODUCT_CODE_INVALID.sub("-", str(source).strip().lower())


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def coerce_cents(value: Any, fallback: int = 0) -> int:
    """Round ``value`` to whole cents; negatives and garbage give ``fallback``."""
    number = to_decimal(value)
    if number is None or number < 0:
        return fallback
    return round_cents(number)


def coerce_datetime(value: Any, default: datetime | None = None) -> datetime | None:
    """
    Parse ``value`` into an aware UTC datetime.

    Accepts datetimes, dates (midnight UTC) and ISO-8601 strings
    (including a trailing ``Z``).  Naive values are taken as UTC.
    """
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Cannot parse datetime from {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalise_currency(value: Any, default: str) -> str:
    if value is None or str(value).strip() == "":
        return default.upper()
    return str(value).strip().upper()


def normalise_line_items(
    items: Sequence[Mapping[str, Any]] | None,
    *,
    payment_id: str,
    public_id: str | None,
    amount_total_cents: int,
    currency: str,
    metadata: Mapping[str, Any],
) -> list[dict[str, Any]]:
    """
    Normalise a payment's line-item breakdown.

    Without a breakdown the whole payment becomes one synthetic line item
    carrying the payment's metadata.  Otherwise quantity defaults to 1,
    ``unit_amount`` is derived from ``total / quantity`` when missing and
    ids default to ``line-N``.
    """
    if not items:
        return [
            {
                "id": metadata.get("entity_id") or public_id or payment_id or "unclassified",
                "name": metadata.get("entity_name") or "Unclassified item",
                "quantity": Decimal("1"),
                "unit_amount": amount_total_cents,
                "total": amount_total_cents,
                "currency": currency,
                "metadata": dict(metadata),
                "synthetic": True,
            }
        ]

    normalised = []
    for index, item in enumerate(items, start=1):
        quantity = to_decimal(item.get("quantity"))
        if quantity is None or quantity <= 0:
            quantity = Decimal("1")
        total = item.get("total")
        unit_amount = item.get("unit_amount")
        if unit_amount is None:
            total_value = to_decimal(total) or Decimal("0")
            unit_amount = coerce_cents(total_value / quantity)
        normalised.append(
            {
                "id": str(item.get("id") or f"line-{index}"),
                "name": item.get("name") or f"Line item {index}",
                "quantity": quantity,
                "unit_amount": coerce_cents(unit_amount),
                "total": coerce_cents(total) if total is not None else None,
                "currency": normalise_currency(item.get("currency"), currency),
                "metadata": dict(item.get("metadata") or {}),
                "synthetic": False,
            }
        )
    return normalised
