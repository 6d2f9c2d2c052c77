"""
Module: revrec_modules.revenue.models
Responsibility:
    Frozen DTOs for the revenue recognition lifecycle: inbound events
    (payment capture, refund, usage), recognition plans, and the results
    returned to collaborators.

Architecture:
    revrec_modules layer -- pure data definitions with ZERO I/O.
    Inbound events are parsed from plain mappings with ``from_event``;
    parsing applies the normalisation rules in ``helpers`` so the rest of
    the module only ever sees clean values.

Invariants:
    - Money is integer cents.
    - Timestamps are timezone-aware UTC.
    - ``RefundResult`` conserves the refund amount:
      recognized + deferred + unapplied == refund_amount_cents.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from revrec_config.settings import DEFAULT_CURRENCY
from revrec_kernel.exceptions import MissingIdentifierError
from revrec_kernel.models import RecognitionMethod, ScheduleStatus
from revrec_modules.revenue.helpers import (
    coerce_cents,
    coerce_datetime,
    normalise_currency,
    normalise_line_items,
    normalise_product_code,
    normalise_tenant_id,
    to_decimal,
)


@dataclass(frozen=True)
class LineItem:
    id: str
    name: str
    quantity: Decimal
    unit_amount_cents: int
    total_cents: int | None
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)
    synthetic: bool = False

    @classmethod
    def from_normalised(cls, data: Mapping[str, Any]) -> LineItem:
        return cls(
            id=data["id"],
            name=data["name"],
            quantity=data["quantity"],
            unit_amount_cents=data["unit_amount"],
            total_cents=data["total"],
            currency=data["currency"],
            metadata=dict(data["metadata"]),
            synthetic=data.get("synthetic", False),
        )


@dataclass(frozen=True)
class PaymentCapture:
    """
    A captured payment as delivered by the payment collaborator.

    ``from_event`` accepts ``{id, public_id, status, currency, captured_at,
    amount_total_cents, metadata: {tenant_id, items: [...]}}``.
    """

    id: str
    public_id: str | None
    tenant_id: str
    currency: str
    amount_total_cents: int
    captured_at: datetime | None
    items: tuple[LineItem, ...]
    status: str = "succeeded"
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: Mapping[str, Any], default_currency: str = DEFAULT_CURRENCY) -> PaymentCapture:
        payment_id = event.get("id")
        if not payment_id:
            raise MissingIdentifierError("id", "handle a payment capture")
        metadata = dict(event.get("metadata") or {})
        currency = normalise_currency(event.get("currency"), default_currency)
        amount_total = coerce_cents(event.get("amount_total_cents"))
        tenant_id = normalise_tenant_id(metadata.get("tenant_id") or metadata.get("tenant"))
        items = normalise_line_items(
            metadata.get("items"),
            payment_id=str(payment_id),
            public_id=event.get("public_id"),
            amount_total_cents=amount_total,
            currency=currency,
            metadata={k: v for k, v in metadata.items() if k != "items"},
        )
        return cls(
            id=str(payment_id),
            public_id=event.get("public_id"),
            tenant_id=tenant_id,
            currency=currency,
            amount_total_cents=amount_total,
            captured_at=coerce_datetime(event.get("captured_at")),
            items=tuple(LineItem.from_normalised(item) for item in items),
            status=str(event.get("status") or "succeeded"),
            metadata=metadata,
        )


@dataclass(frozen=True)
class RefundEvent:
    payment_intent_id: str
    amount_cents: int
    currency: str
    tenant_id: str
    processed_at: datetime | None = None
    reason: str | None = None
    refund_reference: str | None = None
    source: str = "unknown"

    @classmethod
    def from_event(cls, event: Mapping[str, Any], default_currency: str = DEFAULT_CURRENCY) -> RefundEvent:
        payment_intent_id = event.get("payment_intent_id")
        if not payment_intent_id:
            raise MissingIdentifierError("payment_intent_id", "process a refund")
        return cls(
            payment_intent_id=str(payment_intent_id),
            amount_cents=coerce_cents(event.get("amount_cents")),
            currency=normalise_currency(event.get("currency"), default_currency),
            tenant_id=normalise_tenant_id(event.get("tenant_id")),
            processed_at=coerce_datetime(event.get("processed_at")),
            reason=event.get("reason"),
            refund_reference=event.get("refund_reference"),
            source=event.get("source") or "unknown",
        )


@dataclass(frozen=True)
class UsageEvent:
    tenant_id: str
    product_code: str
    account_reference: str
    usage_date: datetime | None
    quantity: Decimal
    unit_amount_cents: int
    amount_cents: int
    currency: str
    source: str = "manual"
    external_reference: str | None = None
    payment_intent_id: str | None = None
    catalog_item_id: UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: Mapping[str, Any], default_currency: str = DEFAULT_CURRENCY) -> UsageEvent:
        if not event.get("account_reference"):
            raise MissingIdentifierError("account_reference", "record usage")
        metadata = dict(event.get("metadata") or {})
        product_code = normalise_product_code(event.get("product_code"), metadata.get("product_code"))
        if product_code is None:
            raise MissingIdentifierError("product_code", "record usage")
        quantity = to_decimal(event.get("quantity"))
        unit_amount = coerce_cents(event.get("unit_amount_cents"))
        amount = event.get("amount_cents")
        if amount is None and quantity is not None:
            amount = unit_amount * quantity
        catalog_item_id = event.get("catalog_item_id")
        return cls(
            tenant_id=normalise_tenant_id(event.get("tenant_id")),
            product_code=product_code,
            account_reference=str(event["account_reference"]),
            usage_date=coerce_datetime(event.get("usage_date")),
            quantity=quantity if quantity is not None and quantity >= 0 else Decimal("0"),
            unit_amount_cents=unit_amount,
            amount_cents=coerce_cents(amount),
            currency=normalise_currency(event.get("currency"), default_currency),
            source=event.get("source") or "manual",
            external_reference=event.get("external_reference"),
            payment_intent_id=event.get("payment_intent_id"),
            catalog_item_id=UUID(str(catalog_item_id)) if catalog_item_id else None,
            metadata=metadata,
        )


@dataclass(frozen=True)
class RecognitionPlan:
    """How one captured line item is recognized."""

    method: RecognitionMethod
    status: ScheduleStatus
    amount_cents: int
    recognized_amount_cents: int
    deferred_amount_cents: int
    recognition_start: datetime
    recognition_end: datetime
    recognized_at: datetime | None = None


class CaptureStatus(str, Enum):
    PROCESSED = "processed"
    ALREADY_CAPTURED = "already-captured"
    CONNECTION_UNAVAILABLE = "connection-unavailable"


@dataclass(frozen=True)
class CaptureResult:
    status: CaptureStatus
    payment_intent_id: str
    tenant_id: str
    schedules: tuple[dict[str, Any], ...] = ()
    deferred_balance_cents: int | None = None


@dataclass(frozen=True)
class SweepResult:
    status: str
    processed: int = 0
    amount_cents: int = 0


@dataclass(frozen=True)
class RefundCandidate:
    """The fields of a schedule the refund allocator orders and caps by."""

    schedule_id: UUID
    product_code: str
    status: str
    amount_cents: int
    recognized_amount_cents: int
    recognized_at: datetime | None
    recognition_start: datetime | None


@dataclass(frozen=True)
class RefundAdjustment:
    schedule_id: UUID
    product_code: str
    amount_cents: int


class RefundStatus(str, Enum):
    IGNORED = "ignored"
    CONNECTION_UNAVAILABLE = "connection-unavailable"
    NO_SCHEDULES = "no-schedules"
    PROCESSED = "processed"


@dataclass(frozen=True)
class RefundResult:
    status: RefundStatus
    refund_amount_cents: int
    recognized: tuple[RefundAdjustment, ...] = ()
    deferred: tuple[RefundAdjustment, ...] = ()
    unapplied_cents: int = 0

    @property
    def recognized_reduction_cents(self) -> int:
        return sum(adj.amount_cents for adj in self.recognized)

    @property
    def deferred_reduction_cents(self) -> int:
        return sum(adj.amount_cents for adj in self.deferred)


@dataclass(frozen=True)
class RevenueSummary:
    recognized_cents: int = 0
    deferred_cents: int = 0
    released_cents: int = 0
    refund_recognized_cents: int = 0
    refund_deferred_cents: int = 0

    @property
    def refunded_cents(self) -> int:
        return self.refund_recognized_cents + self.refund_deferred_cents

    @property
    def net_recognized_cents(self) -> int:
        return self.recognized_cents - self.refund_recognized_cents


@dataclass(frozen=True)
class RevenueOverview:
    tenant_id: str
    summary: RevenueSummary
    deferred_revenue_cents: int
    recognized_revenue_cents: int
    generated_at: datetime
