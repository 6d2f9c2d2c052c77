"""
Revenue schedules: how much of a captured line item has moved from
deferred to recognized revenue, and when.

Invariants enforced (checked on every INSERT and UPDATE flush):
    - 0 <= recognized_amount_cents <= amount_cents
    - status == recognized  =>  recognized_amount_cents == amount_cents

Schedules are never deleted; amendments append to the ``adjustments``
log (see ``revrec_kernel.domain.records.ScheduleAdjustment``).
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, event
from sqlalchemy.orm import Mapped, mapped_column

from revrec_kernel.db.base import TimestampedBase, UTCDateTime, UUIDString
from revrec_kernel.domain.records import ScheduleAdjustment, append_record, decode_records
from revrec_kernel.exceptions import ImmutabilityViolationError, ScheduleBoundViolationError


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RECOGNIZED = "recognized"


class RevenueScheduleModel(TimestampedBase):
    __tablename__ = "revenue_schedules"

    __table_args__ = (
        Index("idx_schedule_tenant_status_end", "tenant_id", "status", "recognition_end"),
        Index("idx_schedule_payment", "payment_intent_id"),
        Index("idx_schedule_tenant_recognized_at", "tenant_id", "recognized_at"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="global")
    payment_intent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    catalog_item_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("catalog_items.id"), nullable=True
    )
    usage_record_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("usage_records.id"), nullable=True
    )
    product_code: Mapped[str] = mapped_column(String(80), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ScheduleStatus.PENDING.value)
    recognition_method: Mapped[str] = mapped_column(String(20), nullable=False)
    recognition_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    recognition_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    amount_cents: Mapped[int] = mapped_column(default=0)
    recognized_amount_cents: Mapped[int] = mapped_column(default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    revenue_account: Mapped[str] = mapped_column(String(120), nullable=False)
    deferred_revenue_account: Mapped[str] = mapped_column(String(120), nullable=False)
    recognized_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    adjustments: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    @property
    def open_amount_cents(self) -> int:
        """Amount not yet recognized."""
        return max(0, self.amount_cents - self.recognized_amount_cents)

    @property
    def adjustment_log(self) -> list[ScheduleAdjustment]:
        return decode_records(self.adjustments)

    def append_adjustment(self, adjustment: ScheduleAdjustment) -> None:
        self.adjustments = append_record(self.adjustments, adjustment)

    def check_bounds(self) -> None:
        """Raise ScheduleBoundViolationError if the row breaks its invariants."""
        recognized = self.recognized_amount_cents or 0
        amount = self.amount_cents or 0
        if recognized < 0 or recognized > amount:
            raise ScheduleBoundViolationError(str(self.id), amount, recognized)
        if self.status == ScheduleStatus.RECOGNIZED.value and recognized != amount:
            raise ScheduleBoundViolationError(str(self.id), amount, recognized)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "tenant_id": self.tenant_id,
            "payment_intent_id": self.payment_intent_id,
            "catalog_item_id": str(self.catalog_item_id) if self.catalog_item_id else None,
            "usage_record_id": str(self.usage_record_id) if self.usage_record_id else None,
            "product_code": self.product_code,
            "status": self.status,
            "recognition_method": self.recognition_method,
            "recognition_start": self.recognition_start.isoformat(),
            "recognition_end": self.recognition_end.isoformat(),
            "amount_cents": self.amount_cents,
            "recognized_amount_cents": self.recognized_amount_cents,
            "currency": self.currency,
            "revenue_account": self.revenue_account,
            "deferred_revenue_account": self.deferred_revenue_account,
            "recognized_at": self.recognized_at.isoformat() if self.recognized_at else None,
            "metadata": {**(self.metadata_ or {}), "adjustments": list(self.adjustments or [])},
        }


def _check_schedule_bounds(mapper, connection, target: RevenueScheduleModel) -> None:
    target.check_bounds()


def _block_schedule_delete(mapper, connection, target: RevenueScheduleModel) -> None:
    raise ImmutabilityViolationError(
        entity_type="RevenueSchedule",
        entity_id=str(target.id),
        reason="Revenue schedules are amended through adjustments, never deleted",
    )


event.listen(RevenueScheduleModel, "before_insert", _check_schedule_bounds)
event.listen(RevenueScheduleModel, "before_update", _check_schedule_bounds)
event.listen(RevenueScheduleModel, "before_delete", _block_schedule_delete)
