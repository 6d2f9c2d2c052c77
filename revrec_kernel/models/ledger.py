"""
Revenue ledger entries -- append-only.

Each schedule transition writes one or more entries; entries are never
updated or deleted (ORM listeners below reject both).  Corrections are
new entries of a reversing type.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String, event
from sqlalchemy.orm import Mapped, mapped_column

from revrec_kernel.db.base import Base, UTCDateTime, UUIDString
from revrec_kernel.exceptions import ImmutabilityViolationError
from revrec_kernel.logging_config import get_logger

logger = get_logger("models.ledger")


class LedgerEntryType(str, Enum):
    DEFERRED = "revenue.deferred"
    RECOGNIZED = "revenue.recognized"
    DEFERRED_RELEASE = "revenue.deferred-release"
    REFUND_RECOGNIZED = "revenue.refund-recognized"
    REFUND_DEFERRED = "revenue.refund-deferred"


class LedgerEntryModel(Base):
    __tablename__ = "revenue_ledger_entries"

    __table_args__ = (
        Index("idx_ledger_payment", "payment_intent_id"),
        Index("idx_ledger_tenant_recorded", "tenant_id", "recorded_at"),
    )

    payment_intent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="global")
    schedule_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    entry_type: Mapped[str] = mapped_column(String(40), nullable=False)
    amount_cents: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "payment_intent_id": self.payment_intent_id,
            "tenant_id": self.tenant_id,
            "schedule_id": str(self.schedule_id) if self.schedule_id else None,
            "entry_type": self.entry_type,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "recorded_at": self.recorded_at.isoformat(),
            "details": dict(self.details or {}),
        }


def _reject_ledger_mutation(operation: str):
    def _listener(mapper, connection, target: LedgerEntryModel) -> None:
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": "LedgerEntry",
                "entity_id": str(target.id),
                "operation": operation,
            },
        )
        raise ImmutabilityViolationError(
            entity_type="LedgerEntry",
            entity_id=str(target.id),
            reason=f"Ledger entries are append-only ({operation} rejected)",
        )

    return _listener


event.listen(LedgerEntryModel, "before_update", _reject_ledger_mutation("UPDATE"))
event.listen(LedgerEntryModel, "before_delete", _reject_ledger_mutation("DELETE"))
