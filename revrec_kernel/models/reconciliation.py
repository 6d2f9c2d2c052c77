"""
Reconciliation runs: one row per tenant per job cycle.

Rows are retained for trend and delta comparison.  The computed figures
never change after insert; only the acknowledgement and notification
logs grow.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from revrec_kernel.db.base import TimestampedBase, UTCDateTime
from revrec_kernel.domain.records import (
    AlertAcknowledgement,
    NotificationRecord,
    append_record,
    decode_records,
)


class RunStatus(str, Enum):
    COMPLETED = "completed"
    ATTENTION = "attention"
    SKIPPED = "skipped"


class ReconciliationRunModel(TimestampedBase):
    __tablename__ = "reconciliation_runs"

    __table_args__ = (
        Index("idx_recon_tenant_created", "tenant_id", "created_at"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="global")
    window_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    window_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), default="normal")
    invoiced_cents: Mapped[int] = mapped_column(default=0)
    usage_cents: Mapped[int] = mapped_column(default=0)
    recognized_cents: Mapped[int] = mapped_column(default=0)
    deferred_cents: Mapped[int] = mapped_column(default=0)
    variance_cents: Mapped[int] = mapped_column(default=0)
    variance_ratio: Mapped[Decimal] = mapped_column(Numeric(14, 6), default=Decimal("0"))
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    acknowledgements: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    notifications: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    @property
    def alerts(self) -> list[dict[str, Any]]:
        return list((self.metadata_ or {}).get("alerts") or [])

    @property
    def alert_digest(self) -> str | None:
        return (self.metadata_ or {}).get("alert_digest")

    @property
    def acknowledgement_log(self) -> list[AlertAcknowledgement]:
        return decode_records(self.acknowledgements)

    @property
    def notification_log(self) -> list[NotificationRecord]:
        return decode_records(self.notifications)

    def append_acknowledgement(self, record: AlertAcknowledgement) -> None:
        self.acknowledgements = append_record(self.acknowledgements, record)

    def append_notification(self, record: NotificationRecord) -> None:
        self.notifications = append_record(self.notifications, record)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "tenant_id": self.tenant_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "status": self.status,
            "invoiced_cents": self.invoiced_cents,
            "usage_cents": self.usage_cents,
            "recognized_cents": self.recognized_cents,
            "deferred_cents": self.deferred_cents,
            "variance_cents": self.variance_cents,
            "variance_ratio": float(self.variance_ratio or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "metadata": {
                **(self.metadata_ or {}),
                "severity": self.severity,
                "acknowledgements": list(self.acknowledgements or []),
                "notifications": list(self.notifications or []),
            },
        }
