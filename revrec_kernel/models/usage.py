"""Usage records: metered consumption ingested ahead of billing."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from revrec_kernel.db.base import TimestampedBase, UTCDateTime, UUIDString


class UsageRecordModel(TimestampedBase):
    """
    One usage observation.

    Idempotent on ``external_reference``; ``processed_at`` is set once the
    record is consumed by a revenue schedule at payment capture.
    """

    __tablename__ = "usage_records"

    __table_args__ = (
        Index("idx_usage_tenant_date", "tenant_id", "usage_date"),
        Index("idx_usage_payment", "payment_intent_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="global")
    catalog_item_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("catalog_items.id"), nullable=True
    )
    product_code: Mapped[str] = mapped_column(String(80), nullable=False)
    account_reference: Mapped[str] = mapped_column(String(120), nullable=False)
    usage_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=Decimal("0"))
    unit_amount_cents: Mapped[int] = mapped_column(default=0)
    amount_cents: Mapped[int] = mapped_column(default=0)
    currency: Mapped[str] = mapped_column(String(3), default="GBP")
    source: Mapped[str] = mapped_column(String(80), default="manual")
    external_reference: Mapped[str | None] = mapped_column(
        String(120), unique=True, nullable=True
    )
    payment_intent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "tenant_id": self.tenant_id,
            "catalog_item_id": str(self.catalog_item_id) if self.catalog_item_id else None,
            "product_code": self.product_code,
            "account_reference": self.account_reference,
            "usage_date": self.usage_date.isoformat() if self.usage_date else None,
            "quantity": str(self.quantity),
            "unit_amount_cents": self.unit_amount_cents,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "source": self.source,
            "external_reference": self.external_reference,
            "payment_intent_id": self.payment_intent_id,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "metadata": dict(self.metadata_ or {}),
        }
