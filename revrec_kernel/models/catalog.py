"""
Catalog items: the recognition policy attached to a product code.

Never hard-deleted; admin upserts mutate in place and auto-provisioned
rows carry ``metadata.provisioned_from_payment`` for later review.
"""

from enum import Enum
from typing import Any

from sqlalchemy import JSON, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from revrec_kernel.db.base import TimestampedBase


class RecognitionMethod(str, Enum):
    IMMEDIATE = "immediate"
    DEFERRED = "deferred"
    SCHEDULE = "schedule"


class CatalogStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"


class CatalogItemModel(TimestampedBase):
    """A product and its revenue recognition policy, unique per tenant."""

    __tablename__ = "catalog_items"

    __table_args__ = (
        UniqueConstraint("tenant_id", "product_code", name="uq_catalog_tenant_code"),
        Index("idx_catalog_tenant_status", "tenant_id", "status"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="global")
    product_code: Mapped[str] = mapped_column(String(80), nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    pricing_model: Mapped[str] = mapped_column(String(20), default="flat_fee")
    billing_interval: Mapped[str] = mapped_column(String(20), default="monthly")
    revenue_recognition_method: Mapped[str] = mapped_column(
        String(20), default=RecognitionMethod.DEFERRED.value
    )
    recognition_duration_days: Mapped[int] = mapped_column(Integer, default=0)
    unit_amount_cents: Mapped[int] = mapped_column(default=0)
    currency: Mapped[str] = mapped_column(String(3), default="GBP")
    usage_metric: Mapped[str | None] = mapped_column(String(120), nullable=True)
    revenue_account: Mapped[str] = mapped_column(String(120), nullable=False)
    deferred_revenue_account: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=CatalogStatus.ACTIVE.value)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "tenant_id": self.tenant_id,
            "product_code": self.product_code,
            "name": self.name,
            "description": self.description,
            "pricing_model": self.pricing_model,
            "billing_interval": self.billing_interval,
            "revenue_recognition_method": self.revenue_recognition_method,
            "recognition_duration_days": self.recognition_duration_days,
            "unit_amount_cents": self.unit_amount_cents,
            "currency": self.currency,
            "usage_metric": self.usage_metric,
            "revenue_account": self.revenue_account,
            "deferred_revenue_account": self.deferred_revenue_account,
            "status": self.status,
            "metadata": dict(self.metadata_ or {}),
        }
