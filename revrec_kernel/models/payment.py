"""
Captured payment intents.

The payment gateway integration owns this table; the revenue engine
records each capture it handles so reconciliation can total invoiced
amounts per tenant without reaching into gateway-specific storage.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from revrec_kernel.db.base import TimestampedBase, UTCDateTime

CAPTURED_PAYMENT_STATUSES = ("succeeded", "captured")


class PaymentIntentModel(TimestampedBase):
    __tablename__ = "payment_intents"

    __table_args__ = (
        Index("idx_payment_tenant_captured", "tenant_id", "captured_at"),
    )

    payment_intent_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    public_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="global")
    status: Mapped[str] = mapped_column(String(20), default="succeeded")
    amount_total_cents: Mapped[int] = mapped_column(default=0)
    currency: Mapped[str] = mapped_column(String(3), default="GBP")
    captured_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
