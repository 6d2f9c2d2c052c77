"""
Usage ingestion and usage-to-payment linkage.

``record_usage`` is idempotent on ``external_reference``: a replayed event
updates the stored record instead of duplicating it.  At payment capture,
line items may reference usage records (``metadata.usage_record_ids`` or
``metadata.usage_external_references``); those records are stamped with
the payment and ``processed_at``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from revrec_config.settings import RecognitionSettings
from revrec_kernel import metrics
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.logging_config import get_logger
from revrec_kernel.models import UsageRecordModel
from revrec_kernel.store import Store
from revrec_modules.revenue.models import UsageEvent

logger = get_logger("modules.revenue.usage")


class UsageRecorder:
    def __init__(
        self,
        store: Store,
        clock: Clock | None = None,
        settings: RecognitionSettings | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings or RecognitionSettings()

    def record_usage(self, event: UsageEvent | Mapping[str, Any]) -> UsageRecordModel:
        """
        Persist one usage event.

        Raises MissingIdentifierError when ``account_reference`` or the
        product code is absent.  On a degraded store the returned record
        is not persisted and its ``id`` is None.
        """
        if not isinstance(event, UsageEvent):
            event = UsageEvent.from_event(event, self._settings.default_currency)

        fields = {
            "tenant_id": event.tenant_id,
            "catalog_item_id": event.catalog_item_id,
            "product_code": event.product_code,
            "account_reference": event.account_reference,
            "usage_date": event.usage_date or self._clock.now(),
            "quantity": event.quantity,
            "unit_amount_cents": event.unit_amount_cents,
            "amount_cents": event.amount_cents,
            "currency": event.currency,
            "source": event.source,
            "external_reference": event.external_reference,
            "payment_intent_id": event.payment_intent_id,
            "metadata_": dict(event.metadata),
        }

        if not self._store.available:
            logger.debug(
                "usage_recorded_without_store",
                extra={"tenant_id": event.tenant_id, "product_code": event.product_code},
            )
            return UsageRecordModel(**fields)

        with self._store.transaction("record_usage") as session:
            record = None
            if event.external_reference:
                record = session.execute(
                    select(UsageRecordModel).where(
                        UsageRecordModel.external_reference == event.external_reference
                    )
                ).scalar_one_or_none()
            if record is None:
                record = UsageRecordModel(**fields)
                session.add(record)
                replayed = False
            else:
                for key, value in fields.items():
                    if key != "payment_intent_id" or value is not None:
                        setattr(record, key, value)
                replayed = True
            session.flush()

        if not replayed:
            metrics.record_usage(event.product_code, event.source, event.currency, event.amount_cents)
        logger.info(
            "usage_recorded",
            extra={
                "tenant_id": event.tenant_id,
                "product_code": event.product_code,
                "amount_cents": event.amount_cents,
                "external_reference": event.external_reference,
                "replayed": replayed,
            },
        )
        return record


def link_usage_records(
    session: Session,
    *,
    tenant_id: str,
    payment_intent_id: str,
    usage_record_ids: Iterable[Any],
    external_references: Iterable[str],
    processed_at: datetime,
) -> list[UsageRecordModel]:
    """Mark referenced usage records as consumed by ``payment_intent_id``."""
    linked: list[UsageRecordModel] = []
    seen: set[UUID] = set()

    for raw_id in usage_record_ids:
        if not raw_id:
            continue
        try:
            record_id = UUID(str(raw_id))
        except ValueError:
            logger.warning("usage_record_id_invalid", extra={"usage_record_id": str(raw_id)})
            continue
        record = session.get(UsageRecordModel, record_id)
        if record is None:
            logger.warning("usage_record_not_found", extra={"usage_record_id": str(record_id)})
            continue
        if record.tenant_id != tenant_id:
            logger.warning(
                "usage_record_tenant_mismatch",
                extra={"usage_record_id": str(record_id), "record_tenant_id": record.tenant_id},
            )
            continue
        linked.append(record)
        seen.add(record.id)

    refs = [ref for ref in external_references if ref]
    if refs:
        rows = session.execute(
            select(UsageRecordModel)
            .where(
                UsageRecordModel.tenant_id == tenant_id,
                UsageRecordModel.external_reference.in_(refs),
            )
            .order_by(UsageRecordModel.usage_date)
        ).scalars()
        linked.extend(record for record in rows if record.id not in seen)

    for record in linked:
        record.payment_intent_id = payment_intent_id
        record.processed_at = processed_at
    return linked
