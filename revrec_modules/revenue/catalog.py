"""
Module: revrec_modules.revenue.catalog
Responsibility:
    Map a captured line item to the catalog item carrying its recognition
    policy, auto-provisioning unknown products, and the admin catalog
    operations (upsert, list).

Resolution order (tenant-scoped): ``metadata.catalog_item_code``,
``metadata.product_code``, line item id, line item name.  The first
candidate code also names an auto-provisioned item.

Auto-provisioned items default to ``deferred`` recognition for 365 days
on annual billing and 30 days otherwise, and carry
``metadata.provisioned_from_payment = True`` for later review.

Without a session (degraded store) the resolver returns a transient
``CatalogItemModel`` whose ``id`` is None; callers must tolerate it.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from revrec_config.settings import RecognitionSettings
from revrec_kernel import metrics
from revrec_kernel.exceptions import MissingIdentifierError
from revrec_kernel.logging_config import get_logger
from revrec_kernel.models import CatalogItemModel, CatalogStatus, RecognitionMethod
from revrec_kernel.store import Store
from revrec_modules.revenue.helpers import (
    coerce_cents,
    normalise_currency,
    normalise_product_code,
    normalise_tenant_id,
)
from revrec_modules.revenue.models import LineItem
from revrec_modules.revenue.planner import parse_method

logger = get_logger("modules.revenue.catalog")

_UPSERT_FIELDS = (
    "name",
    "description",
    "pricing_model",
    "billing_interval",
    "revenue_recognition_method",
    "recognition_duration_days",
    "unit_amount_cents",
    "currency",
    "usage_metric",
    "revenue_account",
    "deferred_revenue_account",
    "status",
)


def candidate_codes(item: LineItem) -> list[str]:
    raw = [
        item.metadata.get("catalog_item_code"),
        item.metadata.get("product_code"),
        item.id,
        item.name,
    ]
    codes = []
    for value in raw:
        code = normalise_product_code(value)
        if code and code not in codes:
            codes.append(code)
    return codes


def refresh_catalog_metrics(session: Session) -> None:
    rows = session.execute(
        select(CatalogItemModel.status, func.count()).group_by(CatalogItemModel.status)
    ).all()
    metrics.set_catalog_counts({status: count for status, count in rows})


class CatalogResolver:
    """Finds or provisions the catalog item for a captured line item."""

    def __init__(self, store: Store, settings: RecognitionSettings | None = None):
        self._store = store
        self._settings = settings or RecognitionSettings()

    def resolve(self, session: Session | None, tenant_id: str, item: LineItem) -> CatalogItemModel:
        """
        Return the catalog item for ``item``.

        With a session the lookup and any auto-provisioning happen inside
        the caller's transaction.  Without one a non-persisted fallback is
        returned.
        """
        codes = candidate_codes(item)
        if session is not None:
            for code in codes:
                found = session.execute(
                    select(CatalogItemModel).where(
                        CatalogItemModel.tenant_id == tenant_id,
                        CatalogItemModel.product_code == code,
                    )
                ).scalar_one_or_none()
                if found is not None:
                    return found

        provisioned = self._provision(tenant_id, item, codes[0] if codes else "auto-item")
        if session is None:
            return provisioned

        session.add(provisioned)
        session.flush()
        logger.info(
            "catalog_item_auto_provisioned",
            extra={
                "tenant_id": tenant_id,
                "product_code": provisioned.product_code,
                "recognition_method": provisioned.revenue_recognition_method,
            },
        )
        return provisioned

    def _provision(self, tenant_id: str, item: LineItem, product_code: str) -> CatalogItemModel:
        meta = item.metadata
        method = (
            parse_method(meta.get("revenue_recognition_method")) or RecognitionMethod.DEFERRED
        ).value
        billing_interval = meta.get("billing_interval") or "monthly"
        if meta.get("recognition_duration_days") is not None:
            duration = coerce_cents(meta.get("recognition_duration_days"))
        elif billing_interval == "annual":
            duration = self._settings.annual_duration_days
        else:
            duration = self._settings.default_duration_days

        return CatalogItemModel(
            tenant_id=tenant_id,
            product_code=product_code,
            name=item.name or "Unclassified item",
            description=meta.get("description")
            or "Auto-provisioned from payment capture. Review configuration for accurate revenue policies.",
            pricing_model=meta.get("pricing_model") or "flat_fee",
            billing_interval=billing_interval,
            revenue_recognition_method=method,
            recognition_duration_days=0 if method == RecognitionMethod.IMMEDIATE.value else duration,
            unit_amount_cents=item.unit_amount_cents,
            currency=item.currency,
            usage_metric=meta.get("usage_metric"),
            revenue_account=meta.get("revenue_account") or self._settings.default_revenue_account,
            deferred_revenue_account=meta.get("deferred_revenue_account")
            or self._settings.default_deferred_revenue_account,
            status=(
                CatalogStatus.DRAFT.value
                if meta.get("auto_activate") is False
                else CatalogStatus.ACTIVE.value
            ),
            metadata_={
                **meta,
                "provisioned_from_payment": True,
                "original_line_item_id": item.id,
            },
        )

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def upsert_catalog_item(self, payload: Mapping[str, Any]) -> CatalogItemModel:
        """Create or update a catalog item keyed on (tenant, product code)."""
        product_code = normalise_product_code(payload.get("product_code"))
        if product_code is None:
            raise MissingIdentifierError("product_code", "create or update a catalog item")
        tenant_id = normalise_tenant_id(payload.get("tenant_id"))

        values = {key: payload[key] for key in _UPSERT_FIELDS if key in payload}
        if "currency" in values:
            values["currency"] = normalise_currency(values["currency"], self._settings.default_currency)
        if "revenue_recognition_method" in values:
            values["revenue_recognition_method"] = RecognitionMethod(
                values["revenue_recognition_method"]
            ).value
        if "status" in values:
            values["status"] = CatalogStatus(values["status"]).value

        with self._store.transaction("upsert_catalog_item") as session:
            existing = session.execute(
                select(CatalogItemModel).where(
                    CatalogItemModel.tenant_id == tenant_id,
                    CatalogItemModel.product_code == product_code,
                )
            ).scalar_one_or_none()
            if existing is None:
                record = CatalogItemModel(
                    tenant_id=tenant_id,
                    product_code=product_code,
                    name=values.pop("name", None) or product_code,
                    revenue_account=values.pop("revenue_account", None)
                    or self._settings.default_revenue_account,
                    deferred_revenue_account=values.pop("deferred_revenue_account", None)
                    or self._settings.default_deferred_revenue_account,
                    metadata_=dict(payload.get("metadata") or {}),
                    **values,
                )
                session.add(record)
                created = True
            else:
                record = existing
                for key, value in values.items():
                    setattr(record, key, value)
                if "metadata" in payload:
                    record.metadata_ = {**(record.metadata_ or {}), **(payload.get("metadata") or {})}
                created = False
            session.flush()
            refresh_catalog_metrics(session)

        logger.info(
            "catalog_item_upserted",
            extra={"tenant_id": tenant_id, "product_code": product_code, "was_created": created},
        )
        return record

    def list_catalog_items(
        self,
        tenant_id: str | None = None,
        status: str | None = None,
    ) -> list[CatalogItemModel]:
        if not self._store.available:
            return []
        with self._store.reader("list_catalog_items") as session:
            query = select(CatalogItemModel).order_by(
                CatalogItemModel.tenant_id, CatalogItemModel.product_code
            )
            if tenant_id is not None:
                query = query.where(CatalogItemModel.tenant_id == normalise_tenant_id(tenant_id))
            if status is not None:
                query = query.where(CatalogItemModel.status == status)
            return list(session.execute(query).scalars())
