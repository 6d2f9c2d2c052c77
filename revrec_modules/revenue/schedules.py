"""
Module: revrec_modules.revenue.schedules
Responsibility:
    Create revenue schedules at payment capture and advance due schedules
    to ``recognized``, writing the matching ledger entries.

Transaction boundary:
    One store transaction per payment capture and one per sweep.  Ledger
    entries, schedules, usage linkage and the payment row commit or roll
    back together.  Metrics and the deferred balance gauge are published
    only after commit.

Ledger entries:
    capture, deferred amount > 0    -> revenue.deferred
    capture, recognized amount > 0  -> revenue.recognized
    sweep, per schedule             -> revenue.deferred-release + revenue.recognized
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from revrec_config.settings import RecognitionSettings
from revrec_kernel import metrics
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.logging_config import LogContext, get_logger
from revrec_kernel.models import (
    LedgerEntryModel,
    LedgerEntryType,
    PaymentIntentModel,
    RevenueScheduleModel,
    ScheduleStatus,
)
from revrec_kernel.store import Store
from revrec_modules.revenue.catalog import CatalogResolver, refresh_catalog_metrics
from revrec_modules.revenue.helpers import coerce_datetime, normalise_product_code, normalise_tenant_id
from revrec_modules.revenue.models import (
    CaptureResult,
    CaptureStatus,
    LineItem,
    PaymentCapture,
    RecognitionPlan,
    SweepResult,
)
from revrec_modules.revenue.planner import build_plan
from revrec_modules.revenue.selectors import RevenueSelector
from revrec_modules.revenue.usage import link_usage_records

logger = get_logger("modules.revenue.schedules")


def write_ledger_entry(
    session: Session,
    *,
    schedule: RevenueScheduleModel,
    entry_type: LedgerEntryType,
    amount_cents: int,
    recorded_at: datetime,
    currency: str | None = None,
    details: dict[str, Any] | None = None,
) -> LedgerEntryModel:
    entry = LedgerEntryModel(
        payment_intent_id=schedule.payment_intent_id,
        tenant_id=schedule.tenant_id,
        schedule_id=schedule.id,
        entry_type=entry_type.value,
        amount_cents=amount_cents,
        currency=currency or schedule.currency,
        recorded_at=recorded_at,
        details={
            "schedule_id": str(schedule.id),
            "product_code": schedule.product_code,
            "method": schedule.recognition_method,
            **(details or {}),
        },
    )
    session.add(entry)
    return entry


class ScheduleLifecycleManager:
    """Creates, advances and publishes revenue schedules."""

    def __init__(
        self,
        store: Store,
        catalog: CatalogResolver | None = None,
        clock: Clock | None = None,
        settings: RecognitionSettings | None = None,
    ):
        self._store = store
        self._settings = settings or RecognitionSettings()
        self._catalog = catalog or CatalogResolver(store, self._settings)
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def on_payment_captured(self, payment: PaymentCapture | Mapping[str, Any]) -> CaptureResult:
        """
        Create one schedule per line item of a captured payment.

        A payment that already has schedules is not processed twice.  On a
        degraded store the plans are computed against fallback catalog
        items and returned unpersisted with status
        ``connection-unavailable``.
        """
        if not isinstance(payment, PaymentCapture):
            payment = PaymentCapture.from_event(payment, self._settings.default_currency)
        captured_at = payment.captured_at or self._clock.now()

        with LogContext.bind(tenant_id=payment.tenant_id, payment_intent_id=payment.id):
            if not self._store.available:
                schedules = []
                for item in payment.items:
                    catalog_item = self._catalog.resolve(None, payment.tenant_id, item)
                    plan = build_plan(
                        catalog_item, item, captured_at, self._settings.default_duration_days
                    )
                    schedules.append(
                        self._new_schedule(payment, item, catalog_item, plan, None, captured_at).to_dict()
                    )
                logger.warning("payment_capture_not_persisted", extra={"line_items": len(schedules)})
                return CaptureResult(
                    status=CaptureStatus.CONNECTION_UNAVAILABLE,
                    payment_intent_id=payment.id,
                    tenant_id=payment.tenant_id,
                    schedules=tuple(schedules),
                )

            recognized: list[tuple[str, str, str, int]] = []
            with self._store.transaction("on_payment_captured") as session:
                selector = RevenueSelector(session, self._settings.default_currency)
                existing = selector.schedules_for_payment(payment.id)
                if existing:
                    logger.info("payment_already_captured", extra={"schedules": len(existing)})
                    return CaptureResult(
                        status=CaptureStatus.ALREADY_CAPTURED,
                        payment_intent_id=payment.id,
                        tenant_id=payment.tenant_id,
                        schedules=tuple(s.to_dict() for s in existing),
                    )

                self._record_payment(session, payment, captured_at)
                created = []
                for item in payment.items:
                    catalog_item = self._catalog.resolve(session, payment.tenant_id, item)
                    plan = build_plan(catalog_item, item, captured_at, self._settings.default_duration_days)
                    usage = link_usage_records(
                        session,
                        tenant_id=payment.tenant_id,
                        payment_intent_id=payment.id,
                        usage_record_ids=item.metadata.get("usage_record_ids") or [],
                        external_references=item.metadata.get("usage_external_references") or [],
                        processed_at=self._clock.now(),
                    )
                    schedule = self._new_schedule(payment, item, catalog_item, plan, usage, captured_at)
                    session.add(schedule)
                    session.flush()

                    if plan.deferred_amount_cents > 0:
                        write_ledger_entry(
                            session,
                            schedule=schedule,
                            entry_type=LedgerEntryType.DEFERRED,
                            amount_cents=plan.deferred_amount_cents,
                            recorded_at=captured_at,
                            details={"captured_at": captured_at.isoformat()},
                        )
                    if plan.recognized_amount_cents > 0:
                        write_ledger_entry(
                            session,
                            schedule=schedule,
                            entry_type=LedgerEntryType.RECOGNIZED,
                            amount_cents=plan.recognized_amount_cents,
                            recorded_at=captured_at,
                            details={"captured_at": captured_at.isoformat()},
                        )
                        recognized.append(
                            (schedule.product_code, schedule.currency, plan.method.value, plan.recognized_amount_cents)
                        )
                    created.append(schedule)
                    logger.info(
                        "schedule_created",
                        extra={
                            "schedule_id": str(schedule.id),
                            "product_code": schedule.product_code,
                            "recognition_method": plan.method.value,
                            "amount_cents": plan.amount_cents,
                            "schedule_status": plan.status.value,
                        },
                    )

                session.flush()
                balance = selector.deferred_balance(payment.tenant_id)
                refresh_catalog_metrics(session)

            for product_code, currency, method, amount in recognized:
                metrics.record_revenue_recognized(product_code, currency, method, amount)
            metrics.set_deferred_balance(payment.tenant_id, balance)

            return CaptureResult(
                status=CaptureStatus.PROCESSED,
                payment_intent_id=payment.id,
                tenant_id=payment.tenant_id,
                schedules=tuple(s.to_dict() for s in created),
                deferred_balance_cents=balance,
            )

    def _record_payment(self, session: Session, payment: PaymentCapture, captured_at: datetime) -> None:
        row = session.execute(
            select(PaymentIntentModel).where(PaymentIntentModel.payment_intent_id == payment.id)
        ).scalar_one_or_none()
        if row is None:
            row = PaymentIntentModel(payment_intent_id=payment.id)
            session.add(row)
        row.public_id = payment.public_id
        row.tenant_id = payment.tenant_id
        row.status = payment.status
        row.amount_total_cents = payment.amount_total_cents or sum(
            item.total_cents or 0 for item in payment.items
        )
        row.currency = payment.currency
        row.captured_at = captured_at
        row.metadata_ = {k: v for k, v in payment.metadata.items() if k != "items"}

    def _new_schedule(
        self,
        payment: PaymentCapture,
        item: LineItem,
        catalog_item: Any,
        plan: RecognitionPlan,
        usage_records: list | None,
        captured_at: datetime,
    ) -> RevenueScheduleModel:
        usage_records = usage_records or []
        return RevenueScheduleModel(
            tenant_id=payment.tenant_id,
            payment_intent_id=payment.id,
            catalog_item_id=catalog_item.id,
            usage_record_id=usage_records[0].id if usage_records else None,
            product_code=catalog_item.product_code or normalise_product_code(item.id, item.name),
            status=plan.status.value,
            recognition_method=plan.method.value,
            recognition_start=plan.recognition_start,
            recognition_end=plan.recognition_end,
            amount_cents=plan.amount_cents,
            recognized_amount_cents=plan.recognized_amount_cents,
            currency=item.currency,
            revenue_account=catalog_item.revenue_account or self._settings.default_revenue_account,
            deferred_revenue_account=catalog_item.deferred_revenue_account
            or self._settings.default_deferred_revenue_account,
            recognized_at=plan.recognized_at,
            metadata_={
                "source": "payment-capture",
                "payment_public_id": payment.public_id,
                "line_item_id": item.id,
                "quantity": str(item.quantity),
                "synthetic_line_item": item.synthetic,
                "auto_provisioned_catalog": catalog_item.id is None
                or bool((catalog_item.metadata_ or {}).get("provisioned_from_payment")),
                "usage_record_ids": [str(record.id) for record in usage_records],
                "captured_at": captured_at.isoformat(),
            },
            adjustments=[],
        )

    # ------------------------------------------------------------------
    # Due sweep
    # ------------------------------------------------------------------

    def sweep_due(
        self,
        tenant_id: str | None = None,
        as_of: datetime | str | None = None,
        limit: int | None = None,
    ) -> SweepResult:
        """
        Recognize every pending schedule whose recognition end has passed.

        Each schedule moves pending -> in_progress -> recognized and gets a
        ``revenue.deferred-release`` and a ``revenue.recognized`` entry.
        """
        tenant = normalise_tenant_id(tenant_id)
        as_of_dt = coerce_datetime(as_of, self._clock.now())
        limit = limit or self._settings.due_sweep_limit

        if not self._store.available:
            return SweepResult(status="skipped")

        recognized: list[tuple[str, str, str, int]] = []
        with self._store.transaction("sweep_due") as session:
            selector = RevenueSelector(session, self._settings.default_currency)
            due = selector.due_schedules(tenant, as_of_dt, limit)
            if not due:
                return SweepResult(status="idle")

            total = 0
            for schedule in due:
                schedule.status = ScheduleStatus.IN_PROGRESS.value
                session.flush()

                schedule.recognized_amount_cents = schedule.amount_cents
                schedule.recognized_at = as_of_dt
                schedule.status = ScheduleStatus.RECOGNIZED.value
                session.flush()

                amount = schedule.recognized_amount_cents
                total += amount
                for entry_type in (LedgerEntryType.DEFERRED_RELEASE, LedgerEntryType.RECOGNIZED):
                    write_ledger_entry(
                        session,
                        schedule=schedule,
                        entry_type=entry_type,
                        amount_cents=amount,
                        recorded_at=as_of_dt,
                        details={"recognized_at": as_of_dt.isoformat()},
                    )
                recognized.append(
                    (schedule.product_code, schedule.currency, schedule.recognition_method, amount)
                )

            session.flush()
            balance = selector.deferred_balance(tenant)

        for product_code, currency, method, amount in recognized:
            metrics.record_revenue_recognized(product_code, currency, method, amount)
        metrics.set_deferred_balance(tenant, balance)

        logger.info(
            "due_schedules_recognized",
            extra={"tenant_id": tenant, "processed": len(recognized), "amount_cents": total},
        )
        return SweepResult(status="recognized", processed=len(recognized), amount_cents=total)
