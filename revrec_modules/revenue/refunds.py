"""
Module: revrec_modules.revenue.refunds
Responsibility:
    Distribute a refund across the revenue schedules of one payment.

Allocation policy (a modelling approximation, not a trace back to the
refunded transaction):
    1. Recognized schedules, most recently recognized first (LIFO by
       ``recognized_at``), each reduced by at most its recognized amount.
    2. Remaining schedules, earliest ``recognition_start`` first (FIFO),
       each reduced by at most its open amount (amount - recognized).
    3. Whatever is left is reported as ``unapplied_cents`` and logged as
       an integrity warning.

Postcondition:
    Σ recognized reductions + Σ deferred reductions + unapplied == refund.

``allocate_refund`` is the pure policy; ``RefundAllocator`` applies it to
stored schedules inside one transaction.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from revrec_config.settings import RecognitionSettings
from revrec_kernel import metrics
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.domain.records import ScheduleAdjustment
from revrec_kernel.logging_config import LogContext, get_logger
from revrec_kernel.models import LedgerEntryType, RevenueScheduleModel, ScheduleStatus
from revrec_kernel.store import Store
from revrec_modules.revenue.models import (
    RefundAdjustment,
    RefundCandidate,
    RefundEvent,
    RefundResult,
    RefundStatus,
)
from revrec_modules.revenue.schedules import write_ledger_entry
from revrec_modules.revenue.selectors import RevenueSelector

logger = get_logger("modules.revenue.refunds")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class RefundAllocation:
    recognized: tuple[RefundAdjustment, ...]
    deferred: tuple[RefundAdjustment, ...]
    unapplied_cents: int


def candidate_from_schedule(schedule: RevenueScheduleModel) -> RefundCandidate:
    return RefundCandidate(
        schedule_id=schedule.id,
        product_code=schedule.product_code,
        status=schedule.status,
        amount_cents=schedule.amount_cents,
        recognized_amount_cents=schedule.recognized_amount_cents,
        recognized_at=schedule.recognized_at,
        recognition_start=schedule.recognition_start,
    )


def allocate_refund(amount_cents: int, candidates: Sequence[RefundCandidate]) -> RefundAllocation:
    """Pure LIFO-recognized then FIFO-pending allocation of ``amount_cents``."""
    remaining = max(0, amount_cents)

    recognized_pass = sorted(
        (
            c for c in candidates
            if c.status == ScheduleStatus.RECOGNIZED.value and c.recognized_amount_cents > 0
        ),
        key=lambda c: c.recognized_at or _EPOCH,
        reverse=True,
    )
    recognized: list[RefundAdjustment] = []
    for candidate in recognized_pass:
        if remaining <= 0:
            break
        reduction = min(candidate.recognized_amount_cents, remaining)
        recognized.append(RefundAdjustment(candidate.schedule_id, candidate.product_code, reduction))
        remaining -= reduction

    touched = {adj.schedule_id for adj in recognized}
    pending_pass = sorted(
        (c for c in candidates if c.schedule_id not in touched),
        key=lambda c: c.recognition_start or _EPOCH,
    )
    deferred: list[RefundAdjustment] = []
    for candidate in pending_pass:
        if remaining <= 0:
            break
        open_amount = max(0, candidate.amount_cents - candidate.recognized_amount_cents)
        if open_amount <= 0:
            continue
        reduction = min(open_amount, remaining)
        deferred.append(RefundAdjustment(candidate.schedule_id, candidate.product_code, reduction))
        remaining -= reduction

    return RefundAllocation(tuple(recognized), tuple(deferred), remaining)


class RefundAllocator:
    def __init__(
        self,
        store: Store,
        clock: Clock | None = None,
        settings: RecognitionSettings | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings or RecognitionSettings()

    def apply_refund(self, event: RefundEvent | Mapping[str, Any]) -> RefundResult:
        if not isinstance(event, RefundEvent):
            event = RefundEvent.from_event(event, self._settings.default_currency)
        refund_amount = event.amount_cents

        if refund_amount <= 0:
            return RefundResult(status=RefundStatus.IGNORED, refund_amount_cents=0)

        with LogContext.bind(tenant_id=event.tenant_id, payment_intent_id=event.payment_intent_id):
            if not self._store.available:
                logger.debug("refund_skipped_without_store")
                return RefundResult(
                    status=RefundStatus.CONNECTION_UNAVAILABLE,
                    refund_amount_cents=refund_amount,
                    unapplied_cents=refund_amount,
                )

            applied_at = event.processed_at or self._clock.now()
            with self._store.transaction("apply_refund") as session:
                selector = RevenueSelector(session, self._settings.default_currency)
                schedules = selector.schedules_for_payment(event.payment_intent_id)
                if not schedules:
                    logger.warning(
                        "refund_without_schedules",
                        extra={"refund_amount_cents": refund_amount},
                    )
                    return RefundResult(
                        status=RefundStatus.NO_SCHEDULES,
                        refund_amount_cents=refund_amount,
                        unapplied_cents=refund_amount,
                    )

                allocation = allocate_refund(
                    refund_amount, [candidate_from_schedule(s) for s in schedules]
                )
                by_id = {s.id: s for s in schedules}

                for adj in allocation.recognized:
                    schedule = by_id[adj.schedule_id]
                    schedule.amount_cents -= adj.amount_cents
                    schedule.recognized_amount_cents -= adj.amount_cents
                    if schedule.recognized_amount_cents == 0:
                        schedule.recognized_at = None
                    self._amend(session, schedule, adj, event, applied_at, "refund.recognized")

                for adj in allocation.deferred:
                    schedule = by_id[adj.schedule_id]
                    schedule.amount_cents -= adj.amount_cents
                    if schedule.amount_cents == schedule.recognized_amount_cents:
                        schedule.status = ScheduleStatus.RECOGNIZED.value
                    self._amend(session, schedule, adj, event, applied_at, "refund.deferred")

                session.flush()
                tenant_ids = {s.tenant_id for s in schedules}
                balances = {tenant: selector.deferred_balance(tenant) for tenant in tenant_ids}

            for adj in allocation.recognized:
                metrics.record_revenue_reversed(
                    adj.product_code, event.currency, event.reason, adj.amount_cents
                )
            for tenant, balance in balances.items():
                metrics.set_deferred_balance(tenant, balance)

            if allocation.unapplied_cents > 0:
                logger.warning(
                    "refund_unapplied_remainder",
                    extra={
                        "refund_amount_cents": refund_amount,
                        "unapplied_cents": allocation.unapplied_cents,
                    },
                )

            result = RefundResult(
                status=RefundStatus.PROCESSED,
                refund_amount_cents=refund_amount,
                recognized=allocation.recognized,
                deferred=allocation.deferred,
                unapplied_cents=allocation.unapplied_cents,
            )
            logger.info(
                "refund_processed",
                extra={
                    "refund_amount_cents": refund_amount,
                    "recognized_reduction_cents": result.recognized_reduction_cents,
                    "deferred_reduction_cents": result.deferred_reduction_cents,
                    "unapplied_cents": result.unapplied_cents,
                },
            )
            return result

    def _amend(
        self,
        session,
        schedule: RevenueScheduleModel,
        adj: RefundAdjustment,
        event: RefundEvent,
        applied_at: datetime,
        kind: str,
    ) -> None:
        schedule.append_adjustment(
            ScheduleAdjustment(
                kind=kind,
                amount_cents=adj.amount_cents,
                applied_at=applied_at,
                reason=event.reason,
                source=event.source,
                reference=event.refund_reference,
            )
        )
        entry_type = (
            LedgerEntryType.REFUND_RECOGNIZED
            if kind == "refund.recognized"
            else LedgerEntryType.REFUND_DEFERRED
        )
        write_ledger_entry(
            session,
            schedule=schedule,
            entry_type=entry_type,
            amount_cents=adj.amount_cents,
            recorded_at=applied_at,
            currency=event.currency,
            details={
                "reason": event.reason,
                "processed_at": applied_at.isoformat(),
                "refund_reference": event.refund_reference,
                "source": event.source,
            },
        )
