"""
Module: revrec_modules.revenue.selectors
Responsibility:
    Read-only queries over the revenue tables, and the store-level read
    API exposed to collaborators (overview, schedule listing, tenant
    discovery).

Architecture:
    ``RevenueSelector`` takes a Session from the caller and never adds,
    flushes or commits.  ``RevenueQueries`` opens its own read sessions
    through the ``Store`` and answers with empty defaults on a degraded
    store instead of raising.

Invariants:
    - The deferred balance is Σ(amount - recognized) over schedules whose
      status is not ``recognized``.  It is reported as computed, negative
      values included; reconciliation turns a negative balance into an
      alert.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from revrec_config.settings import DEFAULT_CURRENCY, RecognitionSettings
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.models import (
    CAPTURED_PAYMENT_STATUSES,
    CatalogItemModel,
    LedgerEntryModel,
    LedgerEntryType,
    PaymentIntentModel,
    ReconciliationRunModel,
    RevenueScheduleModel,
    ScheduleStatus,
    UsageRecordModel,
)
from revrec_kernel.store import Store
from revrec_modules.revenue.helpers import DEFAULT_TENANT, normalise_tenant_id
from revrec_modules.revenue.models import RevenueOverview, RevenueSummary

MAX_SWEEP_LIMIT = 500
MAX_LIST_LIMIT = 200


def _by_currency(rows, default_currency: str) -> dict[str, int]:
    totals: dict[str, int] = defaultdict(int)
    for currency, amount in rows:
        totals[(currency or "").strip().upper() or default_currency] += int(amount or 0)
    return dict(totals)


class RevenueSelector:
    """Session-scoped revenue queries."""

    def __init__(self, session: Session, default_currency: str = DEFAULT_CURRENCY):
        self.session = session
        self.default_currency = default_currency

    def deferred_balance(self, tenant_id: str) -> int:
        return sum(self.deferred_balance_by_currency(tenant_id).values())

    def deferred_balance_by_currency(self, tenant_id: str) -> dict[str, int]:
        rows = self.session.execute(
            select(
                RevenueScheduleModel.currency,
                func.sum(
                    RevenueScheduleModel.amount_cents - RevenueScheduleModel.recognized_amount_cents
                ),
            )
            .where(
                RevenueScheduleModel.tenant_id == tenant_id,
                RevenueScheduleModel.status != ScheduleStatus.RECOGNIZED.value,
            )
            .group_by(RevenueScheduleModel.currency)
        ).all()
        return _by_currency(rows, self.default_currency)

    def recognized_by_currency(
        self,
        tenant_id: str,
        start: datetime | None,
        end: datetime | None,
    ) -> dict[str, int]:
        query = (
            select(RevenueScheduleModel.currency, func.sum(RevenueScheduleModel.recognized_amount_cents))
            .where(
                RevenueScheduleModel.tenant_id == tenant_id,
                RevenueScheduleModel.status == ScheduleStatus.RECOGNIZED.value,
            )
            .group_by(RevenueScheduleModel.currency)
        )
        if start is not None:
            query = query.where(RevenueScheduleModel.recognized_at >= start)
        if end is not None:
            query = query.where(RevenueScheduleModel.recognized_at <= end)
        return _by_currency(self.session.execute(query).all(), self.default_currency)

    def invoiced_by_currency(self, tenant_id: str, start: datetime, end: datetime) -> dict[str, int]:
        rows = self.session.execute(
            select(PaymentIntentModel.currency, func.sum(PaymentIntentModel.amount_total_cents))
            .where(
                PaymentIntentModel.tenant_id == tenant_id,
                PaymentIntentModel.status.in_(CAPTURED_PAYMENT_STATUSES),
                PaymentIntentModel.captured_at.is_not(None),
                PaymentIntentModel.captured_at >= start,
                PaymentIntentModel.captured_at <= end,
            )
            .group_by(PaymentIntentModel.currency)
        ).all()
        return _by_currency(rows, self.default_currency)

    def usage_by_currency(self, tenant_id: str, start: datetime, end: datetime) -> dict[str, int]:
        rows = self.session.execute(
            select(UsageRecordModel.currency, func.sum(UsageRecordModel.amount_cents))
            .where(
                UsageRecordModel.tenant_id == tenant_id,
                UsageRecordModel.usage_date >= start,
                UsageRecordModel.usage_date <= end,
            )
            .group_by(UsageRecordModel.currency)
        ).all()
        return _by_currency(rows, self.default_currency)

    def schedules_for_payment(self, payment_intent_id: str) -> list[RevenueScheduleModel]:
        return list(
            self.session.execute(
                select(RevenueScheduleModel)
                .where(RevenueScheduleModel.payment_intent_id == payment_intent_id)
                .order_by(RevenueScheduleModel.recognition_start)
            ).scalars()
        )

    def due_schedules(self, tenant_id: str, as_of: datetime, limit: int) -> list[RevenueScheduleModel]:
        return list(
            self.session.execute(
                select(RevenueScheduleModel)
                .where(
                    RevenueScheduleModel.tenant_id == tenant_id,
                    RevenueScheduleModel.status.in_(
                        [ScheduleStatus.PENDING.value, ScheduleStatus.IN_PROGRESS.value]
                    ),
                    RevenueScheduleModel.recognition_end <= as_of,
                )
                .order_by(RevenueScheduleModel.recognition_end)
                .limit(max(1, min(limit, MAX_SWEEP_LIMIT)))
            ).scalars()
        )

    def ledger_summary(
        self,
        tenant_id: str,
        since: datetime | None,
        until: datetime | None,
    ) -> RevenueSummary:
        query = (
            select(LedgerEntryModel.entry_type, func.sum(LedgerEntryModel.amount_cents))
            .where(LedgerEntryModel.tenant_id == tenant_id)
            .group_by(LedgerEntryModel.entry_type)
        )
        if since is not None:
            query = query.where(LedgerEntryModel.recorded_at >= since)
        if until is not None:
            query = query.where(LedgerEntryModel.recorded_at <= until)
        totals = {entry_type: int(amount or 0) for entry_type, amount in self.session.execute(query)}
        return RevenueSummary(
            recognized_cents=totals.get(LedgerEntryType.RECOGNIZED.value, 0),
            deferred_cents=totals.get(LedgerEntryType.DEFERRED.value, 0),
            released_cents=totals.get(LedgerEntryType.DEFERRED_RELEASE.value, 0),
            refund_recognized_cents=totals.get(LedgerEntryType.REFUND_RECOGNIZED.value, 0),
            refund_deferred_cents=totals.get(LedgerEntryType.REFUND_DEFERRED.value, 0),
        )

    def distinct_tenants(self) -> set[str]:
        tenants: set[str] = set()
        for model in (
            CatalogItemModel,
            UsageRecordModel,
            RevenueScheduleModel,
            ReconciliationRunModel,
        ):
            tenants.update(self.session.execute(select(model.tenant_id).distinct()).scalars())
        return tenants


class RevenueQueries:
    """Read API over the store; degraded stores yield empty defaults."""

    def __init__(
        self,
        store: Store,
        clock: Clock | None = None,
        settings: RecognitionSettings | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings or RecognitionSettings()

    def get_revenue_overview(
        self,
        tenant_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> RevenueOverview:
        tenant = normalise_tenant_id(tenant_id)
        if not self._store.available:
            return RevenueOverview(
                tenant_id=tenant,
                summary=RevenueSummary(),
                deferred_revenue_cents=0,
                recognized_revenue_cents=0,
                generated_at=self._clock.now(),
            )
        with self._store.reader("get_revenue_overview") as session:
            selector = RevenueSelector(session, self._settings.default_currency)
            return RevenueOverview(
                tenant_id=tenant,
                summary=selector.ledger_summary(tenant, since, until),
                deferred_revenue_cents=selector.deferred_balance(tenant),
                recognized_revenue_cents=sum(selector.recognized_by_currency(tenant, since, until).values()),
                generated_at=self._clock.now(),
            )

    def list_revenue_schedules(
        self,
        *,
        tenant_id: str | None = None,
        payment_intent_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if not self._store.available:
            return []
        query = (
            select(RevenueScheduleModel)
            .where(RevenueScheduleModel.tenant_id == normalise_tenant_id(tenant_id))
            .order_by(RevenueScheduleModel.recognition_start.desc())
            .limit(max(1, min(limit, MAX_LIST_LIMIT)))
            .offset(max(offset, 0))
        )
        if payment_intent_id:
            query = query.where(RevenueScheduleModel.payment_intent_id == payment_intent_id)
        if status:
            query = query.where(RevenueScheduleModel.status == ScheduleStatus(status).value)
        with self._store.reader("list_revenue_schedules") as session:
            return [schedule.to_dict() for schedule in session.execute(query).scalars()]

    def list_active_tenants(self) -> list[str]:
        """Every tenant seen in any revenue table, sorted; ``["global"]`` if none."""
        if not self._store.available:
            return [DEFAULT_TENANT]
        with self._store.reader("list_active_tenants") as session:
            tenants = {normalise_tenant_id(t) for t in RevenueSelector(session).distinct_tenants() if t}
        return sorted(tenants) or [DEFAULT_TENANT]
