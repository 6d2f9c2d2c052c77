"""
ORM invariants: schedule bounds are checked on every flush, schedules
are never deleted, and ledger entries are append-only.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from revrec_kernel.exceptions import ImmutabilityViolationError, ScheduleBoundViolationError
from revrec_kernel.models import (
    LedgerEntryModel,
    LedgerEntryType,
    ReconciliationRunModel,
    RevenueScheduleModel,
    ScheduleStatus,
)

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _schedule(**overrides) -> RevenueScheduleModel:
    values = dict(
        tenant_id="acme",
        payment_intent_id="pi_1",
        product_code="course",
        status=ScheduleStatus.PENDING.value,
        recognition_method="deferred",
        recognition_start=START,
        recognition_end=START + timedelta(days=30),
        amount_cents=10000,
        recognized_amount_cents=0,
        currency="GBP",
        revenue_account="4000",
        deferred_revenue_account="2050",
        metadata_={},
        adjustments=[],
    )
    values.update(overrides)
    return RevenueScheduleModel(**values)


class TestScheduleBounds:
    def test_valid_schedule_inserts(self, store):
        with store.transaction() as session:
            session.add(_schedule())

    def test_recognized_above_amount_rejected(self, store):
        with pytest.raises(ScheduleBoundViolationError):
            with store.transaction() as session:
                session.add(_schedule(recognized_amount_cents=10001))

    def test_negative_recognized_rejected(self, store):
        with pytest.raises(ScheduleBoundViolationError):
            with store.transaction() as session:
                session.add(_schedule(recognized_amount_cents=-1))

    def test_recognized_status_requires_full_recognition(self, store):
        with pytest.raises(ScheduleBoundViolationError):
            with store.transaction() as session:
                session.add(_schedule(status=ScheduleStatus.RECOGNIZED.value, recognized_amount_cents=5000))

    def test_update_checked(self, store):
        with store.transaction() as session:
            schedule = _schedule()
            session.add(schedule)

        with pytest.raises(ScheduleBoundViolationError):
            with store.transaction() as session:
                loaded = session.get(RevenueScheduleModel, schedule.id)
                loaded.amount_cents = 100
                loaded.recognized_amount_cents = 200

    def test_delete_blocked(self, store):
        with store.transaction() as session:
            schedule = _schedule()
            session.add(schedule)

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            with store.transaction() as session:
                session.delete(session.get(RevenueScheduleModel, schedule.id))
        assert exc_info.value.entity_type == "RevenueSchedule"

    def test_open_amount(self):
        assert _schedule(amount_cents=1000, recognized_amount_cents=400).open_amount_cents == 600


class TestLedgerImmutability:
    def _entry(self) -> LedgerEntryModel:
        return LedgerEntryModel(
            payment_intent_id="pi_1",
            tenant_id="acme",
            entry_type=LedgerEntryType.DEFERRED.value,
            amount_cents=10000,
            currency="GBP",
            recorded_at=START,
            details={},
        )

    def test_update_blocked(self, store, captured_logs):
        with store.transaction() as session:
            entry = self._entry()
            session.add(entry)

        with pytest.raises(ImmutabilityViolationError):
            with store.transaction() as session:
                session.get(LedgerEntryModel, entry.id).amount_cents = 1

        assert any(r["message"] == "immutability_violation_blocked" for r in captured_logs())

    def test_delete_blocked(self, store):
        with store.transaction() as session:
            entry = self._entry()
            session.add(entry)

        with pytest.raises(ImmutabilityViolationError):
            with store.transaction() as session:
                session.delete(session.get(LedgerEntryModel, entry.id))

        with store.reader() as session:
            assert session.execute(select(LedgerEntryModel)).scalar_one().amount_cents == 10000


class TestReconciliationRunDict:
    def test_to_dict_merges_logs_into_metadata(self):
        run = ReconciliationRunModel(
            tenant_id="acme",
            window_start=START,
            window_end=START + timedelta(days=30),
            status="attention",
            severity="medium",
            variance_ratio=0,
            metadata_={"alerts": [{"type": "recognized_vs_invoiced"}], "alert_digest": "abc"},
            acknowledgements=[],
            notifications=[],
        )
        data = run.to_dict()
        assert data["metadata"]["severity"] == "medium"
        assert data["metadata"]["acknowledgements"] == []
        assert run.alert_digest == "abc"
        assert run.alerts == [{"type": "recognized_vs_invoiced"}]
