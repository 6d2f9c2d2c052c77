"""
Refund allocation across a payment's schedules.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy import select

from revrec_kernel.metrics import REGISTRY
from revrec_kernel.models import LedgerEntryModel, LedgerEntryType, RevenueScheduleModel, ScheduleStatus
from revrec_modules.revenue import RefundAllocator, RefundStatus
from revrec_modules.revenue.models import RefundCandidate
from revrec_modules.revenue.refunds import allocate_refund

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _schedules_by_code(store) -> dict[str, RevenueScheduleModel]:
    with store.reader() as session:
        return {s.product_code: s for s in session.execute(select(RevenueScheduleModel)).scalars()}


def _candidate(status, amount, recognized, recognized_at=None, start=T0) -> RefundCandidate:
    return RefundCandidate(
        schedule_id=uuid4(),
        product_code=f"p-{amount}-{recognized}",
        status=status,
        amount_cents=amount,
        recognized_amount_cents=recognized,
        recognized_at=recognized_at,
        recognition_start=start,
    )


class TestAllocateRefund:
    def test_recognized_first_then_pending(self):
        recognized = _candidate("recognized", 5000, 5000, recognized_at=T0)
        pending = _candidate("pending", 10000, 0)

        allocation = allocate_refund(7000, [pending, recognized])

        assert [(a.schedule_id, a.amount_cents) for a in allocation.recognized] == [
            (recognized.schedule_id, 5000)
        ]
        assert [(a.schedule_id, a.amount_cents) for a in allocation.deferred] == [(pending.schedule_id, 2000)]
        assert allocation.unapplied_cents == 0

    def test_most_recently_recognized_reduced_first(self):
        older = _candidate("recognized", 3000, 3000, recognized_at=T0)
        newer = _candidate("recognized", 3000, 3000, recognized_at=T0 + timedelta(days=3))

        allocation = allocate_refund(4000, [older, newer])

        assert [(a.schedule_id, a.amount_cents) for a in allocation.recognized] == [
            (newer.schedule_id, 3000),
            (older.schedule_id, 1000),
        ]

    def test_earliest_pending_reduced_first(self):
        later = _candidate("pending", 5000, 0, start=T0 + timedelta(days=1))
        earlier = _candidate("pending", 5000, 0, start=T0)

        allocation = allocate_refund(6000, [later, earlier])

        assert [a.schedule_id for a in allocation.deferred] == [earlier.schedule_id, later.schedule_id]
        assert [a.amount_cents for a in allocation.deferred] == [5000, 1000]

    def test_excess_reported_as_unapplied(self):
        allocation = allocate_refund(15000, [_candidate("pending", 10000, 0)])
        assert allocation.unapplied_cents == 5000

    def test_zero_refund_allocates_nothing(self):
        allocation = allocate_refund(0, [_candidate("pending", 10000, 0)])
        assert allocation.recognized == allocation.deferred == ()
        assert allocation.unapplied_cents == 0


@st.composite
def _candidates(draw):
    rows = []
    for _ in range(draw(st.integers(min_value=0, max_value=6))):
        amount = draw(st.integers(min_value=0, max_value=50_000))
        status = draw(st.sampled_from(["pending", "in_progress", "recognized"]))
        recognized = amount if status == "recognized" else draw(st.integers(min_value=0, max_value=amount))
        offset = draw(st.integers(min_value=0, max_value=30))
        rows.append(
            _candidate(
                status,
                amount,
                recognized,
                recognized_at=T0 + timedelta(days=offset) if status == "recognized" else None,
                start=T0 + timedelta(days=offset),
            )
        )
    return rows


class TestAllocationProperties:
    @settings(max_examples=200)
    @given(amount=st.integers(min_value=0, max_value=200_000), candidates=_candidates())
    def test_refund_is_conserved(self, amount, candidates):
        allocation = allocate_refund(amount, candidates)
        applied = sum(a.amount_cents for a in allocation.recognized + allocation.deferred)
        assert applied + allocation.unapplied_cents == amount

    @settings(max_examples=200)
    @given(amount=st.integers(min_value=0, max_value=200_000), candidates=_candidates())
    def test_reductions_stay_within_schedule_bounds(self, amount, candidates):
        by_id = {c.schedule_id: c for c in candidates}
        allocation = allocate_refund(amount, candidates)

        for adj in allocation.recognized:
            assert 0 < adj.amount_cents <= by_id[adj.schedule_id].recognized_amount_cents
        for adj in allocation.deferred:
            candidate = by_id[adj.schedule_id]
            assert 0 < adj.amount_cents <= candidate.amount_cents - candidate.recognized_amount_cents

    @settings(max_examples=200)
    @given(amount=st.integers(min_value=0, max_value=200_000), candidates=_candidates())
    def test_unapplied_only_when_capacity_exhausted(self, amount, candidates):
        capacity = sum(
            c.recognized_amount_cents
            if c.status == ScheduleStatus.RECOGNIZED.value and c.recognized_amount_cents > 0
            else c.amount_cents - c.recognized_amount_cents
            for c in candidates
        )
        allocation = allocate_refund(amount, candidates)
        assert allocation.unapplied_cents == max(0, amount - capacity)


class TestRefundAllocator:
    def _capture_mixed(self, lifecycle, payment_event, line_item):
        lifecycle.on_payment_captured(
            payment_event(
                amount=15000,
                items=[
                    line_item("course-live", total=5000, method="immediate"),
                    line_item("course-video", total=10000, method="deferred", duration_days=30),
                ],
            )
        )

    def test_refund_reduces_recognized_then_deferred(self, lifecycle, refunds, store, payment_event, line_item):
        self._capture_mixed(lifecycle, payment_event, line_item)

        result = refunds.apply_refund(
            {"payment_intent_id": "pi_1", "amount_cents": 7000, "tenant_id": "acme", "reason": "requested"}
        )

        assert result.status is RefundStatus.PROCESSED
        assert result.recognized_reduction_cents == 5000
        assert result.deferred_reduction_cents == 2000
        assert result.unapplied_cents == 0

        schedules = _schedules_by_code(store)
        live, video = schedules["course-live"], schedules["course-video"]
        assert (live.amount_cents, live.recognized_amount_cents, live.recognized_at) == (0, 0, None)
        assert (video.amount_cents, video.recognized_amount_cents) == (8000, 0)
        assert video.status == ScheduleStatus.PENDING.value

    def test_adjustments_logged_on_schedules_and_ledger(
        self, lifecycle, refunds, store, clock, payment_event, line_item
    ):
        self._capture_mixed(lifecycle, payment_event, line_item)
        clock.advance(days=1)

        refunds.apply_refund(
            {
                "payment_intent_id": "pi_1",
                "amount_cents": 7000,
                "tenant_id": "acme",
                "refund_reference": "re_1",
                "source": "gateway",
            }
        )

        schedules = _schedules_by_code(store)
        [live_adjustment] = schedules["course-live"].adjustment_log
        assert live_adjustment.kind == "refund.recognized"
        assert live_adjustment.amount_cents == 5000
        assert live_adjustment.applied_at == T0 + timedelta(days=1)
        assert live_adjustment.reference == "re_1"
        [video_adjustment] = schedules["course-video"].adjustment_log
        assert (video_adjustment.kind, video_adjustment.amount_cents) == ("refund.deferred", 2000)

        with store.reader() as session:
            refund_entries = sorted(
                (e.entry_type, e.amount_cents)
                for e in session.execute(select(LedgerEntryModel)).scalars()
                if e.entry_type.startswith("revenue.refund")
            )
        assert refund_entries == [
            (LedgerEntryType.REFUND_DEFERRED.value, 2000),
            (LedgerEntryType.REFUND_RECOGNIZED.value, 5000),
        ]

    def test_pending_reduced_to_zero_becomes_recognized(self, lifecycle, refunds, store, payment_event, line_item):
        lifecycle.on_payment_captured(payment_event(items=[line_item(total=10000)]))

        result = refunds.apply_refund({"payment_intent_id": "pi_1", "amount_cents": 10000, "tenant_id": "acme"})

        assert result.deferred_reduction_cents == 10000
        [schedule] = _schedules_by_code(store).values()
        assert schedule.amount_cents == 0
        assert schedule.status == ScheduleStatus.RECOGNIZED.value

    def test_excess_refund_reported_and_logged(
        self, lifecycle, refunds, payment_event, line_item, captured_logs
    ):
        lifecycle.on_payment_captured(payment_event(items=[line_item(total=10000)]))

        result = refunds.apply_refund({"payment_intent_id": "pi_1", "amount_cents": 12000, "tenant_id": "acme"})

        assert result.unapplied_cents == 2000
        assert any(r["message"] == "refund_unapplied_remainder" for r in captured_logs())

    def test_reversal_metric_recorded(self, lifecycle, refunds, payment_event, line_item):
        lifecycle.on_payment_captured(
            payment_event(items=[line_item("metered-item", total=3000, method="immediate")])
        )
        labels = {"product_code": "metered-item", "currency": "gbp", "reason": "chargeback"}
        before = REGISTRY.get_sample_value("revrec_revenue_reversed_cents_total", labels) or 0

        refunds.apply_refund(
            {"payment_intent_id": "pi_1", "amount_cents": 1000, "tenant_id": "acme", "reason": "chargeback"}
        )

        assert REGISTRY.get_sample_value("revrec_revenue_reversed_cents_total", labels) == before + 1000

    def test_zero_amount_ignored(self, refunds):
        result = refunds.apply_refund({"payment_intent_id": "pi_1", "amount_cents": 0})
        assert result.status is RefundStatus.IGNORED

    def test_unknown_payment_has_no_schedules(self, refunds):
        result = refunds.apply_refund({"payment_intent_id": "pi_missing", "amount_cents": 500})
        assert result.status is RefundStatus.NO_SCHEDULES
        assert result.unapplied_cents == 500

    def test_degraded_store(self, degraded_store):
        result = RefundAllocator(degraded_store).apply_refund({"payment_intent_id": "pi_1", "amount_cents": 500})
        assert result.status is RefundStatus.CONNECTION_UNAVAILABLE
        assert result.unapplied_cents == 500
