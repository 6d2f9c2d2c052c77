"""Usage ingestion."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from revrec_kernel.exceptions import MissingIdentifierError
from revrec_kernel.metrics import REGISTRY
from revrec_kernel.models import UsageRecordModel
from revrec_modules.revenue import UsageRecorder

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _usage(**overrides) -> dict:
    event = {
        "tenant_id": "Acme",
        "product_code": "API Calls",
        "account_reference": "acct-1",
        "quantity": 3,
        "unit_amount_cents": 250,
        "source": "meter",
    }
    event.update(overrides)
    return event


def _count(store) -> int:
    with store.reader() as session:
        return session.execute(select(func.count()).select_from(UsageRecordModel)).scalar_one()


class TestRecordUsage:
    def test_amount_derived_from_quantity(self, usage_recorder):
        record = usage_recorder.record_usage(_usage())

        assert record.id is not None
        assert record.tenant_id == "acme"
        assert record.product_code == "api-calls"
        assert record.quantity == Decimal("3")
        assert record.amount_cents == 750
        assert record.currency == "GBP"

    def test_usage_date_defaults_to_clock(self, usage_recorder):
        assert usage_recorder.record_usage(_usage()).usage_date == T0

    def test_replay_updates_instead_of_duplicating(self, usage_recorder, store):
        first = usage_recorder.record_usage(_usage(external_reference="evt-1", quantity=1))
        second = usage_recorder.record_usage(_usage(external_reference="evt-1", quantity=4))

        assert first.id == second.id
        assert _count(store) == 1
        assert second.amount_cents == 1000

    def test_metric_counts_first_delivery_only(self, usage_recorder):
        labels = {"product_code": "replayed-meter", "source": "meter", "currency": "gbp"}
        before = REGISTRY.get_sample_value("revrec_usage_recorded_cents_total", labels) or 0

        usage_recorder.record_usage(_usage(product_code="replayed-meter", external_reference="evt-9"))
        usage_recorder.record_usage(_usage(product_code="replayed-meter", external_reference="evt-9"))

        assert REGISTRY.get_sample_value("revrec_usage_recorded_cents_total", labels) == before + 750

    def test_product_code_from_metadata(self, usage_recorder):
        record = usage_recorder.record_usage(
            _usage(product_code=None, metadata={"product_code": "Seats"})
        )
        assert record.product_code == "seats"

    @pytest.mark.parametrize(
        "overrides, field_name",
        [
            ({"account_reference": None}, "account_reference"),
            ({"product_code": None}, "product_code"),
        ],
    )
    def test_missing_identifier_rejected(self, usage_recorder, store, overrides, field_name):
        with pytest.raises(MissingIdentifierError) as exc_info:
            usage_recorder.record_usage(_usage(**overrides))
        assert exc_info.value.field_name == field_name
        assert _count(store) == 0

    def test_degraded_store_returns_unpersisted_record(self, degraded_store):
        record = UsageRecorder(degraded_store).record_usage(_usage())
        assert record.id is None
        assert record.amount_cents == 750
