"""ORM models for the revenue ledger store."""

from revrec_kernel.models.catalog import CatalogItemModel, CatalogStatus, RecognitionMethod
from revrec_kernel.models.ledger import LedgerEntryModel, LedgerEntryType
from revrec_kernel.models.payment import CAPTURED_PAYMENT_STATUSES, PaymentIntentModel
from revrec_kernel.models.reconciliation import ReconciliationRunModel, RunStatus
from revrec_kernel.models.schedule import RevenueScheduleModel, ScheduleStatus
from revrec_kernel.models.usage import UsageRecordModel

__all__ = [
    "CAPTURED_PAYMENT_STATUSES",
    "CatalogItemModel",
    "CatalogStatus",
    "LedgerEntryModel",
    "LedgerEntryType",
    "PaymentIntentModel",
    "RecognitionMethod",
    "ReconciliationRunModel",
    "RevenueScheduleModel",
    "RunStatus",
    "ScheduleStatus",
    "UsageRecordModel",
]
