"""
Revenue module: catalog policy, recognition planning, schedule lifecycle,
refund allocation, usage ingestion and revenue read APIs.
"""

from revrec_modules.revenue.catalog import CatalogResolver
from revrec_modules.revenue.models import (
    CaptureResult,
    CaptureStatus,
    LineItem,
    PaymentCapture,
    RecognitionPlan,
    RefundAdjustment,
    RefundEvent,
    RefundResult,
    RefundStatus,
    RevenueOverview,
    RevenueSummary,
    SweepResult,
    UsageEvent,
)
from revrec_modules.revenue.planner import build_plan
from revrec_modules.revenue.refunds import RefundAllocator, allocate_refund
from revrec_modules.revenue.schedules import ScheduleLifecycleManager
from revrec_modules.revenue.selectors import RevenueQueries, RevenueSelector
from revrec_modules.revenue.usage import UsageRecorder

__all__ = [
    "CaptureResult",
    "CaptureStatus",
    "CatalogResolver",
    "LineItem",
    "PaymentCapture",
    "RecognitionPlan",
    "RefundAdjustment",
    "RefundAllocator",
    "RefundEvent",
    "RefundResult",
    "RefundStatus",
    "RevenueOverview",
    "RevenueQueries",
    "RevenueSelector",
    "RevenueSummary",
    "ScheduleLifecycleManager",
    "SweepResult",
    "UsageEvent",
    "UsageRecorder",
    "allocate_refund",
    "build_plan",
]
