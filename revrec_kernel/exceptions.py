"""
Typed exception hierarchy for the revenue recognition engine.

Every exception carries a ``code`` class attribute (machine-readable,
API-safe) and stores its context as attributes rather than only inside
the message string, so callers catch by type and log structured data.

    RevenueEngineError (base)
    |
    +-- ValidationError
    |   +-- MissingIdentifierError
    |   +-- InvalidAmountError
    |   +-- InvalidCurrencyError
    |
    +-- StoreError
    |   +-- StoreUnavailableError
    |
    +-- ImmutabilityViolationError
    |
    +-- ScheduleError
    |   +-- ScheduleNotFoundError
    |   +-- ScheduleBoundViolationError
    |
    +-- ReconciliationError
    |   +-- ReconciliationRunNotFoundError
    |
    +-- NotificationError
    |   +-- ChannelDeliveryError
    |
    +-- ReconciliationJobError
    |   +-- ReconciliationCycleError
    |
    +-- ConfigError

Handling patterns:

    ValidationError        -> reject the event, never retried
    StoreUnavailableError  -> degrade (fallback object or "skipped" status)
    ChannelDeliveryError   -> log a warning, never fail the cycle
    ReconciliationCycleError -> counted toward job backoff
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class RevenueEngineError(Exception):
    """Base exception for all revenue engine errors."""

    code: str = "REVENUE_ENGINE_ERROR"


# Validation


class ValidationError(RevenueEngineError):
    """Input rejected before any state change."""

    code: str = "VALIDATION_ERROR"


class MissingIdentifierError(ValidationError):
    """A required identifier (product code, account reference...) is absent."""

    code: str = "MISSING_IDENTIFIER"

    def __init__(self, field_name: str, operation: str):
        self.field_name = field_name
        self.operation = operation
        super().__init__(f"{field_name} is required to {operation}")


class InvalidAmountError(ValidationError):
    """Monetary amount is not a usable non-negative integer of cents."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field_name: str, value: Any):
        self.field_name = field_name
        self.value = value
        super().__init__(f"Invalid amount for {field_name}: {value!r}")


class InvalidCurrencyError(ValidationError):
    """Currency code is not a 3-letter ISO 4217 code."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: Any):
        self.currency = currency
        super().__init__(f"Invalid currency code: {currency!r}")


# Store


class StoreError(RevenueEngineError):
    """Base exception for persistence errors."""

    code: str = "STORE_ERROR"


class StoreUnavailableError(StoreError):
    """The relational store is not reachable or not configured."""

    code: str = "STORE_UNAVAILABLE"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Store unavailable for operation: {operation}")


class ImmutabilityViolationError(RevenueEngineError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type} {entity_id}: {reason}")


# Schedules


class ScheduleError(RevenueEngineError):
    """Base exception for revenue schedule errors."""

    code: str = "SCHEDULE_ERROR"


class ScheduleNotFoundError(ScheduleError):
    code: str = "SCHEDULE_NOT_FOUND"

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Revenue schedule not found: {schedule_id}")


class ScheduleBoundViolationError(ScheduleError):
    """A mutation would leave recognized outside [0, amount]."""

    code: str = "SCHEDULE_BOUND_VIOLATION"

    def __init__(self, schedule_id: str, amount_cents: int, recognized_amount_cents: int):
        self.schedule_id = schedule_id
        self.amount_cents = amount_cents
        self.recognized_amount_cents = recognized_amount_cents
        super().__init__(
            f"Schedule {schedule_id} would hold recognized={recognized_amount_cents} "
            f"outside [0, {amount_cents}]"
        )


# Reconciliation


class ReconciliationError(RevenueEngineError):
    """Base exception for reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"


class ReconciliationRunNotFoundError(ReconciliationError):
    code: str = "RECONCILIATION_RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Reconciliation run not found: {run_id}")


# Notification


class NotificationError(RevenueEngineError):
    """Base exception for alert delivery errors."""

    code: str = "NOTIFICATION_ERROR"


class ChannelDeliveryError(NotificationError):
    """A single channel (email, webhook) could not be reached."""

    code: str = "CHANNEL_DELIVERY_FAILED"

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"Delivery via {channel} failed: {reason}")


# Job


class ReconciliationJobError(RevenueEngineError):
    """Base exception for reconciliation job orchestration."""

    code: str = "RECONCILIATION_JOB_ERROR"


@dataclass(frozen=True)
class TenantFailure:
    """One tenant's failure within a reconciliation cycle."""

    tenant_id: str
    error_type: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "tenant_id": self.tenant_id,
            "error_type": self.error_type,
            "message": self.message,
        }


class ReconciliationCycleError(ReconciliationJobError):
    """Aggregate error raised once per cycle when any tenant failed."""

    code: str = "RECONCILIATION_CYCLE_FAILED"

    def __init__(
        self,
        trigger: str,
        failures: list[TenantFailure],
        partial_results: list[dict[str, Any]] | None = None,
    ):
        self.trigger = trigger
        self.failures = list(failures)
        self.partial_results = list(partial_results or [])
        count = len(self.failures)
        super().__init__(
            f"Reconciliation failed for {count} tenant{'s' if count != 1 else ''}"
        )


class ConfigError(RevenueEngineError):
    """Settings failed validation."""

    code: str = "CONFIG_ERROR"

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid setting {field_name}: {reason}")
