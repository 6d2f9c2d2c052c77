"""
Typed settings for the revenue engine.

Every dataclass is frozen and validates itself in ``__post_init__`` so an
invalid configuration fails at load time with a ``ConfigError`` naming
the offending field, never later inside a reconciliation cycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from revrec_kernel.exceptions import ConfigError

DEFAULT_CURRENCY = "GBP"


def _require_positive(name: str, value: int | float) -> None:
    if value <= 0:
        raise ConfigError(name, f"must be positive, got {value!r}")


@dataclass(frozen=True)
class ReconciliationThresholds:
    """Variance thresholds in basis points, and the denominator floor in cents."""

    alert_bps: int = 250
    critical_bps: int = 1000
    minimum_invoiced_cents_floor: int = 5000

    def __post_init__(self) -> None:
        _require_positive("alert_bps", self.alert_bps)
        _require_positive("minimum_invoiced_cents_floor", self.minimum_invoiced_cents_floor)
        if self.critical_bps < self.alert_bps:
            raise ConfigError("critical_bps", "must be greater than or equal to alert_bps")

    def to_dict(self) -> dict[str, int]:
        return {
            "alert_bps": self.alert_bps,
            "critical_bps": self.critical_bps,
            "minimum_invoiced_cents_floor": self.minimum_invoiced_cents_floor,
        }


@dataclass(frozen=True)
class RecognitionSettings:
    default_duration_days: int = 30
    annual_duration_days: int = 365
    default_revenue_account: str = "4000-education-services"
    default_deferred_revenue_account: str = "2050-deferred-revenue"
    default_currency: str = DEFAULT_CURRENCY
    due_sweep_limit: int = 200

    def __post_init__(self) -> None:
        _require_positive("default_duration_days", self.default_duration_days)
        _require_positive("annual_duration_days", self.annual_duration_days)
        _require_positive("due_sweep_limit", self.due_sweep_limit)
        if len(self.default_currency) != 3:
            raise ConfigError("default_currency", "must be a 3-letter ISO 4217 code")


@dataclass(frozen=True)
class NotificationSettings:
    """
    Alert delivery configuration.

    At least one channel (an email recipient or a webhook URL) must be
    configured for any dispatch to happen; with neither, the notifier
    records a suppressed decision and returns.
    """

    email_recipients: tuple[str, ...] = field(default_factory=tuple)
    webhook_url: str | None = None
    webhook_secret: str | None = None
    acknowledgement_url: str | None = None
    cooldown_minutes: int = 60
    timeout_seconds: float = 5.0
    sender: str = "revenue-ops@localhost"
    sendgrid_api_key: str | None = None

    def __post_init__(self) -> None:
        if self.cooldown_minutes < 0:
            raise ConfigError("cooldown_minutes", "must not be negative")
        _require_positive("timeout_seconds", self.timeout_seconds)

    @property
    def has_channels(self) -> bool:
        return bool(self.email_recipients) or bool(self.webhook_url)


@dataclass(frozen=True)
class JobSettings:
    enabled: bool = True
    cron_expression: str = "5 * * * *"
    run_on_startup: bool = True
    recognition_window_days: int = 30
    tenant_allowlist: tuple[str, ...] | None = None
    tenant_cache_minutes: int = 10
    max_consecutive_failures: int = 3
    failure_backoff_minutes: int = 10
    tick_interval_seconds: float = 60.0

    def __post_init__(self) -> None:
        _require_positive("recognition_window_days", self.recognition_window_days)
        _require_positive("max_consecutive_failures", self.max_consecutive_failures)
        _require_positive("tick_interval_seconds", self.tick_interval_seconds)
        if self.tenant_cache_minutes < 0:
            raise ConfigError("tenant_cache_minutes", "must not be negative")
        if self.failure_backoff_minutes < 0:
            raise ConfigError("failure_backoff_minutes", "must not be negative")


@dataclass(frozen=True)
class EngineSettings:
    """Top-level settings aggregate."""

    database_url: str | None = None
    thresholds: ReconciliationThresholds = field(default_factory=ReconciliationThresholds)
    recognition: RecognitionSettings = field(default_factory=RecognitionSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    job: JobSettings = field(default_factory=JobSettings)
