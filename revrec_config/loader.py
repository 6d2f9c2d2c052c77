"""
Configuration loader (``revrec_config.loader``).

Reads a YAML document (``yaml.safe_load``) and parses it into
``EngineSettings``.  Unknown keys are rejected so a typo in a deployment
file surfaces as a ``ConfigError`` instead of a silently ignored default.

Layout::

    database_url: postgresql://...
    thresholds: {alert_bps: 250, critical_bps: 1000, minimum_invoiced_cents_floor: 5000}
    recognition: {default_duration_days: 30, ...}
    notifications: {email_recipients: [...], webhook_url: ..., cooldown_minutes: 60}
    job: {cron_expression: "5 * * * *", tenant_allowlist: [...], ...}

``REVREC_DATABASE_URL`` in the environment overrides ``database_url``.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from revrec_config.settings import (
    EngineSettings,
    JobSettings,
    NotificationSettings,
    ReconciliationThresholds,
    RecognitionSettings,
)
from revrec_kernel.exceptions import ConfigError
from revrec_kernel.logging_config import get_logger

logger = get_logger("config.loader")

DATABASE_URL_ENV = "REVREC_DATABASE_URL"

_SECTIONS: dict[str, type] = {
    "thresholds": ReconciliationThresholds,
    "recognition": RecognitionSettings,
    "notifications": NotificationSettings,
    "job": JobSettings,
}

_TUPLE_FIELDS = {"email_recipients", "tenant_allowlist"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(str(path), "top-level YAML document must be a mapping")
    return data


def _parse_section(name: str, cls: type, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigError(name, "must be a mapping")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(name, f"unknown keys: {', '.join(unknown)}")
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key in _TUPLE_FIELDS and value is not None:
            if isinstance(value, str):
                value = [part.strip() for part in value.split(",") if part.strip()]
            value = tuple(str(item) for item in value)
        kwargs[key] = value
    return cls(**kwargs)


def load_settings_from_dict(
    data: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    """Parse a settings mapping, applying the database URL override."""
    env = os.environ if environ is None else environ
    unknown = sorted(set(data) - set(_SECTIONS) - {"database_url"})
    if unknown:
        raise ConfigError("settings", f"unknown keys: {', '.join(unknown)}")

    sections = {name: _parse_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()}
    database_url = env.get(DATABASE_URL_ENV) or data.get("database_url")

    settings = EngineSettings(database_url=database_url, **sections)
    logger.info(
        "settings_loaded",
        extra={
            "checksum": compute_checksum(settings),
            "database_configured": database_url is not None,
        },
    )
    return settings


def load_settings(path: Path | str, environ: Mapping[str, str] | None = None) -> EngineSettings:
    """Load settings from a YAML file."""
    return load_settings_from_dict(load_yaml_file(Path(path)), environ=environ)


def compute_checksum(settings: EngineSettings) -> str:
    """
    SHA-256 identity of a settings object.

    Secrets (SendGrid key, webhook secret, database URL) are excluded so
    the checksum can be logged.
    """
    data = dataclasses.asdict(settings)
    data.pop("database_url", None)
    data["notifications"].pop("sendgrid_api_key", None)
    data["notifications"].pop("webhook_secret", None)
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=list)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
