"""
Revenue engine configuration.

Settings are frozen dataclasses validated at construction; the loader
turns YAML (or a plain dict) into an ``EngineSettings`` aggregate.
"""

from revrec_config.loader import compute_checksum, load_settings, load_settings_from_dict
from revrec_config.settings import (
    EngineSettings,
    JobSettings,
    NotificationSettings,
    ReconciliationThresholds,
    RecognitionSettings,
)

__all__ = [
    "EngineSettings",
    "JobSettings",
    "NotificationSettings",
    "ReconciliationThresholds",
    "RecognitionSettings",
    "compute_checksum",
    "load_settings",
    "load_settings_from_dict",
]
