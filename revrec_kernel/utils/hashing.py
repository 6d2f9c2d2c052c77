"""
Deterministic hashing utilities.

Digests computed here gate notification dedup, so they must be stable
across processes and Python versions: keys are sorted, whitespace is
removed and non-JSON types have one canonical rendering.
"""

import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, tuple):
        return list(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Convert data to a canonical JSON string (sorted keys, no whitespace)."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: Any) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def alert_digest(alerts: Iterable[Mapping[str, Any]]) -> str | None:
    """
    Digest an ordered alert set for notification dedup.

    Only ``type``, ``severity``, ``message`` and ``details`` participate;
    ``suggested_action`` is presentation text and is excluded. Returns
    None for an empty alert set.
    """
    material = [
        {
            "type": alert.get("type"),
            "severity": alert.get("severity"),
            "message": alert.get("message"),
            "details": alert.get("details") or {},
        }
        for alert in alerts
    ]
    if not material:
        return None
    return hash_payload({"alerts": material})
