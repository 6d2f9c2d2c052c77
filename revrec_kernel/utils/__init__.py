"""Utility modules for the revenue kernel."""

from revrec_kernel.utils.hashing import (
    alert_digest,
    canonicalize_json,
    hash_payload,
)

__all__ = [
    "alert_digest",
    "canonicalize_json",
    "hash_payload",
]
