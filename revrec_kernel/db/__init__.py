"""Database layer - engine, declarative base, portable column types."""

from revrec_kernel.db.base import Base, TimestampedBase, UTCDateTime, UUIDString
from revrec_kernel.db.engine import (
    check_connection,
    create_engine_from_url,
    create_session_factory,
    create_tables,
)

__all__ = [
    "Base",
    "TimestampedBase",
    "UTCDateTime",
    "UUIDString",
    "check_connection",
    "create_engine_from_url",
    "create_session_factory",
    "create_tables",
]
