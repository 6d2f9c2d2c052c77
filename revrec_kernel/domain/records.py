"""
Typed audit records stored in append-only JSON lists.

Schedules keep an adjustment log; reconciliation runs keep an
acknowledgement log and a notification log.  Each entry is one of the
frozen dataclasses below, serialized with a ``kind`` tag so a stored list
can be decoded back into typed records and verified mechanically.

Lists are only ever extended.  ``append_record`` returns a new list so
SQLAlchemy sees the JSON column as changed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class ScheduleAdjustment:
    """One amendment to a revenue schedule (refund reductions today)."""

    KINDS: ClassVar[frozenset[str]] = frozenset({"refund.recognized", "refund.deferred"})

    kind: str
    amount_cents: int
    applied_at: datetime
    reason: str | None = None
    source: str | None = None
    reference: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in self.KINDS:
            raise ValueError(f"Unknown schedule adjustment kind: {self.kind!r}")
        if self.amount_cents <= 0:
            raise ValueError("Adjustment amount must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "amount_cents": self.amount_cents,
            "applied_at": _iso(self.applied_at),
            "reason": self.reason,
            "source": self.source,
            "reference": self.reference,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleAdjustment:
        return cls(
            kind=data["kind"],
            amount_cents=int(data["amount_cents"]),
            applied_at=_parse(data["applied_at"]),
            reason=data.get("reason"),
            source=data.get("source"),
            reference=data.get("reference"),
        )


@dataclass(frozen=True)
class AlertAcknowledgement:
    """An operator acknowledging the alerts of one reconciliation run."""

    acknowledged_at: datetime
    operator_id: str
    operator_name: str | None = None
    operator_email: str | None = None
    channel: str | None = None
    note: str | None = None
    kind: str = "acknowledgement"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "acknowledged_at": _iso(self.acknowledged_at),
            "operator_id": self.operator_id,
            "operator_name": self.operator_name,
            "operator_email": self.operator_email,
            "channel": self.channel,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlertAcknowledgement:
        return cls(
            acknowledged_at=_parse(data["acknowledged_at"]),
            operator_id=data["operator_id"],
            operator_name=data.get("operator_name"),
            operator_email=data.get("operator_email"),
            channel=data.get("channel"),
            note=data.get("note"),
        )


@dataclass(frozen=True)
class NotificationRecord:
    """
    One dispatch decision recorded against a run.

    ``dispatched`` is False for suppressed cycles; those still carry the
    last dispatch state forward so the next cycle can compare against it.
    """

    decided_at: datetime
    dispatched: bool
    reason: str
    digest: str | None
    severity: str
    last_sent_at: datetime | None
    last_digest: str | None
    channels: tuple[str, ...] = field(default_factory=tuple)
    recipients: tuple[str, ...] = field(default_factory=tuple)
    failed_channels: tuple[str, ...] = field(default_factory=tuple)
    kind: str = "notification"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "decided_at": _iso(self.decided_at),
            "dispatched": self.dispatched,
            "reason": self.reason,
            "digest": self.digest,
            "severity": self.severity,
            "last_sent_at": _iso(self.last_sent_at),
            "last_digest": self.last_digest,
            "channels": list(self.channels),
            "recipients": list(self.recipients),
            "failed_channels": list(self.failed_channels),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotificationRecord:
        return cls(
            decided_at=_parse(data["decided_at"]),
            dispatched=bool(data["dispatched"]),
            reason=data["reason"],
            digest=data.get("digest"),
            severity=data["severity"],
            last_sent_at=_parse(data.get("last_sent_at")),
            last_digest=data.get("last_digest"),
            channels=tuple(data.get("channels") or ()),
            recipients=tuple(data.get("recipients") or ()),
            failed_channels=tuple(data.get("failed_channels") or ()),
        )


_DECODERS = {
    "refund.recognized": ScheduleAdjustment.from_dict,
    "refund.deferred": ScheduleAdjustment.from_dict,
    "acknowledgement": AlertAcknowledgement.from_dict,
    "notification": NotificationRecord.from_dict,
}


def decode_records(items: list[dict[str, Any]] | None) -> list[Any]:
    """Decode a stored list into typed records, rejecting unknown kinds."""
    records = []
    for item in items or []:
        decoder = _DECODERS.get(item.get("kind"))
        if decoder is None:
            raise ValueError(f"Unknown record kind: {item.get('kind')!r}")
        records.append(decoder(item))
    return records


def append_record(items: list[dict[str, Any]] | None, record: Any) -> list[dict[str, Any]]:
    """Return a new list with ``record`` appended; never mutates ``items``."""
    return [*(items or []), record.to_dict()]
