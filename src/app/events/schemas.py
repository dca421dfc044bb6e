"""Event schemas for the deal change feed.

Every committed deal command emits one or more DealEvent records. External
collaborators (chat, notifications, live views) consume the feed; the deal
core never reads it back. Events serialize to flat string dicts for Redis
Streams and deserialize back losslessly.

Stream key pattern: deals:events:{stream_name}
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class DealEventType(str, Enum):
    """Kinds of change announced on the feed."""

    DEAL_CREATED = "deal.created"
    DEAL_TRANSITIONED = "deal.transitioned"
    TERMS_PROPOSED = "terms.proposed"
    TERMS_ACCEPTED = "terms.accepted"
    ESCROW_UPDATED = "escrow.updated"
    FILE_ATTACHED = "file.attached"
    MARKING_UPDATED = "marking.updated"


class DealEvent(BaseModel):
    """One committed change to a deal.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        version: Schema version for forward compatibility.
        event_type: What happened.
        timestamp: UTC creation time.
        deal_id: Deal the change belongs to.
        actor_id: Party whose command produced the change.
        recipient_id: Counterparty to notify (None when nobody is).
        from_status: Deal status before the change.
        to_status: Deal status after the change.
        summary: Human-readable one-liner (the audit action).
        payload: Small structured details (audit metadata).
        audit_entry_id: Audit log entry describing the change.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: str = "1.0"
    event_type: DealEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deal_id: str
    actor_id: str
    recipient_id: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    summary: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    audit_entry_id: int | None = None

    @property
    def is_transition(self) -> bool:
        return self.from_status is not None and self.from_status != self.to_status

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize all fields to a flat dict of strings for Redis Streams.

        Redis Streams require all field values to be strings. The payload
        is JSON-encoded; datetimes use ISO format; None becomes empty string.

        Returns:
            Dictionary with string keys and string values suitable for XADD.
        """
        return {
            "event_id": self.event_id,
            "version": self.version,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "deal_id": self.deal_id,
            "actor_id": self.actor_id,
            "recipient_id": self.recipient_id or "",
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "summary": self.summary,
            "payload": json.dumps(self.payload, default=str),
            "audit_entry_id": str(self.audit_entry_id) if self.audit_entry_id is not None else "",
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> DealEvent:
        """Deserialize from a Redis Streams flat dict back to DealEvent.

        Reverses the encoding performed by ``to_stream_dict()``.

        Args:
            raw: Dictionary of string key-value pairs from XREADGROUP.

        Returns:
            Reconstructed DealEvent instance.
        """
        return cls(
            event_id=raw["event_id"],
            version=raw.get("version", "1.0"),
            event_type=DealEventType(raw["event_type"]),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            deal_id=raw["deal_id"],
            actor_id=raw["actor_id"],
            recipient_id=raw.get("recipient_id") or None,
            from_status=raw.get("from_status") or None,
            to_status=raw.get("to_status") or None,
            summary=raw.get("summary", ""),
            payload=json.loads(raw["payload"]) if raw.get("payload") else {},
            audit_entry_id=int(raw["audit_entry_id"]) if raw.get("audit_entry_id") else None,
        )
