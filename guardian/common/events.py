"""
Guardian — Change Events

Pydantic envelopes published on the change-notification stream after every
committed write. Subscribers treat them as a "something changed" signal and
re-read authoritative state; payload ordering is never trusted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Table(str, Enum):
    TRACKING_SESSIONS = "tracking_sessions"
    ALERTS = "alerts"
    PROFILES = "profiles"


class RecordChangedEvent(BaseModel):
    """Common envelope for all store change notifications."""
    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    source: str = "guardian"
    table: Table
    event_type: ChangeType
    record_id: str
    owner_id: Optional[str] = None
    status: Optional[str] = None

    def to_message(self) -> dict:
        return {
            "type": "RECORD_CHANGED",
            "table": self.table.value,
            "event_type": self.event_type.value,
            "record_id": self.record_id,
            "owner_id": self.owner_id,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }
