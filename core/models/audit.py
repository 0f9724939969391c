# File: custody_batch_engine/core/models/audit.py
import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from utils.helpers import format_iso_datetime, parse_iso_datetime


class AuditEventType(str, Enum):
    CREATED = "created"
    CLOSED = "closed"
    RECALCULATED = "recalculated"
    VOIDED = "voided"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class AuditEvent:
    event_type: AuditEventType
    batch_id: str
    batch_number: Optional[str]
    timestamp: datetime.datetime
    actor: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "batch_id": self.batch_id,
            "batch_number": self.batch_number,
            "timestamp": format_iso_datetime(self.timestamp),
            "actor": self.actor,
            "action": self.action,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            id=data.get("id"),
            event_type=AuditEventType(data["event_type"]),
            batch_id=data["batch_id"],
            batch_number=data.get("batch_number"),
            timestamp=parse_iso_datetime(data["timestamp"]),
            actor=data.get("actor") or "System",
            action=data.get("action") or "",
            details=dict(data.get("details") or {}),
        )


@dataclass
class AuditFilter:
    batch_id: Optional[str] = None
    event_type: Optional[AuditEventType] = None
    actor: Optional[str] = None
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None
    limit: Optional[int] = None

    def matches(self, event: AuditEvent) -> bool:
        if self.batch_id and event.batch_id != self.batch_id:
            return False
        if self.event_type and event.event_type != self.event_type:
            return False
        if self.actor and event.actor != self.actor:
            return False
        if self.start_time and event.timestamp < self.start_time:
            return False
        if self.end_time and event.timestamp > self.end_time:
            return False
        return True
