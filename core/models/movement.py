# File: custody_batch_engine/core/models/movement.py
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from core.models.batch import BatchType
from utils.helpers import format_iso_datetime


class MovementType(str, Enum):
    RECEIVING = "receiving"
    DISPENSING = "dispensing"
    IDLE = "idle"


@dataclass(frozen=True)
class MovementEvent:
    """Classification of a tank's level trend over the current sample buffer. Not persisted."""
    tank_id: str
    timestamp: datetime.datetime
    movement_type: MovementType
    rate_mm_per_hour: float
    confidence: float
    level_change_mm: float
    duration_seconds: float
    current_level_mm: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tank_id": self.tank_id,
            "timestamp": format_iso_datetime(self.timestamp),
            "movement_type": self.movement_type.value,
            "rate_mm_per_hour": round(self.rate_mm_per_hour, 2),
            "confidence": round(self.confidence, 4),
            "level_change_mm": round(self.level_change_mm, 2),
            "duration_seconds": round(self.duration_seconds, 1),
            "current_level_mm": self.current_level_mm,
        }


@dataclass(frozen=True)
class BatchSuggestion:
    tank_id: str
    should_suggest: bool
    confidence: float
    reason: str
    suggested_type: Optional[BatchType] = None
    estimated_duration_hours: Optional[float] = None
    movement: Optional[MovementEvent] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tank_id": self.tank_id,
            "should_suggest": self.should_suggest,
            "suggested_type": self.suggested_type.value if self.suggested_type else None,
            "confidence": round(self.confidence, 4),
            "estimated_duration_hours": (round(self.estimated_duration_hours, 2)
                                         if self.estimated_duration_hours is not None else None),
            "reason": self.reason,
            "movement": self.movement.to_dict() if self.movement else None,
        }
