# File: custody_batch_engine/core/models/recalculation.py
import datetime
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Optional

from core.models.batch import Batch
from utils.helpers import format_iso_datetime, parse_iso_datetime


@dataclass(frozen=True)
class RevisedInputs:
    """Scalar gauge inputs that may change after closure. ``None`` keeps the recorded value."""
    opening_temperature: Optional[float] = None
    opening_api_gravity: Optional[float] = None
    opening_bsw: Optional[float] = None
    closing_temperature: Optional[float] = None
    closing_api_gravity: Optional[float] = None
    closing_bsw: Optional[float] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RevisedInputs":
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})


@dataclass(frozen=True)
class RecalculationDifferences:
    opening_nsv: float
    closing_nsv: float
    transferred_nsv: float
    transferred_mass: float
    percentage_change: float

    def to_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecalculationDifferences":
        return cls(**{f.name: float(data[f.name]) for f in fields(cls)})


@dataclass(frozen=True)
class RecalculationResult:
    """A what-if preview of a recalculation. Nothing is committed by creating one."""
    id: str
    original: Batch
    recalculated: Batch
    inputs: RevisedInputs
    differences: RecalculationDifferences
    requires_approval: bool
    approval_reason: Optional[str]
    reason: str
    requested_by: str
    requested_at: datetime.datetime

    @property
    def batch_id(self) -> str:
        return self.original.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "original": self.original.to_dict(),
            "recalculated": self.recalculated.to_dict(),
            "inputs": self.inputs.to_dict(),
            "differences": self.differences.to_dict(),
            "requires_approval": self.requires_approval,
            "approval_reason": self.approval_reason,
            "reason": self.reason,
            "requested_by": self.requested_by,
            "requested_at": format_iso_datetime(self.requested_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecalculationResult":
        return cls(
            id=data["id"],
            original=Batch.from_dict(data["original"]),
            recalculated=Batch.from_dict(data["recalculated"]),
            inputs=RevisedInputs.from_dict(data.get("inputs") or {}),
            differences=RecalculationDifferences.from_dict(data["differences"]),
            requires_approval=bool(data["requires_approval"]),
            approval_reason=data.get("approval_reason"),
            reason=data.get("reason") or "",
            requested_by=data.get("requested_by") or "System",
            requested_at=parse_iso_datetime(data["requested_at"]),
        )


class RecalculationOutcome(str, Enum):
    APPLIED = "applied"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RecalculationHistoryEntry:
    result_id: str
    batch_id: str
    batch_number: str
    outcome: RecalculationOutcome
    actor: str
    timestamp: datetime.datetime
    reason: str
    inputs: RevisedInputs
    differences: RecalculationDifferences
    original_transferred_nsv: Optional[float]
    new_transferred_nsv: Optional[float]
    original_transferred_mass: Optional[float]
    new_transferred_mass: Optional[float]
    rejection_reason: Optional[str] = None

    @classmethod
    def from_result(cls, result: RecalculationResult, outcome: RecalculationOutcome, actor: str,
                    timestamp: datetime.datetime,
                    rejection_reason: Optional[str] = None) -> "RecalculationHistoryEntry":
        return cls(
            result_id=result.id,
            batch_id=result.original.id,
            batch_number=result.original.batch_number,
            outcome=outcome,
            actor=actor,
            timestamp=timestamp,
            reason=result.reason,
            inputs=result.inputs,
            differences=result.differences,
            original_transferred_nsv=result.original.transferred_nsv,
            new_transferred_nsv=result.recalculated.transferred_nsv,
            original_transferred_mass=result.original.transferred_mass,
            new_transferred_mass=result.recalculated.transferred_mass,
            rejection_reason=rejection_reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result_id": self.result_id,
            "batch_id": self.batch_id,
            "batch_number": self.batch_number,
            "outcome": self.outcome.value,
            "actor": self.actor,
            "timestamp": format_iso_datetime(self.timestamp),
            "reason": self.reason,
            "inputs": self.inputs.to_dict(),
            "differences": self.differences.to_dict(),
            "original_transferred_nsv": self.original_transferred_nsv,
            "new_transferred_nsv": self.new_transferred_nsv,
            "original_transferred_mass": self.original_transferred_mass,
            "new_transferred_mass": self.new_transferred_mass,
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecalculationHistoryEntry":
        return cls(
            result_id=data["result_id"],
            batch_id=data["batch_id"],
            batch_number=data["batch_number"],
            outcome=RecalculationOutcome(data["outcome"]),
            actor=data["actor"],
            timestamp=parse_iso_datetime(data["timestamp"]),
            reason=data.get("reason") or "",
            inputs=RevisedInputs.from_dict(data.get("inputs") or {}),
            differences=RecalculationDifferences.from_dict(data["differences"]),
            original_transferred_nsv=data.get("original_transferred_nsv"),
            new_transferred_nsv=data.get("new_transferred_nsv"),
            original_transferred_mass=data.get("original_transferred_mass"),
            new_transferred_mass=data.get("new_transferred_mass"),
            rejection_reason=data.get("rejection_reason"),
        )
