# File: custody_batch_engine/core/models/lab.py
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from utils.helpers import format_iso_datetime, parse_iso_datetime


class AssociationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RECALCULATED = "recalculated"


@dataclass(frozen=True)
class LabResult:
    id: str
    tank_id: str
    timestamp: datetime.datetime
    api_gravity: float
    temperature: float
    bsw: float
    operator: str
    density: Optional[float] = None
    viscosity: Optional[float] = None
    sample_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tank_id": self.tank_id,
            "timestamp": format_iso_datetime(self.timestamp),
            "api_gravity": self.api_gravity,
            "temperature": self.temperature,
            "bsw": self.bsw,
            "operator": self.operator,
            "density": self.density,
            "viscosity": self.viscosity,
            "sample_id": self.sample_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LabResult":
        return cls(
            id=data["id"],
            tank_id=data["tank_id"],
            timestamp=parse_iso_datetime(data["timestamp"]),
            api_gravity=float(data["api_gravity"]),
            temperature=float(data["temperature"]),
            bsw=float(data.get("bsw") or 0.0),
            operator=data.get("operator") or "Laboratory",
            density=data.get("density"),
            viscosity=data.get("viscosity"),
            sample_id=data.get("sample_id"),
        )


@dataclass(frozen=True)
class VarianceAnalysis:
    has_variance: bool
    is_significant: bool
    api_gravity_diff: float
    temperature_diff: float
    bsw_diff: float
    percentage_diff: float
    reason: str
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_variance": self.has_variance,
            "is_significant": self.is_significant,
            "api_gravity_diff": self.api_gravity_diff,
            "temperature_diff": self.temperature_diff,
            "bsw_diff": self.bsw_diff,
            "percentage_diff": self.percentage_diff,
            "reason": self.reason,
            "recommendation": self.recommendation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VarianceAnalysis":
        return cls(**{k: data[k] for k in (
            "has_variance", "is_significant", "api_gravity_diff", "temperature_diff",
            "bsw_diff", "percentage_diff", "reason", "recommendation")})


@dataclass(frozen=True)
class RecalculationSuggestion:
    should_recalculate: bool
    reason: str
    estimated_impact_bbl: float
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_recalculate": self.should_recalculate,
            "reason": self.reason,
            "estimated_impact_bbl": self.estimated_impact_bbl,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecalculationSuggestion":
        return cls(
            should_recalculate=bool(data["should_recalculate"]),
            reason=data["reason"],
            estimated_impact_bbl=float(data["estimated_impact_bbl"]),
            confidence=float(data["confidence"]),
        )


@dataclass(frozen=True)
class LabBatchAssociation:
    id: str
    lab_result: LabResult
    batch_id: str
    batch_number: str
    tank_id: str
    created_at: datetime.datetime
    variance: VarianceAnalysis
    suggestion: RecalculationSuggestion
    status: AssociationStatus = AssociationStatus.PENDING
    updated_at: Optional[datetime.datetime] = None
    updated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lab_result": self.lab_result.to_dict(),
            "batch_id": self.batch_id,
            "batch_number": self.batch_number,
            "tank_id": self.tank_id,
            "created_at": format_iso_datetime(self.created_at),
            "variance": self.variance.to_dict(),
            "suggestion": self.suggestion.to_dict(),
            "status": self.status.value,
            "updated_at": format_iso_datetime(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LabBatchAssociation":
        return cls(
            id=data["id"],
            lab_result=LabResult.from_dict(data["lab_result"]),
            batch_id=data["batch_id"],
            batch_number=data["batch_number"],
            tank_id=data["tank_id"],
            created_at=parse_iso_datetime(data["created_at"]),
            variance=VarianceAnalysis.from_dict(data["variance"]),
            suggestion=RecalculationSuggestion.from_dict(data["suggestion"]),
            status=AssociationStatus(data.get("status", AssociationStatus.PENDING.value)),
            updated_at=parse_iso_datetime(data.get("updated_at")),
            updated_by=data.get("updated_by"),
        )
