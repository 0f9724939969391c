# File: custody_batch_engine/core/models/requests.py
"""Request payloads accepted by the batch engine and the HTTP API."""

import datetime
import uuid
from typing import List, Optional

from pydantic import BaseModel, Field, conint, field_validator, model_validator

from core.models.batch import BatchStatus, BatchType
from core.models.lab import LabResult
from core.models.recalculation import RevisedInputs
from utils.helpers import ensure_utc


def _strip_required(value: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError("must not be blank")
    return value


def _to_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    return ensure_utc(value) if value is not None else None


class CreateBatchRequest(BaseModel):
    """Opening gauge values are optional. When ``opening_level`` is omitted the gauge is captured from live telemetry."""
    tank_id: str
    batch_type: BatchType
    operator: str
    opening_level: Optional[float] = None
    opening_temperature: Optional[float] = None
    opening_api_gravity: Optional[float] = None
    opening_bsw: Optional[float] = None
    opening_timestamp: Optional[datetime.datetime] = None
    destination: Optional[str] = None
    transport_vehicle: Optional[str] = None
    driver_name: Optional[str] = None
    seal_numbers: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    require_reliable_telemetry: bool = False

    @field_validator("tank_id", "operator")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _strip_required(value)

    @field_validator("opening_timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return _to_utc(value)

    @property
    def is_manual(self) -> bool:
        return self.opening_level is not None


class CloseBatchRequest(BaseModel):
    batch_id: str
    operator: str
    closing_level: Optional[float] = None
    closing_temperature: Optional[float] = None
    closing_api_gravity: Optional[float] = None
    closing_bsw: Optional[float] = None
    closing_timestamp: Optional[datetime.datetime] = None
    seal_numbers: Optional[List[str]] = None
    notes: Optional[str] = None
    require_reliable_telemetry: bool = False

    @field_validator("batch_id", "operator")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _strip_required(value)

    @field_validator("closing_timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return _to_utc(value)

    @property
    def is_manual(self) -> bool:
        return self.closing_level is not None


class RecalculateBatchRequest(BaseModel):
    """Revised scalar inputs. Level and timestamps cannot be revised."""
    batch_id: str
    operator: str
    reason: str
    opening_temperature: Optional[float] = None
    opening_api_gravity: Optional[float] = None
    opening_bsw: Optional[float] = None
    closing_temperature: Optional[float] = None
    closing_api_gravity: Optional[float] = None
    closing_bsw: Optional[float] = None

    @field_validator("batch_id", "operator", "reason")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _strip_required(value)

    def revised_inputs(self) -> RevisedInputs:
        return RevisedInputs(
            opening_temperature=self.opening_temperature,
            opening_api_gravity=self.opening_api_gravity,
            opening_bsw=self.opening_bsw,
            closing_temperature=self.closing_temperature,
            closing_api_gravity=self.closing_api_gravity,
            closing_bsw=self.closing_bsw,
        )


class VoidBatchRequest(BaseModel):
    batch_id: str
    operator: str
    reason: str

    @field_validator("batch_id", "operator", "reason")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _strip_required(value)


class RejectRecalculationRequest(BaseModel):
    operator: str
    reason: str

    @field_validator("operator", "reason")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _strip_required(value)


class HistoricalBatchRequest(BaseModel):
    """Builds an already-closed batch from telemetry recorded at two past instants."""
    tank_id: str
    batch_type: BatchType
    operator: str
    start_time: datetime.datetime
    end_time: datetime.datetime
    tolerance_seconds: Optional[float] = Field(default=None, gt=0)
    destination: Optional[str] = None
    transport_vehicle: Optional[str] = None
    driver_name: Optional[str] = None
    seal_numbers: List[str] = Field(default_factory=list)
    notes: Optional[str] = None

    @field_validator("tank_id", "operator")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _strip_required(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timestamp(cls, value):
        return _to_utc(value)

    @model_validator(mode="after")
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class BatchFilter(BaseModel):
    tank_id: Optional[str] = None
    status: Optional[BatchStatus] = None
    batch_type: Optional[BatchType] = None
    batch_number: Optional[str] = None
    operator: Optional[str] = None
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    page_size: conint(gt=0, le=1000) = 50
    page_number: conint(ge=0) = 0

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_timestamp(cls, value):
        return _to_utc(value)


class LabResultPayload(BaseModel):
    tank_id: str
    timestamp: datetime.datetime
    api_gravity: float
    temperature: float
    bsw: float = 0.0
    operator: str = "Laboratory"
    density: Optional[float] = None
    viscosity: Optional[float] = None
    sample_id: Optional[str] = None
    id: Optional[str] = None

    @field_validator("tank_id")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _strip_required(value)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return _to_utc(value)

    def to_lab_result(self) -> LabResult:
        return LabResult(
            id=self.id or str(uuid.uuid4()),
            tank_id=self.tank_id,
            timestamp=self.timestamp,
            api_gravity=self.api_gravity,
            temperature=self.temperature,
            bsw=self.bsw,
            operator=self.operator,
            density=self.density,
            viscosity=self.viscosity,
            sample_id=self.sample_id,
        )
