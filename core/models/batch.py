# File: custody_batch_engine/core/models/batch.py
import datetime
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from core import calculations
from utils.helpers import format_iso_datetime, parse_iso_datetime

logger = logging.getLogger(__name__)


class BatchType(str, Enum):
    RECEIVING = "receiving"
    DISPENSING = "dispensing"


class BatchStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    RECALCULATED = "recalculated"
    VOIDED = "voided"


CLOSED_STATES = (BatchStatus.CLOSED, BatchStatus.RECALCULATED)


class CaptureMethod(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    HISTORICAL = "historical"


class DataSource(str, Enum):
    MANUAL_ENTRY = "manual_entry"
    TELEMETRY = "telemetry"
    TELEMETRY_HISTORY = "telemetry_history"


@dataclass(frozen=True)
class GaugeReading:
    """
    One opening or closing measurement with its derived volumes.

    Instances are immutable. Derived fields are only ever produced together
    by :meth:`compute` or :meth:`with_inputs`.
    """
    timestamp: datetime.datetime
    operator: str
    level: float
    temperature: float
    api_gravity: float
    bsw: float
    tov: float
    gov: float
    gsv: float
    nsv: float
    mass: float
    wia: float
    capture_method: CaptureMethod = CaptureMethod.MANUAL
    data_source: DataSource = DataSource.MANUAL_ENTRY

    @classmethod
    def compute(cls, *, timestamp: datetime.datetime, operator: str, level: float, temperature: float,
                api_gravity: float, bsw: Optional[float], tov: float,
                capture_method: CaptureMethod = CaptureMethod.MANUAL,
                data_source: DataSource = DataSource.MANUAL_ENTRY,
                **extra: Any) -> "GaugeReading":
        derived = calculations.derive_volumes(tov, temperature, api_gravity, bsw)
        return cls(
            timestamp=timestamp, operator=operator, level=level, temperature=temperature,
            api_gravity=api_gravity, bsw=bsw or 0.0,
            tov=derived.tov, gov=derived.gov, gsv=derived.gsv, nsv=derived.nsv,
            mass=derived.mass, wia=derived.wia,
            capture_method=capture_method, data_source=data_source, **extra,
        )

    def with_inputs(self, temperature: Optional[float] = None, api_gravity: Optional[float] = None,
                    bsw: Optional[float] = None) -> "GaugeReading":
        """Returns a copy with revised scalar inputs. Level, TOV and timestamp are kept."""
        new_temperature = self.temperature if temperature is None else temperature
        new_api = self.api_gravity if api_gravity is None else api_gravity
        new_bsw = self.bsw if bsw is None else bsw
        derived = calculations.derive_volumes(self.tov, new_temperature, new_api, new_bsw)
        return replace(
            self, temperature=new_temperature, api_gravity=new_api, bsw=new_bsw,
            gov=derived.gov, gsv=derived.gsv, nsv=derived.nsv, mass=derived.mass, wia=derived.wia,
        )

    @property
    def density(self) -> float:
        return calculations.density_from_api_gravity(self.api_gravity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_iso_datetime(self.timestamp),
            "operator": self.operator,
            "level": self.level,
            "temperature": self.temperature,
            "api_gravity": self.api_gravity,
            "bsw": self.bsw,
            "tov": self.tov,
            "gov": self.gov,
            "gsv": self.gsv,
            "nsv": self.nsv,
            "mass": self.mass,
            "wia": self.wia,
            "capture_method": self.capture_method.value,
            "data_source": self.data_source.value,
        }

    @staticmethod
    def _base_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "timestamp": parse_iso_datetime(data["timestamp"]),
            "operator": data.get("operator") or "System",
            "level": float(data["level"]),
            "temperature": float(data["temperature"]),
            "api_gravity": float(data["api_gravity"]),
            "bsw": float(data.get("bsw") or 0.0),
            "tov": float(data["tov"]),
            "gov": float(data["gov"]),
            "gsv": float(data["gsv"]),
            "nsv": float(data["nsv"]),
            "mass": float(data["mass"]),
            "wia": float(data["wia"]),
            "capture_method": CaptureMethod(data.get("capture_method", CaptureMethod.MANUAL.value)),
            "data_source": DataSource(data.get("data_source", DataSource.MANUAL_ENTRY.value)),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GaugeReading":
        if "source_reliable" in data:
            return GaugeSnapshot.from_dict(data)
        return cls(**cls._base_kwargs(data))


@dataclass(frozen=True)
class GaugeSnapshot(GaugeReading):
    """A gauge reading captured from telemetry, tagged with freshness information."""
    source_reliable: bool = True
    telemetry_age_seconds: Optional[float] = None
    pressure: Optional[float] = None
    temperature_channels_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "source_reliable": self.source_reliable,
            "telemetry_age_seconds": self.telemetry_age_seconds,
            "pressure": self.pressure,
            "temperature_channels_used": self.temperature_channels_used,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GaugeSnapshot":
        age = data.get("telemetry_age_seconds")
        pressure = data.get("pressure")
        return cls(
            **cls._base_kwargs(data),
            source_reliable=bool(data.get("source_reliable", True)),
            telemetry_age_seconds=float(age) if age is not None else None,
            pressure=float(pressure) if pressure is not None else None,
            temperature_channels_used=int(data.get("temperature_channels_used", 0)),
        )


@dataclass
class Batch:
    """A custody-transfer batch. Only BatchLifecycle changes its state."""
    id: str
    batch_number: str
    tank_id: str
    batch_type: BatchType
    status: BatchStatus
    opening: GaugeReading
    created_at: datetime.datetime
    created_by: str
    tank_name: Optional[str] = None
    product: Optional[str] = None
    closing: Optional[GaugeReading] = None
    transferred_nsv: Optional[float] = None
    transferred_mass: Optional[float] = None
    transferred_wia: Optional[float] = None
    destination: Optional[str] = None
    transport_vehicle: Optional[str] = None
    driver_name: Optional[str] = None
    seal_numbers: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    closed_at: Optional[datetime.datetime] = None
    closed_by: Optional[str] = None
    recalculated_at: Optional[datetime.datetime] = None
    recalculated_by: Optional[str] = None
    recalculation_count: int = 0
    voided_at: Optional[datetime.datetime] = None
    voided_by: Optional[str] = None
    void_reason: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATES

    def check_invariants(self) -> List[str]:
        """Returns a description of every broken status/closing invariant."""
        problems = []
        has_closing_data = self.closing is not None and self.transferred_nsv is not None
        if self.status in CLOSED_STATES and not has_closing_data:
            problems.append(f"status {self.status.value} requires closing gauge and transferred quantities")
        if self.status == BatchStatus.OPEN and (self.closing is not None or self.transferred_nsv is not None):
            problems.append("open batch must not carry closing data")
        if (self.status == BatchStatus.VOIDED) != (self.void_reason is not None):
            problems.append("void_reason must be present exactly when status is voided")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batch_number": self.batch_number,
            "tank_id": self.tank_id,
            "tank_name": self.tank_name,
            "product": self.product,
            "batch_type": self.batch_type.value,
            "status": self.status.value,
            "opening": self.opening.to_dict(),
            "closing": self.closing.to_dict() if self.closing else None,
            "transferred_nsv": self.transferred_nsv,
            "transferred_mass": self.transferred_mass,
            "transferred_wia": self.transferred_wia,
            "destination": self.destination,
            "transport_vehicle": self.transport_vehicle,
            "driver_name": self.driver_name,
            "seal_numbers": list(self.seal_numbers),
            "notes": self.notes,
            "created_at": format_iso_datetime(self.created_at),
            "created_by": self.created_by,
            "closed_at": format_iso_datetime(self.closed_at),
            "closed_by": self.closed_by,
            "recalculated_at": format_iso_datetime(self.recalculated_at),
            "recalculated_by": self.recalculated_by,
            "recalculation_count": self.recalculation_count,
            "voided_at": format_iso_datetime(self.voided_at),
            "voided_by": self.voided_by,
            "void_reason": self.void_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Batch":
        def _opt_float(key):
            value = data.get(key)
            return float(value) if value is not None else None

        return cls(
            id=data["id"],
            batch_number=data["batch_number"],
            tank_id=data["tank_id"],
            tank_name=data.get("tank_name"),
            product=data.get("product"),
            batch_type=BatchType(data["batch_type"]),
            status=BatchStatus(data["status"]),
            opening=GaugeReading.from_dict(data["opening"]),
            closing=GaugeReading.from_dict(data["closing"]) if data.get("closing") else None,
            transferred_nsv=_opt_float("transferred_nsv"),
            transferred_mass=_opt_float("transferred_mass"),
            transferred_wia=_opt_float("transferred_wia"),
            destination=data.get("destination"),
            transport_vehicle=data.get("transport_vehicle"),
            driver_name=data.get("driver_name"),
            seal_numbers=list(data.get("seal_numbers") or []),
            notes=data.get("notes"),
            created_at=parse_iso_datetime(data["created_at"]),
            created_by=data.get("created_by") or "System",
            closed_at=parse_iso_datetime(data.get("closed_at")),
            closed_by=data.get("closed_by"),
            recalculated_at=parse_iso_datetime(data.get("recalculated_at")),
            recalculated_by=data.get("recalculated_by"),
            recalculation_count=int(data.get("recalculation_count") or 0),
            voided_at=parse_iso_datetime(data.get("voided_at")),
            voided_by=data.get("voided_by"),
            void_reason=data.get("void_reason"),
        )


@dataclass
class BatchStatistics:
    total_batches: int = 0
    open_batches: int = 0
    closed_batches: int = 0
    recalculated_batches: int = 0
    voided_batches: int = 0
    total_nsv_transferred: float = 0.0
    total_mass_transferred: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_batches": self.total_batches,
            "open_batches": self.open_batches,
            "closed_batches": self.closed_batches,
            "recalculated_batches": self.recalculated_batches,
            "voided_batches": self.voided_batches,
            "total_nsv_transferred": round(self.total_nsv_transferred, 3),
            "total_mass_transferred": round(self.total_mass_transferred, 2),
        }


@dataclass
class BatchPage:
    batches: List[Batch]
    total_count: int
    page_number: int
    page_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batches": [b.to_dict() for b in self.batches],
            "total_count": self.total_count,
            "page_number": self.page_number,
            "page_size": self.page_size,
        }
