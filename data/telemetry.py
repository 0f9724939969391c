# File: custody_batch_engine/data/telemetry.py
"""
Telemetry and tank metadata sources.

Both telemetry calls return ``{key: [(timestamp, value), ...]}``. Keys with no
samples are simply absent from the result.
"""

import datetime
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from data.db_models import Asset, SensorReading
from data import database
from data.strapping_loader import get_strapping_table_litres
from utils.helpers import ensure_utc

logger = logging.getLogger(__name__)

Sample = Tuple[datetime.datetime, float]
TelemetryData = Dict[str, List[Sample]]


@dataclass(frozen=True)
class TankInfo:
    tank_id: str
    name: Optional[str] = None
    diameter_m: Optional[float] = None
    api_gravity_base: Optional[float] = None
    product: Optional[str] = None
    strapping_table: Optional[Dict[int, float]] = None


class TelemetrySource(Protocol):
    def latest(self, tank_id: str, keys: Iterable[str]) -> TelemetryData: ...

    def historical(self, tank_id: str, keys: Iterable[str], start_ts: datetime.datetime,
                   end_ts: datetime.datetime) -> TelemetryData: ...


class TankMetadataSource(Protocol):
    def get_tank(self, tank_id: str) -> Optional[TankInfo]: ...

    def list_tank_ids(self) -> List[str]: ...


class InMemoryTelemetrySource:
    """Process-local telemetry buffer, fed by ``record``. Used by tests and the demo runner."""

    def __init__(self):
        self._lock = threading.Lock()
        self._samples: Dict[str, Dict[str, List[Sample]]] = defaultdict(lambda: defaultdict(list))

    def record(self, tank_id: str, timestamp: datetime.datetime, **values: float) -> None:
        ts = ensure_utc(timestamp)
        with self._lock:
            for key, value in values.items():
                if value is not None:
                    self._samples[tank_id][key].append((ts, float(value)))

    def latest(self, tank_id: str, keys: Iterable[str]) -> TelemetryData:
        result: TelemetryData = {}
        with self._lock:
            series = self._samples.get(tank_id, {})
            for key in keys:
                samples = series.get(key)
                if samples:
                    result[key] = [max(samples, key=lambda s: s[0])]
        return result

    def historical(self, tank_id: str, keys: Iterable[str], start_ts: datetime.datetime,
                   end_ts: datetime.datetime) -> TelemetryData:
        start_ts, end_ts = ensure_utc(start_ts), ensure_utc(end_ts)
        result: TelemetryData = {}
        with self._lock:
            series = self._samples.get(tank_id, {})
            for key in keys:
                in_range = [s for s in series.get(key, []) if start_ts <= s[0] <= end_ts]
                if in_range:
                    result[key] = in_range
        return result


class InMemoryTankMetadataSource:
    def __init__(self, tanks: Optional[Iterable[TankInfo]] = None):
        self._tanks: Dict[str, TankInfo] = {t.tank_id: t for t in (tanks or [])}

    def add(self, tank: TankInfo) -> None:
        self._tanks[tank.tank_id] = tank

    def get_tank(self, tank_id: str) -> Optional[TankInfo]:
        return self._tanks.get(tank_id)

    def list_tank_ids(self) -> List[str]:
        return sorted(self._tanks)


class SqlTelemetrySource:
    """Reads the ``sensor_readings`` hypertable, one metric per key."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def latest(self, tank_id: str, keys: Iterable[str]) -> TelemetryData:
        result: TelemetryData = {}
        with self.session_factory() as db:
            for key in keys:
                row = db.execute(
                    select(SensorReading)
                    .where(SensorReading.asset_id == tank_id, SensorReading.metric_name == key,
                           SensorReading.value_numeric.is_not(None))
                    .order_by(SensorReading.time.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if row is not None:
                    result[key] = [(ensure_utc(row.time), float(row.value_numeric))]
        return result

    def historical(self, tank_id: str, keys: Iterable[str], start_ts: datetime.datetime,
                   end_ts: datetime.datetime) -> TelemetryData:
        keys = list(keys)
        result: TelemetryData = {}
        with self.session_factory() as db:
            rows = db.execute(
                select(SensorReading)
                .where(SensorReading.asset_id == tank_id, SensorReading.metric_name.in_(keys),
                       SensorReading.time >= start_ts, SensorReading.time <= end_ts,
                       SensorReading.value_numeric.is_not(None))
                .order_by(SensorReading.time)
            ).scalars().all()
            for row in rows:
                result.setdefault(row.metric_name, []).append((ensure_utc(row.time), float(row.value_numeric)))
        logger.debug(f"Historical telemetry for {tank_id}: {sum(len(v) for v in result.values())} samples "
                     f"between {start_ts} and {end_ts}")
        return result


class SqlTankMetadataSource:
    """Tank lookups from the ``assets`` table. Strapping comes from the DB, falling back to CSV files."""

    def __init__(self, session_factory: Callable[[], Session], use_strapping_files: bool = True):
        self.session_factory = session_factory
        self.use_strapping_files = use_strapping_files

    def get_tank(self, tank_id: str) -> Optional[TankInfo]:
        with self.session_factory() as db:
            asset = db.execute(select(Asset).where(Asset.asset_id == tank_id)).scalar_one_or_none()
            if asset is None:
                return None
            strapping = database.get_strapping_data_from_db(db, tank_id)
            if not strapping and self.use_strapping_files:
                strapping = get_strapping_table_litres(tank_id)
            return TankInfo(
                tank_id=asset.asset_id,
                name=asset.description or asset.asset_id,
                diameter_m=asset.diameter_m,
                api_gravity_base=asset.api_gravity_base,
                product=asset.product_service,
                strapping_table=strapping or None,
            )

    def list_tank_ids(self) -> List[str]:
        with self.session_factory() as db:
            return list(db.execute(
                select(Asset.asset_id).where(Asset.asset_type == 'StorageTank').order_by(Asset.asset_id)
            ).scalars().all())
