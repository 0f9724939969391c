# File: custody_batch_engine/core/gauge_capture.py
"""
Gauge capture from manual entry, live telemetry, or historical telemetry.

Every capture path ends in :meth:`GaugeReading.compute`, so derived volumes
are produced by the same calculation chain regardless of source.
"""

import concurrent.futures
import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from config import settings
from core import calculations
from core.errors import (
    BatchEngineError, CaptureTimeout, MissingTelemetry, NoHistoricalData, NotFound,
    TelemetryUnavailable, ValidationFailed,
)
from core.models.batch import CaptureMethod, DataSource, GaugeReading, GaugeSnapshot
from data.telemetry import TankInfo, TankMetadataSource, TelemetryData, TelemetrySource
from utils.helpers import ensure_utc, utc_now
from utils.volume_calculator import VolumeCalculator

logger = logging.getLogger(__name__)

LEVEL_KEY = "level"
PRESSURE_KEY = "pressure"
API_GRAVITY_KEY = "api_gravity"
BSW_KEY = "bsw"


class GaugeCapture:
    def __init__(self, telemetry: TelemetrySource, tanks: TankMetadataSource,
                 volume_calculator: Optional[VolumeCalculator] = None,
                 temperature_channels: Optional[Sequence[str]] = None,
                 max_age_seconds: Optional[float] = None,
                 historical_tolerance_seconds: Optional[float] = None,
                 default_timeout_seconds: Optional[float] = None,
                 clock: Callable[[], datetime.datetime] = utc_now,
                 max_workers: int = 4):
        self.telemetry = telemetry
        self.tanks = tanks
        self.volume_calculator = volume_calculator or VolumeCalculator()
        self.temperature_channels = list(temperature_channels or settings.TEMPERATURE_CHANNELS)
        self.max_age_seconds = settings.TELEMETRY_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
        self.historical_tolerance_seconds = (settings.HISTORICAL_TOLERANCE_SECONDS
                                             if historical_tolerance_seconds is None
                                             else historical_tolerance_seconds)
        self.default_timeout_seconds = (settings.CAPTURE_TIMEOUT_SECONDS
                                        if default_timeout_seconds is None else default_timeout_seconds)
        self.clock = clock
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers,
                                                               thread_name_prefix="gauge-capture")

    @property
    def telemetry_keys(self) -> List[str]:
        return [LEVEL_KEY, *self.temperature_channels, PRESSURE_KEY, API_GRAVITY_KEY, BSW_KEY]

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # --- Tank lookups ---

    def get_tank(self, tank_id: str) -> TankInfo:
        try:
            tank = self.tanks.get_tank(tank_id)
        except BatchEngineError:
            raise
        except Exception as e:
            logger.error(f"Tank metadata lookup failed for {tank_id}: {e}", exc_info=True)
            raise TelemetryUnavailable(f"Tank metadata unavailable for {tank_id}: {e}",
                                       tank_id=tank_id, operation="get_tank") from e
        if tank is None:
            raise NotFound(f"Tank '{tank_id}' not found.", tank_id=tank_id)
        return tank

    def _resolve_api_gravity(self, tank: TankInfo, measured: Optional[float]) -> float:
        if measured is not None:
            return measured
        if tank.api_gravity_base is not None:
            return tank.api_gravity_base
        return settings.DEFAULT_API_GRAVITY

    # --- Manual entry ---

    def manual_reading(self, tank_id: str, operator: str, level: float, temperature: Optional[float],
                       api_gravity: Optional[float] = None, bsw: Optional[float] = None,
                       timestamp: Optional[datetime.datetime] = None) -> GaugeReading:
        """Builds a gauge reading from operator-entered values. Missing API gravity falls back to the tank base."""
        tank = self.get_tank(tank_id)
        api_gravity = self._resolve_api_gravity(tank, api_gravity)
        violations = calculations.validate(level, temperature, api_gravity, bsw)
        if violations:
            raise ValidationFailed(
                f"Gauge input for tank {tank_id} failed validation: "
                + "; ".join(v.constraint for v in violations),
                violations=violations, tank_id=tank_id,
            )
        tov = self.volume_calculator.calculate_tov(tank_id, level, tank.diameter_m, tank.strapping_table)
        return GaugeReading.compute(
            timestamp=ensure_utc(timestamp) if timestamp else self.clock(),
            operator=operator, level=level, temperature=temperature, api_gravity=api_gravity,
            bsw=bsw, tov=tov, capture_method=CaptureMethod.MANUAL, data_source=DataSource.MANUAL_ENTRY,
        )

    # --- Telemetry capture ---

    def capture_live(self, tank_id: str, operator: str = "System",
                     timeout: Optional[float] = None) -> GaugeSnapshot:
        tank = self.get_tank(tank_id)
        data = self._call_with_timeout(
            lambda: self.telemetry.latest(tank_id, self.telemetry_keys),
            timeout, tank_id, "live_capture",
        )
        level_sample = self._latest(data, LEVEL_KEY)
        if level_sample is None:
            raise MissingTelemetry(f"No level telemetry available for tank {tank_id}.",
                                   tank_id=tank_id, operation="live_capture")
        temperatures = [s[1] for s in (self._latest(data, ch) for ch in self.temperature_channels) if s]
        if not temperatures:
            raise MissingTelemetry(f"No temperature telemetry available for tank {tank_id}.",
                                   tank_id=tank_id, operation="live_capture")

        timestamp = level_sample[0]
        age = (self.clock() - timestamp).total_seconds()
        reliable = age <= self.max_age_seconds
        if not reliable:
            logger.warning(f"Telemetry for tank {tank_id} is {age:.0f}s old (limit {self.max_age_seconds}s); "
                           f"snapshot flagged unreliable.")
        return self._build_snapshot(
            tank, operator, timestamp, level_sample[1], temperatures,
            api_gravity=self._value(self._latest(data, API_GRAVITY_KEY)),
            bsw=self._value(self._latest(data, BSW_KEY)),
            pressure=self._value(self._latest(data, PRESSURE_KEY)),
            capture_method=CaptureMethod.AUTOMATIC, data_source=DataSource.TELEMETRY,
            source_reliable=reliable, age=age,
        )

    def capture_historical(self, tank_id: str, target: datetime.datetime, operator: str = "System",
                           tolerance_seconds: Optional[float] = None,
                           timeout: Optional[float] = None) -> GaugeSnapshot:
        tank = self.get_tank(tank_id)
        target = ensure_utc(target)
        tolerance = datetime.timedelta(
            seconds=self.historical_tolerance_seconds if tolerance_seconds is None else tolerance_seconds)
        start, end = target - tolerance, target + tolerance
        data = self._call_with_timeout(
            lambda: self.telemetry.historical(tank_id, self.telemetry_keys, start, end),
            timeout, tank_id, "historical_capture",
        )
        if not any(data.get(k) for k in data):
            raise NoHistoricalData(
                f"No telemetry for tank {tank_id} between {start.isoformat()} and {end.isoformat()}.",
                tank_id=tank_id, operation="historical_capture")

        point_ts, point = self.closest_sample_set(data, target)
        if point_ts is None or LEVEL_KEY not in point:
            raise MissingTelemetry(f"No level sample for tank {tank_id} near {target.isoformat()}.",
                                   tank_id=tank_id, operation="historical_capture")

        temperatures = [point[ch] for ch in self.temperature_channels if ch in point]
        if not temperatures:
            # Channels may be sampled on a different tick than level: use their nearest samples in the window.
            temperatures = [s[1] for s in (self._nearest(data.get(ch), point_ts)
                                           for ch in self.temperature_channels) if s]
        if not temperatures:
            raise MissingTelemetry(f"No temperature samples for tank {tank_id} near {target.isoformat()}.",
                                   tank_id=tank_id, operation="historical_capture")

        def _aux(key):
            if key in point:
                return point[key]
            return self._value(self._nearest(data.get(key), point_ts))

        return self._build_snapshot(
            tank, operator, point_ts, point[LEVEL_KEY], temperatures,
            api_gravity=_aux(API_GRAVITY_KEY), bsw=_aux(BSW_KEY), pressure=_aux(PRESSURE_KEY),
            capture_method=CaptureMethod.HISTORICAL, data_source=DataSource.TELEMETRY_HISTORY,
            source_reliable=True, age=abs((point_ts - target).total_seconds()),
        )

    @staticmethod
    def closest_sample_set(data: TelemetryData, target: datetime.datetime
                           ) -> Tuple[Optional[datetime.datetime], Dict[str, float]]:
        """
        Merges samples that share a timestamp into one set and returns the set
        closest to ``target``. Ties keep the first set found. Only sets that
        contain a level sample are eligible.
        """
        merged: Dict[datetime.datetime, Dict[str, float]] = {}
        for key, samples in data.items():
            for ts, value in samples or []:
                merged.setdefault(ensure_utc(ts), {}).setdefault(key, value)

        best_ts, best_gap = None, None
        for ts, values in merged.items():
            if LEVEL_KEY not in values:
                continue
            gap = abs((ts - target).total_seconds())
            if best_gap is None or gap < best_gap:
                best_ts, best_gap = ts, gap
        return best_ts, merged.get(best_ts, {}) if best_ts else {}

    def validate_data_availability(self, tank_id: str) -> Dict[str, Any]:
        """Reports whether live capture would succeed, without raising."""
        status: Dict[str, Any] = {"tank_id": tank_id, "available": False, "reliable": False,
                                  "age_seconds": None, "warnings": []}
        try:
            snapshot = self.capture_live(tank_id)
        except BatchEngineError as e:
            status["warnings"].append(e.reason)
            status["error"] = e.kind
            return status
        status.update(available=True, reliable=snapshot.source_reliable,
                      age_seconds=snapshot.telemetry_age_seconds)
        if not snapshot.source_reliable:
            status["warnings"].append(f"Telemetry is {snapshot.telemetry_age_seconds:.0f}s old.")
        if snapshot.temperature_channels_used < len(self.temperature_channels):
            status["warnings"].append(
                f"Only {snapshot.temperature_channels_used} of {len(self.temperature_channels)} "
                f"temperature channels reported.")
        return status

    # --- Internals ---

    def _build_snapshot(self, tank: TankInfo, operator: str, timestamp: datetime.datetime, level: float,
                        temperatures: List[float], api_gravity: Optional[float], bsw: Optional[float],
                        pressure: Optional[float], capture_method: CaptureMethod, data_source: DataSource,
                        source_reliable: bool, age: float) -> GaugeSnapshot:
        temperature = sum(temperatures) / len(temperatures)
        api_gravity = self._resolve_api_gravity(tank, api_gravity)
        bsw = 0.0 if bsw is None else bsw
        violations = calculations.validate(level, temperature, api_gravity, bsw)
        if violations:
            raise ValidationFailed(
                f"Telemetry for tank {tank.tank_id} is out of range: "
                + "; ".join(v.constraint for v in violations),
                violations=violations, tank_id=tank.tank_id,
            )
        tov = self.volume_calculator.calculate_tov(tank.tank_id, level, tank.diameter_m, tank.strapping_table)
        return GaugeSnapshot.compute(
            timestamp=timestamp, operator=operator, level=level, temperature=temperature,
            api_gravity=api_gravity, bsw=bsw, tov=tov,
            capture_method=capture_method, data_source=data_source,
            source_reliable=source_reliable, telemetry_age_seconds=age,
            pressure=settings.DEFAULT_PRESSURE_BAR if pressure is None else pressure,
            temperature_channels_used=len(temperatures),
        )

    def _call_with_timeout(self, fn: Callable[[], TelemetryData], timeout: Optional[float],
                           tank_id: str, operation: str) -> TelemetryData:
        timeout = self.default_timeout_seconds if timeout is None else timeout
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            logger.warning(f"{operation} for tank {tank_id} exceeded {timeout}s.")
            raise CaptureTimeout(f"{operation} for tank {tank_id} timed out after {timeout}s.",
                                 tank_id=tank_id, operation=operation, timeout_seconds=timeout) from e
        except BatchEngineError:
            raise
        except Exception as e:
            logger.error(f"Telemetry fetch failed during {operation} for tank {tank_id}: {e}", exc_info=True)
            raise TelemetryUnavailable(f"Telemetry source failed during {operation} for tank {tank_id}: {e}",
                                       tank_id=tank_id, operation=operation) from e

    @staticmethod
    def _latest(data: TelemetryData, key: str):
        samples = data.get(key)
        if not samples:
            return None
        return max(((ensure_utc(ts), v) for ts, v in samples), key=lambda s: s[0])

    @staticmethod
    def _nearest(samples, target: datetime.datetime):
        if not samples:
            return None
        return min(((ensure_utc(ts), v) for ts, v in samples), key=lambda s: abs((s[0] - target).total_seconds()))

    @staticmethod
    def _value(sample) -> Optional[float]:
        return sample[1] if sample else None
