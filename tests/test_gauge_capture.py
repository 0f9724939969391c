import datetime as dt
import math
import threading

import pytest

from core.errors import (
    CaptureTimeout, MissingTelemetry, NoHistoricalData, NotFound, TelemetryUnavailable, ValidationFailed,
)
from core.gauge_capture import GaugeCapture
from core.models.batch import CaptureMethod, DataSource
from data.telemetry import InMemoryTankMetadataSource, TankInfo

from tests.conftest import T0, TANK_ID


def _record_full_set(telemetry, ts, level=5000.0, temps=(30.0, 32.0), **extra):
    channels = {f"temperature_{19 + i}": t for i, t in enumerate(temps)}
    telemetry.record(TANK_ID, ts, level=level, **channels, **extra)


def test_live_capture_averages_available_channels(capture, telemetry, clock):
    _record_full_set(telemetry, T0 - dt.timedelta(seconds=5), temps=(30.0, 32.0, 34.0), api_gravity=36.0, bsw=0.2)
    snapshot = capture.capture_live(TANK_ID, "alice")
    assert snapshot.temperature == pytest.approx(32.0)
    assert snapshot.temperature_channels_used == 3
    assert snapshot.api_gravity == 36.0
    assert snapshot.bsw == 0.2
    assert snapshot.source_reliable is True
    assert snapshot.capture_method == CaptureMethod.AUTOMATIC
    assert snapshot.data_source == DataSource.TELEMETRY
    assert snapshot.tov == pytest.approx(math.pi * 100 * 5.0)


def test_live_capture_applies_fallbacks(capture, telemetry):
    _record_full_set(telemetry, T0)
    snapshot = capture.capture_live(TANK_ID)
    assert snapshot.api_gravity == 35.0
    assert snapshot.bsw == 0.0
    assert snapshot.pressure == pytest.approx(1.013)


def test_stale_telemetry_is_flagged_not_rejected(capture, telemetry):
    _record_full_set(telemetry, T0 - dt.timedelta(seconds=61))
    snapshot = capture.capture_live(TANK_ID)
    assert snapshot.source_reliable is False
    assert snapshot.telemetry_age_seconds == pytest.approx(61.0)


def test_missing_level_raises_missing_telemetry(capture, telemetry):
    telemetry.record(TANK_ID, T0, temperature_19=30.0)
    with pytest.raises(MissingTelemetry) as exc:
        capture.capture_live(TANK_ID)
    assert exc.value.context["tank_id"] == TANK_ID
    assert isinstance(exc.value, TelemetryUnavailable)


def test_missing_temperatures_raise_missing_telemetry(capture, telemetry):
    telemetry.record(TANK_ID, T0, level=4000.0)
    with pytest.raises(MissingTelemetry):
        capture.capture_live(TANK_ID)


def test_unknown_tank_raises_not_found(capture):
    with pytest.raises(NotFound):
        capture.capture_live("NOPE")


def test_historical_capture_picks_closest_set(capture, telemetry):
    _record_full_set(telemetry, T0 - dt.timedelta(seconds=40), level=4000.0)
    _record_full_set(telemetry, T0 + dt.timedelta(seconds=10), level=4100.0)
    _record_full_set(telemetry, T0 + dt.timedelta(seconds=50), level=4200.0)
    snapshot = capture.capture_historical(TANK_ID, T0)
    assert snapshot.level == 4100.0
    assert snapshot.timestamp == T0 + dt.timedelta(seconds=10)
    assert snapshot.capture_method == CaptureMethod.HISTORICAL
    assert snapshot.data_source == DataSource.TELEMETRY_HISTORY


def test_historical_capture_tie_keeps_first_found(capture, telemetry):
    _record_full_set(telemetry, T0 - dt.timedelta(seconds=20), level=3000.0)
    _record_full_set(telemetry, T0 + dt.timedelta(seconds=20), level=3100.0)
    assert capture.capture_historical(TANK_ID, T0).level == 3000.0


def test_historical_capture_without_samples_in_window(capture, telemetry):
    _record_full_set(telemetry, T0 - dt.timedelta(hours=1))
    with pytest.raises(NoHistoricalData):
        capture.capture_historical(TANK_ID, T0, tolerance_seconds=60)


def test_capture_times_out(tanks, clock):
    release = threading.Event()

    class SlowTelemetry:
        def latest(self, tank_id, keys):
            release.wait(5)
            return {}

        def historical(self, tank_id, keys, start_ts, end_ts):
            return {}

    slow = GaugeCapture(SlowTelemetry(), tanks, clock=clock)
    try:
        with pytest.raises(CaptureTimeout) as exc:
            slow.capture_live(TANK_ID, timeout=0.05)
        assert exc.value.kind == "Timeout"
    finally:
        release.set()
        slow.shutdown()


def test_collaborator_failure_is_wrapped_with_context(tanks, clock):
    class BrokenTelemetry:
        def latest(self, tank_id, keys):
            raise ConnectionError("broker down")

        def historical(self, tank_id, keys, start_ts, end_ts):
            raise ConnectionError("broker down")

    broken = GaugeCapture(BrokenTelemetry(), tanks, clock=clock)
    try:
        with pytest.raises(TelemetryUnavailable) as exc:
            broken.capture_live(TANK_ID)
        assert exc.value.context == {"tank_id": TANK_ID, "operation": "live_capture"}
    finally:
        broken.shutdown()


def test_manual_reading_validates_inputs(capture):
    with pytest.raises(ValidationFailed) as exc:
        capture.manual_reading(TANK_ID, "alice", level=-5, temperature=30.0)
    assert [v.field for v in exc.value.violations] == ["level"]


def test_manual_reading_uses_strapping_table(telemetry, clock):
    strapped = InMemoryTankMetadataSource([
        TankInfo(tank_id="T-STRAP", api_gravity_base=30.0, strapping_table={0: 0.0, 1000: 100000.0})
    ])
    gauge = GaugeCapture(telemetry, strapped, clock=clock)
    try:
        reading = gauge.manual_reading("T-STRAP", "alice", level=500, temperature=15.0)
        assert reading.tov == pytest.approx(50.0)
        assert reading.api_gravity == 30.0
        assert reading.timestamp == T0
    finally:
        gauge.shutdown()


def test_data_availability_reports_without_raising(capture, telemetry):
    report = capture.validate_data_availability(TANK_ID)
    assert report["available"] is False
    assert report["error"] == "MissingTelemetry"

    _record_full_set(telemetry, T0)
    report = capture.validate_data_availability(TANK_ID)
    assert report["available"] is True
    assert report["reliable"] is True
