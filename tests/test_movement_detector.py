import datetime as dt
import time

import pytest

from core.models.batch import BatchType
from core.models.movement import MovementType
from core.models.requests import CreateBatchRequest
from core.movement_detector import (
    MovementDetector, MovementMonitorRegistry, build_movement_event, classify_movement, compute_confidence,
    compute_rate, suggestion_for_event,
)

from tests.conftest import T0, TANK_ID


def _rising(count=5, step_mm=15.0, every_s=10, start_level=1000.0):
    return [(T0 + dt.timedelta(seconds=i * every_s), start_level + i * step_mm) for i in range(count)]


def test_rising_buffer_classifies_as_receiving():
    samples = _rising()
    rate, change, elapsed = compute_rate(samples)
    assert rate == pytest.approx(5400.0)
    assert change == 60.0
    assert elapsed == 40.0
    event = build_movement_event(TANK_ID, samples)
    assert event.movement_type == MovementType.RECEIVING
    assert event.rate_mm_per_hour > 5.0
    assert 0.0 < event.confidence <= 1.0


def test_flat_buffer_is_idle_with_zero_confidence():
    samples = [(T0 + dt.timedelta(seconds=10 * i), 4200.0) for i in range(5)]
    event = build_movement_event(TANK_ID, samples)
    assert event.movement_type == MovementType.IDLE
    assert event.confidence == 0.0


def test_falling_level_is_dispensing():
    assert classify_movement(-120.0) == MovementType.DISPENSING
    assert classify_movement(4.9) == MovementType.IDLE


def test_confidence_is_bounded():
    assert compute_confidence([0.0, 1000.0], MovementType.RECEIVING) == 0.0
    assert compute_confidence([500.0], MovementType.RECEIVING) == 0.0


def test_single_sample_gives_no_event():
    assert build_movement_event(TANK_ID, _rising(count=1)) is None


def test_suggestion_requires_confidence_and_movement():
    event = build_movement_event(TANK_ID, _rising())
    suggestion = suggestion_for_event(event)
    assert suggestion.should_suggest is True
    assert suggestion.suggested_type == BatchType.RECEIVING
    assert suggestion.estimated_duration_hours == pytest.approx(10000 * 0.5 / 5400.0)
    assert suggestion_for_event(event, min_confidence=1.1).should_suggest is False


def test_detector_keeps_last_samples_and_skips_duplicates(telemetry):
    detector = MovementDetector(TANK_ID, telemetry, buffer_size=3)
    for ts, level in _rising(count=5):
        detector.add_sample(ts, level)
    detector.add_sample(T0, 999.0)
    assert [level for _, level in detector.buffer()] == [1030.0, 1045.0, 1060.0]


def test_subscribers_receive_events_and_stream_closes_on_stop(telemetry):
    detector = MovementDetector(TANK_ID, telemetry)
    subscription = detector.subscribe()
    for ts, level in _rising():
        detector.add_sample(ts, level)
    detector.stop()
    received = list(subscription)
    assert len(received) == 4
    assert received[-1].movement_type == MovementType.RECEIVING
    assert detector.buffer() == []
    assert detector.add_sample(T0 + dt.timedelta(minutes=5), 2000.0) is None
    assert subscription.get(timeout=0.01) is None


def test_polling_thread_reads_level_telemetry(telemetry):
    detector = MovementDetector(TANK_ID, telemetry, interval_seconds=0.01)
    subscription = detector.subscribe()
    detector.start()
    try:
        for ts, level in _rising(count=3):
            telemetry.record(TANK_ID, ts, level=level)
            deadline = time.monotonic() + 2.0
            while (not detector.buffer() or detector.buffer()[-1][0] != ts) and time.monotonic() < deadline:
                time.sleep(0.01)
        event = subscription.get(timeout=2.0)
        assert event is not None
        assert event.tank_id == TANK_ID
    finally:
        detector.stop()
    assert not detector.running


def test_registry_applies_suggestion_cooldown(telemetry, clock):
    registry = MovementMonitorRegistry(telemetry, clock=clock)
    registry.start_monitoring(TANK_ID, autostart=False).close()
    for ts, level in _rising():
        registry.detector(TANK_ID).add_sample(ts, level)

    assert registry.suggest_batch(TANK_ID).should_suggest is True
    registry.dismiss_suggestion(TANK_ID)
    assert registry.suggest_batch(TANK_ID).should_suggest is False
    clock.advance(seconds=301)
    assert registry.suggest_batch(TANK_ID).should_suggest is True

    assert registry.stop_monitoring(TANK_ID) is True
    assert registry.monitored_tanks() == []
    assert registry.suggest_batch(TANK_ID).should_suggest is False


def test_registry_reuses_detector_per_tank(telemetry, clock):
    registry = MovementMonitorRegistry(telemetry, clock=clock)
    first = registry.start_monitoring(TANK_ID, autostart=False)
    second = registry.start_monitoring(TANK_ID, autostart=False)
    assert registry.monitored_tanks() == [TANK_ID]
    registry.stop_all()
    assert first.get(timeout=0.01) is None
    assert second.closed


def test_creating_a_batch_starts_the_suggestion_cooldown(engine, clock):
    engine.movement.start_monitoring(TANK_ID, autostart=False).close()
    for ts, level in _rising():
        engine.movement.detector(TANK_ID).add_sample(ts, level)
    assert engine.suggest_batch(TANK_ID).should_suggest is True

    engine.create_batch(CreateBatchRequest(
        tank_id=TANK_ID, batch_type=BatchType.RECEIVING, operator="alice",
        opening_level=1000, opening_temperature=20.0, opening_api_gravity=35.0, opening_bsw=0.1,
        opening_timestamp=T0))
    assert engine.suggest_batch(TANK_ID).should_suggest is False
    clock.advance(seconds=301)
    assert engine.suggest_batch(TANK_ID).should_suggest is True
