import datetime as dt
import threading

import pytest

from core.errors import InvalidTransition, NotFound, TelemetryUnavailable, ValidationFailed
from core.models.audit import AuditEventType
from core.models.batch import BatchStatus, BatchType, CLOSED_STATES
from core.models.recalculation import RevisedInputs
from core.models.requests import (
    BatchFilter, CloseBatchRequest, CreateBatchRequest, HistoricalBatchRequest, VoidBatchRequest,
)

from tests.conftest import T0, TANK_ID


def _assert_invariants(batch):
    has_closing = batch.closing is not None
    has_transfer = batch.transferred_nsv is not None
    if batch.status == BatchStatus.VOIDED:
        assert batch.void_reason
        return
    assert (batch.status in CLOSED_STATES) == has_closing == has_transfer
    assert batch.check_invariants() == []


def test_create_opens_batch_with_numbered_id(open_batch):
    assert open_batch.status == BatchStatus.OPEN
    assert open_batch.batch_number == "BATCH-2024-001"
    assert open_batch.tank_name == "Crude Tank 01"
    _assert_invariants(open_batch)


def test_batch_numbers_increase_per_year(engine, open_batch):
    second = engine.create_batch(CreateBatchRequest(
        tank_id=TANK_ID, batch_type=BatchType.RECEIVING, operator="alice",
        opening_level=1000, opening_temperature=20.0))
    assert second.batch_number == "BATCH-2024-002"


def test_reference_transfer_uses_derived_nsv_exactly(closed_batch):
    assert closed_batch.status == BatchStatus.CLOSED
    assert closed_batch.transferred_nsv == abs(closed_batch.opening.nsv - closed_batch.closing.nsv)
    assert closed_batch.transferred_mass == abs(closed_batch.opening.mass - closed_batch.closing.mass)
    assert closed_batch.transferred_nsv == pytest.approx(406.8, rel=1e-3)
    _assert_invariants(closed_batch)


def test_close_on_non_open_batch_fails_and_leaves_batch_unchanged(engine, closed_batch):
    before = engine.get_batch(closed_batch.id).to_dict()
    with pytest.raises(InvalidTransition):
        engine.close_batch(CloseBatchRequest(batch_id=closed_batch.id, operator="eve",
                                             closing_level=100, closing_temperature=20.0))
    assert engine.get_batch(closed_batch.id).to_dict() == before


def test_close_before_opening_timestamp_is_rejected(engine, open_batch):
    with pytest.raises(ValidationFailed):
        engine.close_batch(CloseBatchRequest(
            batch_id=open_batch.id, operator="bob", closing_level=7000, closing_temperature=29.0,
            closing_timestamp=T0 - dt.timedelta(minutes=1)))
    assert engine.get_batch(open_batch.id).status == BatchStatus.OPEN


def test_direction_mismatch_is_recorded_in_audit(engine, audit_store, clock):
    batch = engine.create_batch(CreateBatchRequest(
        tank_id=TANK_ID, batch_type=BatchType.RECEIVING, operator="alice",
        opening_level=8000, opening_temperature=25.0))
    clock.advance(hours=1)
    closed = engine.close_batch(CloseBatchRequest(batch_id=batch.id, operator="bob",
                                                  closing_level=7000, closing_temperature=25.0))
    assert closed.transferred_nsv > 0
    closed_event = engine.audit_trail(batch_id=batch.id)[0]
    assert closed_event.event_type == AuditEventType.CLOSED
    assert closed_event.details["direction_consistent"] is False


def test_unknown_tank_is_a_validation_failure(engine):
    with pytest.raises(ValidationFailed):
        engine.create_batch(CreateBatchRequest(tank_id="GHOST", batch_type=BatchType.RECEIVING,
                                               operator="alice", opening_level=10, opening_temperature=20.0))


def test_create_from_live_telemetry(engine, telemetry):
    telemetry.record(TANK_ID, T0, level=6000.0, temperature_19=30.0, temperature_20=31.0)
    batch = engine.create_batch(CreateBatchRequest(tank_id=TANK_ID, batch_type=BatchType.DISPENSING,
                                                   operator="alice"))
    assert batch.opening.level == 6000.0
    assert batch.opening.temperature == pytest.approx(30.5)
    assert batch.opening.source_reliable is True


def test_require_reliable_telemetry_rejects_stale_snapshot(engine, telemetry):
    telemetry.record(TANK_ID, T0 - dt.timedelta(minutes=5), level=6000.0, temperature_19=30.0)
    with pytest.raises(TelemetryUnavailable):
        engine.create_batch(CreateBatchRequest(tank_id=TANK_ID, batch_type=BatchType.DISPENSING,
                                               operator="alice", require_reliable_telemetry=True))


def test_void_is_terminal(engine, closed_batch):
    voided = engine.void_batch(VoidBatchRequest(batch_id=closed_batch.id, operator="sup", reason="duplicate"))
    assert voided.status == BatchStatus.VOIDED
    assert voided.void_reason == "duplicate"
    assert voided.closing is not None
    with pytest.raises(InvalidTransition):
        engine.void_batch(VoidBatchRequest(batch_id=closed_batch.id, operator="sup", reason="again"))
    with pytest.raises(InvalidTransition):
        engine.close_batch(CloseBatchRequest(batch_id=closed_batch.id, operator="sup",
                                             closing_level=1, closing_temperature=20.0))


def test_get_missing_batch(engine):
    with pytest.raises(NotFound):
        engine.get_batch("missing")


def test_audit_events_follow_transitions(engine, closed_batch):
    engine.void_batch(VoidBatchRequest(batch_id=closed_batch.id, operator="sup", reason="test"))
    types = [e.event_type for e in engine.audit_trail(batch_id=closed_batch.id)]
    assert set(types) == {AuditEventType.CREATED, AuditEventType.CLOSED, AuditEventType.VOIDED}


def test_list_batches_filters_and_paginates(engine, closed_batch, clock):
    for _ in range(3):
        clock.advance(minutes=10)
        engine.create_batch(CreateBatchRequest(tank_id=TANK_ID, batch_type=BatchType.RECEIVING,
                                               operator="carol", opening_level=500, opening_temperature=20.0))
    page = engine.list_batches(BatchFilter(status=BatchStatus.OPEN, page_size=2))
    assert page.total_count == 3
    assert len(page.batches) == 2
    assert page.batches[0].created_at >= page.batches[1].created_at

    closed = engine.list_batches(BatchFilter(operator="bob"))
    assert [b.id for b in closed.batches] == [closed_batch.id]

    by_number = engine.list_batches(BatchFilter(batch_number="batch-2024-001"))
    assert by_number.total_count == 1


def test_statistics(engine, closed_batch):
    stats = engine.batch_statistics()
    assert stats.total_batches == 1
    assert stats.closed_batches == 1
    assert stats.total_nsv_transferred == pytest.approx(closed_batch.transferred_nsv)


def test_historical_batch_is_created_closed(engine, telemetry, clock):
    start, end = T0 - dt.timedelta(hours=3), T0 - dt.timedelta(hours=1)
    telemetry.record(TANK_ID, start, level=9000.0, temperature_19=28.0)
    telemetry.record(TANK_ID, end, level=6000.0, temperature_19=29.0)
    batch = engine.create_historical_batch(HistoricalBatchRequest(
        tank_id=TANK_ID, batch_type=BatchType.DISPENSING, operator="alice", start_time=start, end_time=end))
    assert batch.status == BatchStatus.CLOSED
    assert batch.opening.level == 9000.0
    assert batch.closing.level == 6000.0
    assert batch.transferred_nsv == abs(batch.opening.nsv - batch.closing.nsv)
    assert "Historical batch" in batch.notes


def _race(*calls):
    """Runs the calls on separate threads released together; returns (successes, errors)."""
    barrier = threading.Barrier(len(calls))
    successes, errors = [], []

    def run(call):
        barrier.wait()
        try:
            successes.append(call())
        except InvalidTransition as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return successes, errors


def _close_request(batch_id, operator):
    return CloseBatchRequest(
        batch_id=batch_id, operator=operator, closing_level=7200, closing_temperature=29.0,
        closing_api_gravity=35.3, closing_bsw=0.4, closing_timestamp=T0 + dt.timedelta(hours=2))


def test_concurrent_closes_apply_exactly_once(engine, open_batch, clock):
    clock.advance(hours=2)
    successes, errors = _race(lambda: engine.close_batch(_close_request(open_batch.id, "bob")),
                              lambda: engine.close_batch(_close_request(open_batch.id, "dave")))
    assert len(successes) == 1
    assert len(errors) == 1
    batch = engine.get_batch(open_batch.id)
    assert batch.status == BatchStatus.CLOSED
    assert batch.closed_by == successes[0].closed_by
    assert batch.check_invariants() == []
    closes = [e for e in engine.audit_trail(batch_id=open_batch.id) if e.event_type == AuditEventType.CLOSED]
    assert len(closes) == 1


def test_concurrent_recalculations_against_one_original_commit_once(engine, closed_batch):
    def commit(actor):
        return lambda: engine.lifecycle.recalculate(
            closed_batch.id, RevisedInputs(closing_temperature=29.01), actor, "calibration",
            expected_original=closed_batch)

    successes, errors = _race(commit("carol"), commit("erin"))
    assert len(successes) == 1
    assert len(errors) == 1
    batch = engine.get_batch(closed_batch.id)
    assert batch.status == BatchStatus.RECALCULATED
    assert batch.recalculation_count == 1
    assert batch.check_invariants() == []


def test_batch_locks_are_released_after_use(engine, closed_batch):
    engine.void_batch(VoidBatchRequest(batch_id=closed_batch.id, operator="sup", reason="dup"))
    with pytest.raises(InvalidTransition):
        engine.void_batch(VoidBatchRequest(batch_id=closed_batch.id, operator="sup", reason="dup"))
    assert engine.lifecycle._locks == {}
