import copy
import datetime as dt

import pytest

from core.errors import InvalidTransition, NotFound, ValidationFailed
from core.models.audit import AuditEventType
from core.models.batch import BatchStatus
from core.models.recalculation import RecalculationDifferences, RecalculationOutcome, RevisedInputs
from core.models.requests import CloseBatchRequest, RecalculateBatchRequest, VoidBatchRequest
from core.recalculation import ApprovalPolicy, recompute

from tests.conftest import T0


def _differences(percentage=0.0, mass=0.0):
    return RecalculationDifferences(opening_nsv=0.0, closing_nsv=0.0, transferred_nsv=0.0,
                                    transferred_mass=mass, percentage_change=percentage)


@pytest.mark.parametrize("percentage, required", [
    (0.5, False), (-0.5, False), (0.4999, False), (0.5001, True), (-0.51, True),
])
def test_percentage_threshold_boundary(percentage, required):
    needs_approval, reason = ApprovalPolicy().evaluate(_differences(percentage=percentage))
    assert needs_approval is required
    assert (reason is not None) is required


@pytest.mark.parametrize("mass, required", [(100.0, False), (-100.0, False), (100.01, True), (-250.0, True)])
def test_mass_threshold_boundary(mass, required):
    assert ApprovalPolicy().evaluate(_differences(mass=mass))[0] is required


def test_policy_thresholds_are_tunable():
    assert ApprovalPolicy(percent_threshold=2.0).evaluate(_differences(percentage=1.0))[0] is False


def test_recompute_never_mutates_its_input(closed_batch):
    snapshot = copy.deepcopy(closed_batch.to_dict())
    candidate, _ = recompute(closed_batch, RevisedInputs(closing_bsw=5.0, opening_temperature=20.0))
    assert closed_batch.to_dict() == snapshot
    assert candidate.closing.bsw == 5.0
    assert candidate.opening.level == closed_batch.opening.level
    assert candidate.closing.level == closed_batch.closing.level
    assert candidate.opening.timestamp == closed_batch.opening.timestamp
    assert candidate.closing.timestamp == closed_batch.closing.timestamp


def test_recompute_rejects_out_of_range_inputs(closed_batch):
    with pytest.raises(ValidationFailed):
        recompute(closed_batch, RevisedInputs(closing_bsw=150.0))


def test_small_change_is_committed_immediately(engine, closed_batch):
    result = engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="thermometer calibration",
        closing_temperature=29.01))
    assert result.requires_approval is False
    batch = engine.get_batch(closed_batch.id)
    assert batch.status == BatchStatus.RECALCULATED
    assert batch.recalculation_count == 1
    assert batch.closing.temperature == 29.01
    assert batch.closing.level == closed_batch.closing.level
    assert batch.opening.timestamp == closed_batch.opening.timestamp
    assert "Recalculated: thermometer calibration" in batch.notes
    assert batch.transferred_nsv == abs(batch.opening.nsv - batch.closing.nsv)
    history = engine.recalculation_history(closed_batch.id)
    assert [h.outcome for h in history] == [RecalculationOutcome.APPLIED]


def test_large_change_requires_approval_and_reject_keeps_batch_closed(engine, closed_batch):
    result = engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="lab BS&W", closing_bsw=5.0))
    assert result.requires_approval is True
    assert result.approval_reason.startswith("Approval required")
    assert abs(result.differences.percentage_change) > 0.5
    assert engine.get_batch(closed_batch.id).status == BatchStatus.CLOSED

    engine.reject_recalculation(closed_batch.id, result.id, "supervisor", "sample contaminated")
    batch = engine.get_batch(closed_batch.id)
    assert batch.status == BatchStatus.CLOSED
    assert batch.to_dict() == closed_batch.to_dict()
    assert engine.pending_recalculations(closed_batch.id) == []

    history = engine.recalculation_history(closed_batch.id)
    assert [h.outcome for h in history] == [RecalculationOutcome.PENDING_APPROVAL, RecalculationOutcome.REJECTED]
    assert history[-1].rejection_reason == "sample contaminated"
    assert history[-1].actor == "supervisor"
    latest = engine.audit_trail(batch_id=closed_batch.id)[0]
    assert latest.event_type == AuditEventType.UPDATED
    assert latest.details["rejection_reason"] == "sample contaminated"


def test_approve_commits_pending_result(engine, closed_batch):
    result = engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="lab BS&W", closing_bsw=5.0))
    batch = engine.approve_recalculation(closed_batch.id, result.id, "supervisor")
    assert batch.status == BatchStatus.RECALCULATED
    assert batch.closing.bsw == 5.0
    assert batch.transferred_nsv == pytest.approx(result.recalculated.transferred_nsv)
    with pytest.raises(NotFound):
        engine.approve_recalculation(closed_batch.id, result.id, "supervisor")


def test_approve_refuses_stale_preview(engine, closed_batch):
    pending = engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="lab BS&W", closing_bsw=5.0))
    engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="tiny fix", closing_temperature=29.01))
    with pytest.raises(InvalidTransition):
        engine.approve_recalculation(closed_batch.id, pending.id, "supervisor")


def test_recalculate_requires_closed_batch(engine, open_batch):
    with pytest.raises(InvalidTransition):
        engine.recalculate_batch(RecalculateBatchRequest(
            batch_id=open_batch.id, operator="carol", reason="x", closing_bsw=1.0))


def test_recalculate_voided_batch_fails(engine, closed_batch):
    engine.void_batch(VoidBatchRequest(batch_id=closed_batch.id, operator="sup", reason="dup"))
    with pytest.raises(InvalidTransition):
        engine.recalculate_batch(RecalculateBatchRequest(
            batch_id=closed_batch.id, operator="carol", reason="x", closing_bsw=1.0))


def test_recalculate_without_inputs_fails(engine, closed_batch):
    with pytest.raises(ValidationFailed):
        engine.recalculate_batch(RecalculateBatchRequest(batch_id=closed_batch.id, operator="c", reason="x"))


def test_result_for_other_batch_is_refused(engine, closed_batch):
    result = engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="lab", closing_bsw=5.0))
    with pytest.raises(ValidationFailed):
        engine.approve_recalculation("another-batch", result, "supervisor")


def test_rejected_recalculation_cannot_be_approved(engine, closed_batch):
    result = engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="lab BS&W", closing_bsw=5.0))
    engine.reject_recalculation(closed_batch.id, result, "supervisor", "sample contaminated")

    with pytest.raises(InvalidTransition):
        engine.approve_recalculation(closed_batch.id, result, "supervisor")
    with pytest.raises(InvalidTransition):
        engine.approve_recalculation(closed_batch.id, result.id, "supervisor")
    batch = engine.get_batch(closed_batch.id)
    assert batch.status == BatchStatus.CLOSED
    assert batch.to_dict() == closed_batch.to_dict()
    assert [h.outcome for h in engine.recalculation_history(closed_batch.id)] == [
        RecalculationOutcome.PENDING_APPROVAL, RecalculationOutcome.REJECTED]


def test_unsubmitted_preview_cannot_be_approved(engine, closed_batch):
    preview = engine.preview_recalculation(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="lab BS&W", closing_bsw=5.0))
    with pytest.raises(NotFound):
        engine.approve_recalculation(closed_batch.id, preview, "supervisor")
    assert engine.get_batch(closed_batch.id).status == BatchStatus.CLOSED


def test_failed_approval_leaves_result_pending(engine, closed_batch):
    pending = engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="lab BS&W", closing_bsw=5.0))
    engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=closed_batch.id, operator="carol", reason="tiny fix", closing_temperature=29.01))
    with pytest.raises(InvalidTransition):
        engine.approve_recalculation(closed_batch.id, pending, "supervisor")
    assert [r.id for r in engine.pending_recalculations(closed_batch.id)] == [pending.id]


def test_change_on_zero_transfer_requires_approval(engine, open_batch, clock):
    clock.advance(hours=1)
    idle = engine.close_batch(CloseBatchRequest(
        batch_id=open_batch.id, operator="bob", closing_level=8500, closing_temperature=28.5,
        closing_api_gravity=35.2, closing_bsw=0.3, closing_timestamp=T0 + dt.timedelta(hours=1)))
    assert idle.transferred_nsv == 0.0

    _, unchanged = recompute(idle, RevisedInputs(closing_bsw=0.3))
    assert unchanged.percentage_change == 0.0

    result = engine.recalculate_batch(RecalculateBatchRequest(
        batch_id=idle.id, operator="carol", reason="late temperature", closing_temperature=29.0))
    assert result.differences.transferred_nsv != 0.0
    assert abs(result.differences.percentage_change) == 100.0
    assert result.requires_approval is True
    assert engine.get_batch(idle.id).status == BatchStatus.CLOSED
