import datetime as dt

import pytest

from core.errors import AlreadyRejected, InvalidTransition, NoMatchingBatch, NotFound, ReconciliationOutcome
from core.lab_reconciler import LabBatchReconciler, VarianceThresholds, analyze_variance, suggest_recalculation
from core.models.batch import BatchStatus
from core.models.lab import AssociationStatus, LabResult

from tests.conftest import T0, TANK_ID


def _lab(result_id="LAB-1", hours_after=3, api_gravity=35.3, temperature=29.0, bsw=0.4, tank_id=TANK_ID):
    return LabResult(id=result_id, tank_id=tank_id, timestamp=T0 + dt.timedelta(hours=hours_after),
                     api_gravity=api_gravity, temperature=temperature, bsw=bsw, operator="QA Lab")


def test_significant_api_gravity_variance(closed_batch):
    variance = analyze_variance(_lab(api_gravity=36.0), closed_batch)
    assert variance.is_significant is True
    assert variance.api_gravity_diff == pytest.approx(0.7)
    assert variance.percentage_diff == pytest.approx(0.7 / 35.3 * 100)
    assert "API gravity" in variance.reason

    suggestion = suggest_recalculation(variance, closed_batch)
    assert suggestion.should_recalculate is True
    assert suggestion.confidence == pytest.approx(min(1.0, variance.percentage_diff / 2.0))
    assert suggestion.estimated_impact_bbl == pytest.approx(
        variance.percentage_diff / 100.0 * closed_batch.closing.gsv * 0.01)


def test_small_variance_is_not_significant(closed_batch):
    variance = analyze_variance(_lab(api_gravity=35.35, temperature=29.5), closed_batch)
    assert variance.has_variance is True
    assert variance.is_significant is False
    assert suggest_recalculation(variance, closed_batch).should_recalculate is False


def test_identical_values_have_no_variance(closed_batch):
    variance = analyze_variance(_lab(), closed_batch)
    assert variance.has_variance is False
    assert variance.percentage_diff == 0.0


def test_thresholds_are_strict(closed_batch):
    variance = analyze_variance(_lab(temperature=31.0), closed_batch, VarianceThresholds(temperature=2.0))
    assert variance.is_significant is False


def test_associate_matches_latest_closed_batch(engine, closed_batch):
    association = engine.associate_lab_result(_lab(api_gravity=36.0))
    assert association.batch_id == closed_batch.id
    assert association.batch_number == closed_batch.batch_number
    assert association.status == AssociationStatus.PENDING
    assert association.variance.is_significant is True
    assert engine.lab_association(association.id) == association
    assert engine.lab_associations(batch_id=closed_batch.id) == [association]
    assert engine.lab_associations(tank_id=TANK_ID) == [association]
    assert engine.lab_associations(pending_only=True) == [association]


def test_lab_result_before_any_closing_has_no_match(engine, closed_batch):
    with pytest.raises(NoMatchingBatch) as exc:
        engine.associate_lab_result(_lab(hours_after=1))
    assert isinstance(exc.value, ReconciliationOutcome)


def test_lab_result_for_open_batch_only_has_no_match(engine, open_batch):
    with pytest.raises(NoMatchingBatch):
        engine.associate_lab_result(_lab())


def test_rejected_pair_cannot_be_associated_again(engine, closed_batch):
    association = engine.associate_lab_result(_lab(api_gravity=36.0))
    rejected = engine.update_lab_association(association.id, AssociationStatus.REJECTED, "qa-lead")
    assert rejected.status == AssociationStatus.REJECTED
    assert rejected.updated_by == "qa-lead"
    with pytest.raises(AlreadyRejected):
        engine.associate_lab_result(_lab(api_gravity=36.0))
    with pytest.raises(InvalidTransition):
        engine.update_lab_association(association.id, AssociationStatus.APPROVED, "qa-lead")


def test_unknown_association(engine):
    with pytest.raises(NotFound):
        engine.lab_association("missing")


def test_recalculate_from_association_commits_small_change(engine, closed_batch):
    association = engine.associate_lab_result(_lab(temperature=29.01))
    result = engine.recalculate_from_lab(association.id, "qa-lead")
    assert result.requires_approval is False
    assert engine.get_batch(closed_batch.id).status == BatchStatus.RECALCULATED
    assert engine.lab_association(association.id).status == AssociationStatus.RECALCULATED
    with pytest.raises(InvalidTransition):
        engine.recalculate_from_lab(association.id, "qa-lead")


def test_recalculate_from_association_waits_for_approval(engine, closed_batch):
    association = engine.associate_lab_result(_lab(api_gravity=36.0))
    result = engine.recalculate_from_lab(association.id, "qa-lead")
    assert result.requires_approval is True
    assert result.inputs.closing_api_gravity == 36.0
    assert engine.lab_association(association.id).status == AssociationStatus.APPROVED
    assert engine.get_batch(closed_batch.id).status == BatchStatus.CLOSED

    engine.approve_recalculation(closed_batch.id, result.id, "supervisor")
    updated = engine.update_lab_association(association.id, AssociationStatus.RECALCULATED, "supervisor")
    assert updated.status == AssociationStatus.RECALCULATED
    assert engine.get_batch(closed_batch.id).closing.api_gravity == 36.0


def test_recalculation_needs_an_engine(engine, closed_batch, association_store):
    reconciler = LabBatchReconciler(engine.lifecycle, association_store)
    association = reconciler.associate(_lab(result_id="LAB-2", api_gravity=36.0))
    with pytest.raises(InvalidTransition):
        reconciler.recalculate_from_association(association.id, "qa-lead")
    assert reconciler.clear() == 1
