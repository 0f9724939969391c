# File: custody_batch_engine/core/lab_reconciler.py
import datetime
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from config import settings
from core.errors import AlreadyRejected, InvalidTransition, NoMatchingBatch, NotFound
from core.models.batch import Batch
from core.models.lab import (
    AssociationStatus, LabBatchAssociation, LabResult, RecalculationSuggestion, VarianceAnalysis,
)
from core.models.recalculation import RecalculationResult
from core.models.requests import RecalculateBatchRequest
from data.stores import AssociationStore
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VarianceThresholds:
    api_gravity: float = settings.LAB_API_GRAVITY_THRESHOLD
    temperature: float = settings.LAB_TEMPERATURE_THRESHOLD
    bsw: float = settings.LAB_BSW_THRESHOLD
    percentage: float = settings.LAB_PERCENTAGE_THRESHOLD


def analyze_variance(lab: LabResult, batch: Batch,
                     thresholds: VarianceThresholds = VarianceThresholds()) -> VarianceAnalysis:
    """Compares a lab result against the batch's closing gauge."""
    closing = batch.closing
    api_diff = lab.api_gravity - closing.api_gravity
    temperature_diff = lab.temperature - closing.temperature
    bsw_diff = lab.bsw - closing.bsw
    percentage_diff = abs(api_diff / closing.api_gravity) * 100.0 if closing.api_gravity else 0.0

    exceeded = []
    if abs(api_diff) > thresholds.api_gravity:
        exceeded.append(f"API gravity differs by {api_diff:+.2f}°")
    if abs(temperature_diff) > thresholds.temperature:
        exceeded.append(f"temperature differs by {temperature_diff:+.2f} °C")
    if abs(bsw_diff) > thresholds.bsw:
        exceeded.append(f"BS&W differs by {bsw_diff:+.2f}%")
    if percentage_diff > thresholds.percentage:
        exceeded.append(f"relative API gravity difference is {percentage_diff:.2f}%")

    significant = bool(exceeded)
    has_variance = any(d != 0 for d in (api_diff, temperature_diff, bsw_diff))
    if significant:
        reason = "Significant variance: " + "; ".join(exceeded) + "."
        recommendation = f"Review batch {batch.batch_number} and recalculate with the laboratory values."
    elif has_variance:
        reason = "Variance within tolerance."
        recommendation = "No action required."
    else:
        reason = "Laboratory values match the closing gauge."
        recommendation = "No action required."
    return VarianceAnalysis(
        has_variance=has_variance, is_significant=significant,
        api_gravity_diff=api_diff, temperature_diff=temperature_diff, bsw_diff=bsw_diff,
        percentage_diff=percentage_diff, reason=reason, recommendation=recommendation,
    )


def suggest_recalculation(variance: VarianceAnalysis, batch: Batch) -> RecalculationSuggestion:
    if not variance.is_significant:
        return RecalculationSuggestion(False, variance.reason, 0.0, 0.0)
    # Coarse heuristic, not a metrological estimate.
    impact = abs(variance.percentage_diff / 100.0 * batch.closing.gsv * 0.01)
    return RecalculationSuggestion(
        should_recalculate=True,
        reason=variance.reason,
        estimated_impact_bbl=impact,
        confidence=min(1.0, variance.percentage_diff / 2.0),
    )


class LabBatchReconciler:
    def __init__(self, lifecycle, store: AssociationStore, recalculations=None,
                 thresholds: Optional[VarianceThresholds] = None,
                 clock: Callable[[], datetime.datetime] = utc_now,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.lifecycle = lifecycle
        self.store = store
        self.recalculations = recalculations
        self.thresholds = thresholds or VarianceThresholds()
        self.clock = clock
        self.id_factory = id_factory

    def find_matching_batch(self, lab: LabResult) -> Batch:
        """Most recently closed batch on the tank whose closing gauge is not after the lab sample."""
        candidates = [b for b in self.lifecycle.closed_batches_for_tank(lab.tank_id)
                      if b.closing is not None and b.closing.timestamp <= lab.timestamp]
        if not candidates:
            raise NoMatchingBatch(
                f"No closed batch on tank {lab.tank_id} with closing gauge at or before "
                f"{lab.timestamp.isoformat()}.", tank_id=lab.tank_id, lab_result_id=lab.id)
        return max(candidates, key=lambda b: b.closing.timestamp)

    def associate(self, lab: LabResult) -> LabBatchAssociation:
        batch = self.find_matching_batch(lab)
        previous = self.store.find(lab_result_id=lab.id, batch_id=batch.id)
        if any(a.status == AssociationStatus.REJECTED for a in previous):
            raise AlreadyRejected(
                f"Lab result {lab.id} was already rejected for batch {batch.batch_number}.",
                lab_result_id=lab.id, batch_id=batch.id)

        variance = analyze_variance(lab, batch, self.thresholds)
        association = LabBatchAssociation(
            id=self.id_factory(), lab_result=lab, batch_id=batch.id, batch_number=batch.batch_number,
            tank_id=batch.tank_id, created_at=self.clock(), variance=variance,
            suggestion=suggest_recalculation(variance, batch),
        )
        self.store.save(association)
        level = logging.WARNING if variance.is_significant else logging.INFO
        logger.log(level, f"Lab result {lab.id} associated with batch {batch.batch_number}: {variance.reason}")
        return association

    def get(self, association_id: str) -> LabBatchAssociation:
        association = self.store.get(association_id)
        if association is None:
            raise NotFound(f"Lab association '{association_id}' not found.", association_id=association_id)
        return association

    def for_batch(self, batch_id: str) -> List[LabBatchAssociation]:
        return self.store.find(batch_id=batch_id)

    def for_tank(self, tank_id: str) -> List[LabBatchAssociation]:
        return self.store.find(tank_id=tank_id)

    def pending(self) -> List[LabBatchAssociation]:
        return self.store.find(status=AssociationStatus.PENDING)

    def update_status(self, association_id: str, status: AssociationStatus, actor: str) -> LabBatchAssociation:
        current = self.get(association_id)
        if current.status != AssociationStatus.PENDING and status != current.status:
            if not (current.status == AssociationStatus.APPROVED and status == AssociationStatus.RECALCULATED):
                raise InvalidTransition(
                    f"Lab association {association_id} is {current.status.value}; cannot mark {status.value}.",
                    association_id=association_id)
        updated = replace(current, status=status, updated_at=self.clock(), updated_by=actor)
        self.store.save(updated)
        logger.info(f"Lab association {association_id} marked {status.value} by {actor}")
        return updated

    def recalculate_from_association(self, association_id: str, actor: str) -> RecalculationResult:
        """
        Submits the lab values as revised closing inputs. The association is
        marked recalculated when the change was committed, approved when it
        is waiting for a recalculation approval.
        """
        if self.recalculations is None:
            raise InvalidTransition("No recalculation engine is configured.", association_id=association_id)
        association = self.get(association_id)
        if association.status in (AssociationStatus.REJECTED, AssociationStatus.RECALCULATED):
            raise InvalidTransition(
                f"Lab association {association_id} is {association.status.value}.",
                association_id=association_id)
        lab = association.lab_result
        request = RecalculateBatchRequest(
            batch_id=association.batch_id,
            operator=actor,
            reason=f"Laboratory result {lab.id} ({lab.operator})",
            closing_temperature=lab.temperature,
            closing_api_gravity=lab.api_gravity,
            closing_bsw=lab.bsw,
        )
        result = self.recalculations.recalculate(request)
        status = AssociationStatus.APPROVED if result.requires_approval else AssociationStatus.RECALCULATED
        self.update_status(association_id, status, actor)
        return result

    def clear(self) -> int:
        return self.store.clear()
