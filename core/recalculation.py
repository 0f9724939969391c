# File: custody_batch_engine/core/recalculation.py
"""
Recalculation of closed batches under revised gauge inputs.

:func:`recompute` is a pure what-if: it returns a candidate batch and the
differences, and never touches its input. :class:`RecalculationEngine`
decides whether a human must approve the change before the lifecycle
commits it.
"""

import copy
import datetime
import json
import logging
import math
import threading
import uuid
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, Union

from config import settings
from core import calculations
from core.audit_trail import AuditTrail
from core.errors import InvalidTransition, NotFound, ValidationFailed
from core.models.audit import AuditEventType
from core.models.batch import Batch, CLOSED_STATES
from core.models.recalculation import (
    RecalculationDifferences, RecalculationHistoryEntry, RecalculationOutcome, RecalculationResult, RevisedInputs,
)
from core.models.requests import RecalculateBatchRequest
from data.stores import AttributeStore
from utils.helpers import utc_now

if TYPE_CHECKING:
    from core.batch_lifecycle import BatchLifecycle

logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "recalc_history_"


def recompute(batch: Batch, revised: RevisedInputs) -> Tuple[Batch, RecalculationDifferences]:
    """
    Applies revised temperature, API gravity and BS&W to both gauges of a closed
    batch. Levels, TOV and timestamps are carried over unchanged.
    """
    if batch.closing is None or batch.transferred_nsv is None:
        raise InvalidTransition(f"Batch {batch.batch_number} has no closing gauge to recalculate.",
                                batch_id=batch.id)
    source = copy.deepcopy(batch)
    opening = source.opening.with_inputs(revised.opening_temperature, revised.opening_api_gravity,
                                         revised.opening_bsw)
    closing = source.closing.with_inputs(revised.closing_temperature, revised.closing_api_gravity,
                                         revised.closing_bsw)
    violations = calculations.validate_reading(opening) + calculations.validate_reading(closing)
    if violations:
        raise ValidationFailed(
            f"Revised inputs for batch {batch.batch_number} are out of range: "
            + "; ".join(v.constraint for v in violations),
            violations=violations, batch_id=batch.id)

    moved = calculations.transfer(opening, closing).magnitude()
    candidate = replace(source, opening=opening, closing=closing, transferred_nsv=moved.nsv,
                        transferred_mass=moved.mass, transferred_wia=moved.wia)

    old_nsv = batch.transferred_nsv
    nsv_diff = moved.nsv - old_nsv
    if old_nsv:
        percentage = nsv_diff / old_nsv * 100.0
    else:
        # Any quantity appearing on a zero baseline counts as a full change.
        percentage = math.copysign(100.0, nsv_diff) if nsv_diff else 0.0
    differences = RecalculationDifferences(
        opening_nsv=opening.nsv - batch.opening.nsv,
        closing_nsv=closing.nsv - batch.closing.nsv,
        transferred_nsv=nsv_diff,
        transferred_mass=moved.mass - (batch.transferred_mass or 0.0),
        percentage_change=percentage,
    )
    return candidate, differences


@dataclass(frozen=True)
class ApprovalPolicy:
    """Approval is required strictly above either threshold."""
    percent_threshold: float = settings.RECALC_APPROVAL_PERCENT_THRESHOLD
    mass_threshold_kg: float = settings.RECALC_APPROVAL_MASS_THRESHOLD_KG

    def evaluate(self, differences: RecalculationDifferences) -> Tuple[bool, Optional[str]]:
        reasons = []
        if abs(differences.percentage_change) > self.percent_threshold:
            reasons.append(f"NSV change of {differences.percentage_change:+.3f}% exceeds "
                           f"the {self.percent_threshold}% threshold")
        if abs(differences.transferred_mass) > self.mass_threshold_kg:
            reasons.append(f"mass change of {differences.transferred_mass:+.1f} kg exceeds "
                           f"the {self.mass_threshold_kg} kg threshold")
        if not reasons:
            return False, None
        return True, "Approval required: " + " and ".join(reasons) + "."


class RecalculationEngine:
    def __init__(self, lifecycle: "BatchLifecycle", records: AttributeStore, audit: AuditTrail,
                 policy: Optional[ApprovalPolicy] = None,
                 clock: Callable[[], datetime.datetime] = utc_now,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.lifecycle = lifecycle
        self.records = records
        self.audit = audit
        self.policy = policy or ApprovalPolicy()
        self.clock = clock
        self.id_factory = id_factory
        self._pending: Dict[str, RecalculationResult] = {}
        self._pending_lock = threading.Lock()
        self._history_lock = threading.Lock()

    def preview(self, request: RecalculateBatchRequest) -> RecalculationResult:
        batch = self.lifecycle.get(request.batch_id)
        if batch.status not in CLOSED_STATES:
            raise InvalidTransition(
                f"Batch {batch.batch_number} is {batch.status.value}; only closed or recalculated "
                f"batches can be recalculated.", batch_id=batch.id, status=batch.status.value)
        revised = request.revised_inputs()
        if revised.is_empty():
            raise ValidationFailed("No revised inputs supplied for recalculation.", batch_id=batch.id)
        candidate, differences = recompute(batch, revised)
        requires_approval, approval_reason = self.policy.evaluate(differences)
        return RecalculationResult(
            id=self.id_factory(), original=batch, recalculated=candidate, inputs=revised,
            differences=differences, requires_approval=requires_approval, approval_reason=approval_reason,
            reason=request.reason, requested_by=request.operator, requested_at=self.clock(),
        )

    def recalculate(self, request: RecalculateBatchRequest) -> RecalculationResult:
        """Commits immediately when within policy; otherwise parks the result for approval."""
        result = self.preview(request)
        if result.requires_approval:
            with self._pending_lock:
                self._pending[result.id] = result
            self._append_history(result, RecalculationOutcome.PENDING_APPROVAL, request.operator)
            logger.info(f"Recalculation {result.id} for batch {result.original.batch_number} awaits approval: "
                        f"{result.approval_reason}")
            return result

        committed = self.lifecycle.recalculate(result.batch_id, result.inputs, request.operator, request.reason,
                                               expected_original=result.original)
        self._append_history(result, RecalculationOutcome.APPLIED, request.operator)
        return replace(result, recalculated=committed)

    def _claim(self, batch_id: str, result: Union[RecalculationResult, str]) -> RecalculationResult:
        """Takes the result out of the pending set so it is decided exactly once."""
        result_id = result if isinstance(result, str) else result.id
        with self._pending_lock:
            found = self._pending.get(result_id)
            if found is not None and found.batch_id == batch_id:
                del self._pending[result_id]
        if found is None:
            if self._was_rejected(batch_id, result_id):
                raise InvalidTransition(f"Recalculation '{result_id}' was rejected and cannot be applied.",
                                        result_id=result_id, batch_id=batch_id)
            raise NotFound(f"No pending recalculation '{result_id}'.", result_id=result_id, batch_id=batch_id)
        if found.batch_id != batch_id:
            raise ValidationFailed(
                f"Recalculation {result_id} belongs to batch {found.batch_id}, not {batch_id}.",
                batch_id=batch_id, result_id=result_id)
        return found

    def _unclaim(self, result: RecalculationResult) -> None:
        with self._pending_lock:
            self._pending[result.id] = result

    def _was_rejected(self, batch_id: str, result_id: str) -> bool:
        try:
            entries = self.history(batch_id)
        except NotFound:
            return False
        return any(e.result_id == result_id and e.outcome == RecalculationOutcome.REJECTED for e in entries)

    def approve(self, batch_id: str, result: Union[RecalculationResult, str], actor: str) -> Batch:
        """Commits a pending result. Previews that were never submitted cannot be approved."""
        result = self._claim(batch_id, result)
        try:
            committed = self.lifecycle.recalculate(batch_id, result.inputs, actor,
                                                   f"{result.reason} (approved by {actor})",
                                                   expected_original=result.original)
        except Exception:
            self._unclaim(result)
            raise
        self._append_history(result, RecalculationOutcome.APPROVED, actor)
        return committed

    def reject(self, batch_id: str, result: Union[RecalculationResult, str], actor: str, reason: str) -> None:
        """Records the rejection. The batch itself is left exactly as it is."""
        result = self._claim(batch_id, result)
        try:
            batch = self.lifecycle.get(batch_id)
        except NotFound:
            self._unclaim(result)
            raise
        self._append_history(result, RecalculationOutcome.REJECTED, actor, rejection_reason=reason)
        self.audit.record(AuditEventType.UPDATED, batch, actor,
                          f"Recalculation rejected for batch {batch.batch_number}", {
                              "recalculation_id": result.id,
                              "rejection_reason": reason,
                              "requested_by": result.requested_by,
                              "differences": result.differences.to_dict(),
                          })
        logger.info(f"Recalculation {result.id} for batch {batch.batch_number} rejected by {actor}: {reason}")

    def pending(self, batch_id: Optional[str] = None) -> List[RecalculationResult]:
        with self._pending_lock:
            results = list(self._pending.values())
        return [r for r in results if batch_id is None or r.batch_id == batch_id]

    # --- History ---

    def history(self, batch_id: str) -> List[RecalculationHistoryEntry]:
        batch = self.lifecycle.get(batch_id)
        raw = self.records.get(batch.tank_id, f"{HISTORY_KEY_PREFIX}{batch_id}")
        return [RecalculationHistoryEntry.from_dict(item) for item in json.loads(raw)] if raw else []

    def _append_history(self, result: RecalculationResult, outcome: RecalculationOutcome, actor: str,
                        rejection_reason: Optional[str] = None) -> None:
        entry = RecalculationHistoryEntry.from_result(result, outcome, actor, self.clock(), rejection_reason)
        tank_id = result.original.tank_id
        key = f"{HISTORY_KEY_PREFIX}{result.batch_id}"
        with self._history_lock:
            raw = self.records.get(tank_id, key)
            entries = json.loads(raw) if raw else []
            entries.append(entry.to_dict())
            self.records.save(tank_id, key, json.dumps(entries))
