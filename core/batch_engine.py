# File: custody_batch_engine/core/batch_engine.py
"""
Single entry point used by the HTTP API and the movement service.

Wires gauge capture, the batch lifecycle, recalculation, movement monitoring,
lab reconciliation and the audit trail around one set of collaborators.
"""

import datetime
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from config import settings
from core.audit_trail import AuditTrail
from core.batch_lifecycle import BatchLifecycle
from core.gauge_capture import GaugeCapture
from core.lab_reconciler import LabBatchReconciler, VarianceThresholds
from core.models.audit import AuditEvent, AuditFilter
from core.models.batch import Batch, BatchPage, BatchStatistics
from core.models.lab import AssociationStatus, LabBatchAssociation, LabResult
from core.models.movement import BatchSuggestion, MovementEvent
from core.models.recalculation import RecalculationHistoryEntry, RecalculationResult
from core.models.requests import (
    BatchFilter, CloseBatchRequest, CreateBatchRequest, HistoricalBatchRequest, RecalculateBatchRequest,
    VoidBatchRequest,
)
from core.movement_detector import MovementMonitorRegistry, MovementSubscription
from core.recalculation import ApprovalPolicy, RecalculationEngine
from data.stores import AssociationStore, AttributeStore, AuditStore
from data.telemetry import TankMetadataSource, TelemetrySource
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


class BatchEngine:
    def __init__(self, telemetry: TelemetrySource, tanks: TankMetadataSource, records: AttributeStore,
                 audit_store: AuditStore, associations: AssociationStore,
                 approval_policy: Optional[ApprovalPolicy] = None,
                 variance_thresholds: Optional[VarianceThresholds] = None,
                 capture: Optional[GaugeCapture] = None,
                 movement: Optional[MovementMonitorRegistry] = None,
                 clock: Callable[[], datetime.datetime] = utc_now,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.clock = clock
        self.audit = AuditTrail(audit_store, clock=clock)
        self.capture = capture or GaugeCapture(telemetry, tanks, clock=clock)
        self.lifecycle = BatchLifecycle(records, tanks, self.capture, self.audit, clock=clock,
                                        id_factory=id_factory)
        self.recalculations = RecalculationEngine(self.lifecycle, records, self.audit, policy=approval_policy,
                                                  clock=clock, id_factory=id_factory)
        self.movement = movement or MovementMonitorRegistry(telemetry, clock=clock)
        self.lab = LabBatchReconciler(self.lifecycle, associations, self.recalculations,
                                      thresholds=variance_thresholds, clock=clock, id_factory=id_factory)

    # --- Batches ---

    def create_batch(self, request: CreateBatchRequest, timeout: Optional[float] = None) -> Batch:
        batch = self.lifecycle.create(request, timeout)
        self.movement.acknowledge_suggestion(batch.tank_id)
        return batch

    def create_historical_batch(self, request: HistoricalBatchRequest, timeout: Optional[float] = None) -> Batch:
        return self.lifecycle.create_historical(request, timeout)

    def close_batch(self, request: CloseBatchRequest, timeout: Optional[float] = None) -> Batch:
        return self.lifecycle.close(request, timeout)

    def void_batch(self, request: VoidBatchRequest) -> Batch:
        return self.lifecycle.void(request)

    def get_batch(self, batch_id: str) -> Batch:
        return self.lifecycle.get(batch_id)

    def list_batches(self, batch_filter: Optional[BatchFilter] = None) -> BatchPage:
        return self.lifecycle.list_batches(batch_filter)

    def batch_statistics(self, tank_id: Optional[str] = None) -> BatchStatistics:
        return self.lifecycle.statistics(tank_id)

    def data_availability(self, tank_id: str) -> Dict[str, Any]:
        return self.capture.validate_data_availability(tank_id)

    # --- Recalculation ---

    def preview_recalculation(self, request: RecalculateBatchRequest) -> RecalculationResult:
        return self.recalculations.preview(request)

    def recalculate_batch(self, request: RecalculateBatchRequest) -> RecalculationResult:
        return self.recalculations.recalculate(request)

    def approve_recalculation(self, batch_id: str, result: Union[RecalculationResult, str], actor: str) -> Batch:
        return self.recalculations.approve(batch_id, result, actor)

    def reject_recalculation(self, batch_id: str, result: Union[RecalculationResult, str], actor: str,
                             reason: str) -> None:
        self.recalculations.reject(batch_id, result, actor, reason)

    def pending_recalculations(self, batch_id: Optional[str] = None) -> List[RecalculationResult]:
        return self.recalculations.pending(batch_id)

    def recalculation_history(self, batch_id: str) -> List[RecalculationHistoryEntry]:
        return self.recalculations.history(batch_id)

    # --- Movement ---

    def start_monitoring(self, tank_id: str) -> MovementSubscription:
        self.capture.get_tank(tank_id)
        return self.movement.start_monitoring(tank_id)

    def stop_monitoring(self, tank_id: str) -> bool:
        return self.movement.stop_monitoring(tank_id)

    def latest_movement(self, tank_id: str) -> Optional[MovementEvent]:
        return self.movement.latest_event(tank_id)

    def suggest_batch(self, tank_id: str) -> BatchSuggestion:
        return self.movement.suggest_batch(tank_id)

    def dismiss_suggestion(self, tank_id: str) -> datetime.datetime:
        return self.movement.dismiss_suggestion(tank_id)

    # --- Laboratory ---

    def associate_lab_result(self, lab_result: LabResult) -> LabBatchAssociation:
        return self.lab.associate(lab_result)

    def lab_association(self, association_id: str) -> LabBatchAssociation:
        return self.lab.get(association_id)

    def lab_associations(self, batch_id: Optional[str] = None, tank_id: Optional[str] = None,
                         pending_only: bool = False) -> List[LabBatchAssociation]:
        if pending_only:
            return self.lab.pending()
        if batch_id:
            return self.lab.for_batch(batch_id)
        if tank_id:
            return self.lab.for_tank(tank_id)
        return self.lab.store.find()

    def update_lab_association(self, association_id: str, status: AssociationStatus,
                               actor: str) -> LabBatchAssociation:
        return self.lab.update_status(association_id, status, actor)

    def recalculate_from_lab(self, association_id: str, actor: str) -> RecalculationResult:
        return self.lab.recalculate_from_association(association_id, actor)

    # --- Audit ---

    def audit_trail(self, batch_id: Optional[str] = None,
                    audit_filter: Optional[AuditFilter] = None) -> List[AuditEvent]:
        if batch_id:
            return self.audit.events_for_batch(batch_id)
        return self.audit.query(audit_filter)

    def audit_statistics(self, audit_filter: Optional[AuditFilter] = None) -> Dict[str, Any]:
        return self.audit.statistics(audit_filter)

    def shutdown(self) -> None:
        self.movement.stop_all()
        self.capture.shutdown()
        logger.info("Batch engine shut down.")


def build_default_engine(session_factory=None) -> BatchEngine:
    """Engine over the configured database: SQL stores for records, audit, associations and telemetry."""
    from data.stores import SqlAssociationStore, SqlAttributeStore, SqlAuditStore
    from data.telemetry import SqlTankMetadataSource, SqlTelemetrySource

    if session_factory is None:
        from data.database import SessionLocal
        session_factory = SessionLocal
    if session_factory is None:
        raise RuntimeError("Database session factory is not initialized; check DATABASE_URL settings.")

    telemetry = SqlTelemetrySource(session_factory)
    engine = BatchEngine(
        telemetry=telemetry,
        tanks=SqlTankMetadataSource(session_factory),
        records=SqlAttributeStore(session_factory),
        audit_store=SqlAuditStore(session_factory),
        associations=SqlAssociationStore(session_factory),
    )
    logger.info(f"Batch engine initialised (approval thresholds {settings.RECALC_APPROVAL_PERCENT_THRESHOLD}% / "
                f"{settings.RECALC_APPROVAL_MASS_THRESHOLD_KG} kg).")
    return engine
