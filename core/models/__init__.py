# File: custody_batch_engine/core/models/__init__.py
from .batch import (
    Batch, BatchPage, BatchStatistics, BatchStatus, BatchType, CaptureMethod, DataSource,
    GaugeReading, GaugeSnapshot, CLOSED_STATES,
)
from .movement import BatchSuggestion, MovementEvent, MovementType
from .lab import (
    AssociationStatus, LabBatchAssociation, LabResult, RecalculationSuggestion, VarianceAnalysis,
)
from .recalculation import (
    RecalculationDifferences, RecalculationHistoryEntry, RecalculationOutcome,
    RecalculationResult, RevisedInputs,
)
from .audit import AuditEvent, AuditEventType, AuditFilter

__all__ = [
    "Batch", "BatchPage", "BatchStatistics", "BatchStatus", "BatchType", "CaptureMethod",
    "DataSource", "GaugeReading", "GaugeSnapshot", "CLOSED_STATES",
    "BatchSuggestion", "MovementEvent", "MovementType",
    "AssociationStatus", "LabBatchAssociation", "LabResult", "RecalculationSuggestion",
    "VarianceAnalysis",
    "RecalculationDifferences", "RecalculationHistoryEntry", "RecalculationOutcome",
    "RecalculationResult", "RevisedInputs",
    "AuditEvent", "AuditEventType", "AuditFilter",
]
