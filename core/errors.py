# File: custody_batch_engine/core/errors.py
"""
Error taxonomy for the batch engine.

Every failure carries a stable ``kind`` string and a human-readable
``reason`` so that the API layer can serialise it without inspecting
the exception class.
"""

from typing import Any, Dict, List, Optional


class BatchEngineError(Exception):
    """Base class for all batch engine failures."""
    kind = "BatchEngineError"
    retryable = False

    def __init__(self, reason: str, **context: Any):
        super().__init__(reason)
        self.reason = reason
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "reason": self.reason}
        if self.context:
            payload["context"] = self.context
        return payload


class ValidationFailed(BatchEngineError):
    kind = "ValidationFailed"

    def __init__(self, reason: str, violations: Optional[List[Any]] = None, **context: Any):
        super().__init__(reason, **context)
        self.violations = list(violations or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["violations"] = [v.to_dict() if hasattr(v, "to_dict") else v for v in self.violations]
        return payload


class InvalidTransition(BatchEngineError):
    kind = "InvalidTransition"


class NotFound(BatchEngineError):
    kind = "NotFound"


# --- Collaborator I/O failures (retryable by the caller) ---

class TelemetryUnavailable(BatchEngineError):
    kind = "TelemetryUnavailable"
    retryable = True


class MissingTelemetry(TelemetryUnavailable):
    kind = "MissingTelemetry"


class NoHistoricalData(BatchEngineError):
    kind = "NoHistoricalData"
    retryable = True


class CaptureTimeout(BatchEngineError):
    kind = "Timeout"
    retryable = True


class StorageUnavailable(BatchEngineError):
    kind = "StorageUnavailable"
    retryable = True


# --- Reconciliation outcomes: expected results, not alarms ---

class ReconciliationOutcome(BatchEngineError):
    kind = "ReconciliationOutcome"


class NoMatchingBatch(ReconciliationOutcome):
    kind = "NoMatchingBatch"


class AlreadyRejected(ReconciliationOutcome):
    kind = "AlreadyRejected"
