# File: custody_batch_engine/core/audit_trail.py
import datetime
import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from core.models.audit import AuditEvent, AuditEventType, AuditFilter
from core.models.batch import Batch
from data.stores import AuditStore
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


class AuditTrail:
    """
    Append-only log of batch lifecycle events.

    Writes are best-effort: a failing store is logged and the caller's
    transition proceeds.
    """

    def __init__(self, store: AuditStore, clock: Callable[[], datetime.datetime] = utc_now):
        self.store = store
        self.clock = clock

    def record(self, event_type: AuditEventType, batch: Batch, actor: str, action: str,
               details: Optional[Dict[str, Any]] = None) -> Optional[AuditEvent]:
        event = AuditEvent(
            event_type=event_type, batch_id=batch.id, batch_number=batch.batch_number,
            timestamp=self.clock(), actor=actor or "System", action=action,
            details={"tank_id": batch.tank_id, "status": batch.status.value, **(details or {})},
        )
        try:
            stored = self.store.append(event)
            logger.debug(f"Audit event {event_type.value} recorded for batch {batch.batch_number}")
            return stored
        except Exception as e:
            logger.error(f"Failed to record audit event {event_type.value} for batch {batch.id}: {e}",
                         exc_info=True)
            return None

    def events_for_batch(self, batch_id: str) -> List[AuditEvent]:
        return self.store.query(AuditFilter(batch_id=batch_id))

    def query(self, audit_filter: Optional[AuditFilter] = None) -> List[AuditEvent]:
        return self.store.query(audit_filter or AuditFilter())

    def statistics(self, audit_filter: Optional[AuditFilter] = None) -> Dict[str, Any]:
        events = self.query(audit_filter)
        by_type = Counter(e.event_type.value for e in events)
        by_actor = Counter(e.actor for e in events)
        return {
            "total_events": len(events),
            "by_type": {t.value: by_type.get(t.value, 0) for t in AuditEventType},
            "by_actor": dict(by_actor),
            "first_event": events[-1].timestamp.isoformat() if events else None,
            "last_event": events[0].timestamp.isoformat() if events else None,
        }

    def clear(self, actor: str) -> int:
        """Administrative purge of every audit event."""
        removed = self.store.clear()
        logger.warning(f"Audit trail cleared by {actor}: {removed} event(s) removed.")
        return removed
