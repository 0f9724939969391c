# File: custody_batch_engine/data/stores.py
"""
Persistence collaborators for the batch engine.

Each store has an in-memory implementation (tests, demos) and a SQLAlchemy
implementation. SQL failures are logged, rolled back and re-raised as
``StorageUnavailable`` with the entity and operation attached.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.errors import StorageUnavailable
from core.models.audit import AuditEvent, AuditFilter
from core.models.lab import AssociationStatus, LabBatchAssociation
from data.db_models import BatchAuditEvent, EntityAttribute, LabBatchAssociationRecord
from utils.helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class AttributeStore(Protocol):
    def save(self, entity_id: str, key: str, value: str) -> None: ...

    def get(self, entity_id: str, key: str) -> Optional[str]: ...

    def keys(self, entity_id: str, prefix: str = "") -> List[str]: ...


class AuditStore(Protocol):
    def append(self, event: AuditEvent) -> AuditEvent: ...

    def query(self, audit_filter: AuditFilter) -> List[AuditEvent]: ...

    def clear(self) -> int: ...


class AssociationStore(Protocol):
    def save(self, association: LabBatchAssociation) -> None: ...

    def get(self, association_id: str) -> Optional[LabBatchAssociation]: ...

    def find(self, lab_result_id: Optional[str] = None, batch_id: Optional[str] = None,
             tank_id: Optional[str] = None,
             status: Optional[AssociationStatus] = None) -> List[LabBatchAssociation]: ...

    def clear(self) -> int: ...


# --- In-memory implementations ---

class InMemoryAttributeStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, str]] = {}

    def save(self, entity_id: str, key: str, value: str) -> None:
        with self._lock:
            self._data.setdefault(entity_id, {})[key] = value

    def get(self, entity_id: str, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(entity_id, {}).get(key)

    def keys(self, entity_id: str, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data.get(entity_id, {}) if k.startswith(prefix))


class InMemoryAuditStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[AuditEvent] = []
        self._next_id = 1

    def append(self, event: AuditEvent) -> AuditEvent:
        with self._lock:
            stored = AuditEvent(
                id=self._next_id, event_type=event.event_type, batch_id=event.batch_id,
                batch_number=event.batch_number, timestamp=event.timestamp, actor=event.actor,
                action=event.action, details=dict(event.details),
            )
            self._next_id += 1
            self._events.append(stored)
            return stored

    def query(self, audit_filter: AuditFilter) -> List[AuditEvent]:
        with self._lock:
            matched = [e for e in self._events if audit_filter.matches(e)]
        matched.sort(key=lambda e: (e.timestamp, e.id or 0), reverse=True)
        return matched[:audit_filter.limit] if audit_filter.limit else matched

    def clear(self) -> int:
        with self._lock:
            count = len(self._events)
            self._events.clear()
            return count


class InMemoryAssociationStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._items: Dict[str, LabBatchAssociation] = {}

    def save(self, association: LabBatchAssociation) -> None:
        with self._lock:
            self._items[association.id] = association

    def get(self, association_id: str) -> Optional[LabBatchAssociation]:
        with self._lock:
            return self._items.get(association_id)

    def find(self, lab_result_id=None, batch_id=None, tank_id=None, status=None) -> List[LabBatchAssociation]:
        with self._lock:
            items = list(self._items.values())
        return sorted(
            (a for a in items
             if (lab_result_id is None or a.lab_result.id == lab_result_id)
             and (batch_id is None or a.batch_id == batch_id)
             and (tank_id is None or a.tank_id == tank_id)
             and (status is None or a.status == status)),
            key=lambda a: a.created_at, reverse=True,
        )

    def clear(self) -> int:
        with self._lock:
            count = len(self._items)
            self._items.clear()
            return count


# --- SQLAlchemy implementations ---

class _SqlStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _fail(self, db: Session, operation: str, error: SQLAlchemyError, **context) -> StorageUnavailable:
        logger.error(f"DB Error during {operation} ({context}): {error}", exc_info=True)
        db.rollback()
        return StorageUnavailable(f"Storage failure during {operation}: {error}", operation=operation, **context)


class SqlAttributeStore(_SqlStore):
    def save(self, entity_id: str, key: str, value: str) -> None:
        with self.session_factory() as db:
            try:
                db.merge(EntityAttribute(entity_id=entity_id, attribute_key=key, value_text=value,
                                         last_updated=utc_now()))
                db.commit()
            except SQLAlchemyError as e:
                raise self._fail(db, "save_attribute", e, entity_id=entity_id, key=key) from e

    def get(self, entity_id: str, key: str) -> Optional[str]:
        with self.session_factory() as db:
            try:
                row = db.get(EntityAttribute, (entity_id, key))
                return row.value_text if row else None
            except SQLAlchemyError as e:
                raise self._fail(db, "get_attribute", e, entity_id=entity_id, key=key) from e

    def keys(self, entity_id: str, prefix: str = "") -> List[str]:
        with self.session_factory() as db:
            try:
                query = select(EntityAttribute.attribute_key).where(EntityAttribute.entity_id == entity_id)
                if prefix:
                    query = query.where(EntityAttribute.attribute_key.startswith(prefix, autoescape=True))
                return list(db.execute(query.order_by(EntityAttribute.attribute_key)).scalars().all())
            except SQLAlchemyError as e:
                raise self._fail(db, "list_attribute_keys", e, entity_id=entity_id) from e


class SqlAuditStore(_SqlStore):
    def append(self, event: AuditEvent) -> AuditEvent:
        with self.session_factory() as db:
            try:
                row = BatchAuditEvent(
                    timestamp=ensure_utc(event.timestamp), event_type=event.event_type.value,
                    batch_id=event.batch_id, batch_number=event.batch_number, actor=event.actor,
                    action=event.action, details=event.details or {},
                )
                db.add(row)
                db.commit()
                return AuditEvent.from_dict(row.to_dict())
            except SQLAlchemyError as e:
                raise self._fail(db, "append_audit_event", e, batch_id=event.batch_id) from e

    def query(self, audit_filter: AuditFilter) -> List[AuditEvent]:
        with self.session_factory() as db:
            try:
                query = select(BatchAuditEvent)
                if audit_filter.batch_id:
                    query = query.where(BatchAuditEvent.batch_id == audit_filter.batch_id)
                if audit_filter.event_type:
                    query = query.where(BatchAuditEvent.event_type == audit_filter.event_type.value)
                if audit_filter.actor:
                    query = query.where(BatchAuditEvent.actor == audit_filter.actor)
                if audit_filter.start_time:
                    query = query.where(BatchAuditEvent.timestamp >= ensure_utc(audit_filter.start_time))
                if audit_filter.end_time:
                    query = query.where(BatchAuditEvent.timestamp <= ensure_utc(audit_filter.end_time))
                query = query.order_by(BatchAuditEvent.timestamp.desc(), BatchAuditEvent.event_id.desc())
                if audit_filter.limit:
                    query = query.limit(audit_filter.limit)
                return [AuditEvent.from_dict(row.to_dict()) for row in db.execute(query).scalars().all()]
            except SQLAlchemyError as e:
                raise self._fail(db, "query_audit_events", e) from e

    def clear(self) -> int:
        with self.session_factory() as db:
            try:
                count = db.execute(select(func.count(BatchAuditEvent.event_id))).scalar_one()
                db.execute(delete(BatchAuditEvent))
                db.commit()
                return count
            except SQLAlchemyError as e:
                raise self._fail(db, "clear_audit_events", e) from e


class SqlAssociationStore(_SqlStore):
    def save(self, association: LabBatchAssociation) -> None:
        with self.session_factory() as db:
            try:
                db.merge(LabBatchAssociationRecord(
                    association_id=association.id, lab_result_id=association.lab_result.id,
                    batch_id=association.batch_id, tank_id=association.tank_id,
                    status=association.status.value, created_at=ensure_utc(association.created_at),
                    payload=association.to_dict(),
                ))
                db.commit()
            except SQLAlchemyError as e:
                raise self._fail(db, "save_association", e, association_id=association.id) from e

    def get(self, association_id: str) -> Optional[LabBatchAssociation]:
        with self.session_factory() as db:
            try:
                row = db.get(LabBatchAssociationRecord, association_id)
                return LabBatchAssociation.from_dict(row.payload) if row else None
            except SQLAlchemyError as e:
                raise self._fail(db, "get_association", e, association_id=association_id) from e

    def find(self, lab_result_id=None, batch_id=None, tank_id=None, status=None) -> List[LabBatchAssociation]:
        with self.session_factory() as db:
            try:
                query = select(LabBatchAssociationRecord)
                if lab_result_id:
                    query = query.where(LabBatchAssociationRecord.lab_result_id == lab_result_id)
                if batch_id:
                    query = query.where(LabBatchAssociationRecord.batch_id == batch_id)
                if tank_id:
                    query = query.where(LabBatchAssociationRecord.tank_id == tank_id)
                if status:
                    query = query.where(LabBatchAssociationRecord.status == status.value)
                rows = db.execute(query.order_by(LabBatchAssociationRecord.created_at.desc())).scalars().all()
                return [LabBatchAssociation.from_dict(row.payload) for row in rows]
            except SQLAlchemyError as e:
                raise self._fail(db, "find_associations", e, batch_id=batch_id, tank_id=tank_id) from e

    def clear(self) -> int:
        with self.session_factory() as db:
            try:
                count = db.execute(select(func.count(LabBatchAssociationRecord.association_id))).scalar_one()
                db.execute(delete(LabBatchAssociationRecord))
                db.commit()
                return count
            except SQLAlchemyError as e:
                raise self._fail(db, "clear_associations", e) from e
