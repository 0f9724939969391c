# File: custody_batch_engine/core/batch_lifecycle.py
"""
Batch lifecycle state machine.

    open -> closed -> recalculated (repeatable)
    open | closed | recalculated -> voided (terminal)

This class is the only writer of batch records. Transitions on one batch id
are serialised by a per-batch lock. Each batch is stored as one JSON
attribute ``batch_<id>`` under its tank's entity.
"""

import datetime
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Dict, Iterator, List, Optional

from core import calculations
from core.audit_trail import AuditTrail
from core.errors import InvalidTransition, NotFound, TelemetryUnavailable, ValidationFailed
from core.gauge_capture import GaugeCapture
from core.models.audit import AuditEventType
from core.models.batch import (
    Batch, BatchPage, BatchStatistics, BatchStatus, BatchType, CLOSED_STATES, GaugeReading, GaugeSnapshot,
)
from core.models.recalculation import RevisedInputs
from core.models.requests import (
    BatchFilter, CloseBatchRequest, CreateBatchRequest, HistoricalBatchRequest, VoidBatchRequest,
)
from core.recalculation import recompute
from data.stores import AttributeStore
from data.telemetry import TankMetadataSource
from utils.helpers import utc_now

logger = logging.getLogger(__name__)

BATCH_KEY_PREFIX = "batch_"
NUMBERING_ENTITY_ID = "batch_numbering"


def batch_key(batch_id: str) -> str:
    return f"{BATCH_KEY_PREFIX}{batch_id}"


def append_note(notes: Optional[str], text: str) -> str:
    return f"{notes}\n\n{text}" if notes else text


class BatchLifecycle:
    def __init__(self, records: AttributeStore, tanks: TankMetadataSource, capture: GaugeCapture,
                 audit: AuditTrail, clock: Callable[[], datetime.datetime] = utc_now,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.records = records
        self.tanks = tanks
        self.capture = capture
        self.audit = audit
        self.clock = clock
        self.id_factory = id_factory
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()
        self._numbering_lock = threading.Lock()
        self._tank_index: Dict[str, str] = {}
        self._index_lock = threading.Lock()

    # --- Locking and persistence ---

    @contextmanager
    def _batch_lock(self, batch_id: str) -> Iterator[None]:
        # Entries are dropped once no caller holds or waits on them.
        with self._locks_guard:
            entry = self._locks.setdefault(batch_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[batch_id]

    def _save(self, batch: Batch) -> None:
        problems = batch.check_invariants()
        if problems:
            raise InvalidTransition(f"Refusing to persist batch {batch.batch_number}: {'; '.join(problems)}",
                                    batch_id=batch.id)
        self.records.save(batch.tank_id, batch_key(batch.id), json.dumps(batch.to_dict()))
        with self._index_lock:
            self._tank_index[batch.id] = batch.tank_id

    def _locate(self, batch_id: str) -> Optional[str]:
        with self._index_lock:
            tank_id = self._tank_index.get(batch_id)
        if tank_id:
            return tank_id
        key = batch_key(batch_id)
        for candidate in self.tanks.list_tank_ids():
            if key in self.records.keys(candidate, BATCH_KEY_PREFIX):
                with self._index_lock:
                    self._tank_index[batch_id] = candidate
                return candidate
        return None

    def _load(self, batch_id: str) -> Batch:
        tank_id = self._locate(batch_id)
        raw = self.records.get(tank_id, batch_key(batch_id)) if tank_id else None
        if raw is None:
            with self._index_lock:
                self._tank_index.pop(batch_id, None)
            raise NotFound(f"Batch '{batch_id}' not found.", batch_id=batch_id)
        return Batch.from_dict(json.loads(raw))

    def invalidate_cache(self, batch_id: Optional[str] = None) -> None:
        with self._index_lock:
            if batch_id:
                self._tank_index.pop(batch_id, None)
            else:
                self._tank_index.clear()

    def _next_batch_number(self, year: int) -> str:
        key = f"counter_{year}"
        with self._numbering_lock:
            current = int(self.records.get(NUMBERING_ENTITY_ID, key) or 0)
            sequence = current + 1
            self.records.save(NUMBERING_ENTITY_ID, key, str(sequence))
        return f"BATCH-{year}-{sequence:03d}"

    # --- Gauge acquisition ---

    def _acquire_gauge(self, tank_id: str, operator: str, level: Optional[float], temperature: Optional[float],
                       api_gravity: Optional[float], bsw: Optional[float],
                       timestamp: Optional[datetime.datetime], require_reliable: bool,
                       timeout: Optional[float]) -> GaugeReading:
        if level is not None:
            return self.capture.manual_reading(tank_id, operator, level, temperature, api_gravity, bsw, timestamp)
        snapshot = self.capture.capture_live(tank_id, operator, timeout=timeout)
        if require_reliable and not snapshot.source_reliable:
            raise TelemetryUnavailable(
                f"Telemetry for tank {tank_id} is stale ({snapshot.telemetry_age_seconds:.0f}s old).",
                tank_id=tank_id, operation="live_capture")
        return snapshot

    def _check_direction(self, batch: Batch, delta: calculations.TransferQuantities) -> bool:
        """True when the signed NSV change agrees with the batch type."""
        if delta.nsv == 0:
            return True
        consistent = (delta.nsv > 0) == (batch.batch_type == BatchType.RECEIVING)
        if not consistent:
            logger.warning(f"Batch {batch.batch_number} is {batch.batch_type.value} but tank NSV changed by "
                           f"{delta.nsv:+.3f} m³; reported transfer uses the magnitude.")
        return consistent

    # --- Transitions ---

    def create(self, request: CreateBatchRequest, timeout: Optional[float] = None) -> Batch:
        try:
            tank = self.capture.get_tank(request.tank_id)
        except NotFound as e:
            raise ValidationFailed(f"Unknown tank '{request.tank_id}'.", tank_id=request.tank_id) from e
        opening = self._acquire_gauge(
            tank.tank_id, request.operator, request.opening_level, request.opening_temperature,
            request.opening_api_gravity, request.opening_bsw, request.opening_timestamp,
            request.require_reliable_telemetry, timeout,
        )
        return self._open(tank.tank_id, tank.name, tank.product, request.batch_type, opening, request.operator,
                          destination=request.destination, transport_vehicle=request.transport_vehicle,
                          driver_name=request.driver_name, seal_numbers=request.seal_numbers,
                          notes=request.notes)

    def _open(self, tank_id: str, tank_name: Optional[str], product: Optional[str], batch_type: BatchType,
              opening: GaugeReading, operator: str, **metadata) -> Batch:
        now = self.clock()
        batch = Batch(
            id=self.id_factory(),
            batch_number=self._next_batch_number(now.year),
            tank_id=tank_id, tank_name=tank_name, product=product,
            batch_type=batch_type, status=BatchStatus.OPEN, opening=opening,
            created_at=now, created_by=operator,
            destination=metadata.get("destination"),
            transport_vehicle=metadata.get("transport_vehicle"),
            driver_name=metadata.get("driver_name"),
            seal_numbers=list(metadata.get("seal_numbers") or []),
            notes=metadata.get("notes"),
        )
        with self._batch_lock(batch.id):
            self._save(batch)
        logger.info(f"Batch {batch.batch_number} ({batch.batch_type.value}) opened on tank {tank_id} by {operator}")
        self.audit.record(AuditEventType.CREATED, batch, operator, f"Batch {batch.batch_number} created", {
            "batch_type": batch.batch_type.value,
            "opening_level": opening.level,
            "opening_nsv": opening.nsv,
            "capture_method": opening.capture_method.value,
            "source_reliable": getattr(opening, "source_reliable", True),
        })
        return batch

    def close(self, request: CloseBatchRequest, timeout: Optional[float] = None) -> Batch:
        with self._batch_lock(request.batch_id):
            batch = self._load(request.batch_id)
            if batch.status != BatchStatus.OPEN:
                raise InvalidTransition(
                    f"Batch {batch.batch_number} is {batch.status.value}; only open batches can be closed.",
                    batch_id=batch.id, status=batch.status.value)
            closing = self._acquire_gauge(
                batch.tank_id, request.operator, request.closing_level, request.closing_temperature,
                request.closing_api_gravity, request.closing_bsw, request.closing_timestamp,
                request.require_reliable_telemetry, timeout,
            )
            closed = self._close_with(batch, closing, request.operator, request.seal_numbers, request.notes)
        return closed

    def _close_with(self, batch: Batch, closing: GaugeReading, operator: str,
                    seal_numbers: Optional[List[str]] = None, notes: Optional[str] = None) -> Batch:
        if closing.timestamp < batch.opening.timestamp:
            raise ValidationFailed(
                f"Closing gauge ({closing.timestamp.isoformat()}) precedes opening gauge "
                f"({batch.opening.timestamp.isoformat()}).", batch_id=batch.id)
        delta = calculations.transfer(batch.opening, closing)
        direction_ok = self._check_direction(batch, delta)
        moved = delta.magnitude()
        closed = replace(
            batch,
            status=BatchStatus.CLOSED,
            closing=closing,
            transferred_nsv=moved.nsv,
            transferred_mass=moved.mass,
            transferred_wia=moved.wia,
            closed_at=self.clock(),
            closed_by=operator,
            seal_numbers=list(seal_numbers) if seal_numbers is not None else list(batch.seal_numbers),
            notes=append_note(batch.notes, notes) if notes else batch.notes,
        )
        self._save(closed)
        logger.info(f"Batch {closed.batch_number} closed by {operator}: "
                    f"NSV {closed.transferred_nsv:.3f} m³, mass {closed.transferred_mass:.1f} kg")
        self.audit.record(AuditEventType.CLOSED, closed, operator, f"Batch {closed.batch_number} closed", {
            "closing_level": closing.level,
            "closing_nsv": closing.nsv,
            "transferred_nsv": closed.transferred_nsv,
            "transferred_mass": closed.transferred_mass,
            "transferred_wia": closed.transferred_wia,
            "direction_consistent": direction_ok,
        })
        return closed

    def recalculate(self, batch_id: str, revised: RevisedInputs, actor: str, reason: str,
                    expected_original: Optional[Batch] = None) -> Batch:
        """
        Commits a recalculation. When ``expected_original`` is given the commit
        is refused if the stored batch no longer matches it.
        """
        with self._batch_lock(batch_id):
            batch = self._load(batch_id)
            if batch.status not in CLOSED_STATES:
                raise InvalidTransition(
                    f"Batch {batch.batch_number} is {batch.status.value}; only closed or recalculated "
                    f"batches can be recalculated.", batch_id=batch.id, status=batch.status.value)
            if expected_original is not None and expected_original.to_dict() != batch.to_dict():
                raise InvalidTransition(
                    f"Batch {batch.batch_number} changed since the recalculation was previewed.",
                    batch_id=batch.id)
            candidate, differences = recompute(batch, revised)
            committed = replace(
                candidate,
                status=BatchStatus.RECALCULATED,
                recalculated_at=self.clock(),
                recalculated_by=actor,
                recalculation_count=batch.recalculation_count + 1,
                notes=append_note(batch.notes, f"Recalculated: {reason}"),
            )
            self._save(committed)
        logger.info(f"Batch {committed.batch_number} recalculated by {actor}: "
                    f"{differences.percentage_change:+.4f}% NSV change")
        self.audit.record(AuditEventType.RECALCULATED, committed, actor,
                          f"Batch {committed.batch_number} recalculated", {
                              "reason": reason,
                              "inputs": revised.to_dict(),
                              "differences": differences.to_dict(),
                              "original_transferred_nsv": batch.transferred_nsv,
                              "new_transferred_nsv": committed.transferred_nsv,
                          })
        return committed

    def void(self, request: VoidBatchRequest) -> Batch:
        with self._batch_lock(request.batch_id):
            batch = self._load(request.batch_id)
            if batch.status == BatchStatus.VOIDED:
                raise InvalidTransition(f"Batch {batch.batch_number} is already voided.",
                                        batch_id=batch.id, status=batch.status.value)
            voided = replace(
                batch,
                status=BatchStatus.VOIDED,
                voided_at=self.clock(),
                voided_by=request.operator,
                void_reason=request.reason,
            )
            self._save(voided)
        logger.info(f"Batch {voided.batch_number} voided by {request.operator}: {request.reason}")
        self.audit.record(AuditEventType.VOIDED, voided, request.operator, f"Batch {voided.batch_number} voided", {
            "reason": request.reason,
            "previous_status": batch.status.value,
        })
        return voided

    def create_historical(self, request: HistoricalBatchRequest, timeout: Optional[float] = None) -> Batch:
        """Opens and immediately closes a batch from telemetry recorded at ``start_time`` and ``end_time``."""
        try:
            tank = self.capture.get_tank(request.tank_id)
        except NotFound as e:
            raise ValidationFailed(f"Unknown tank '{request.tank_id}'.", tank_id=request.tank_id) from e
        opening: GaugeSnapshot = self.capture.capture_historical(
            tank.tank_id, request.start_time, request.operator, request.tolerance_seconds, timeout)
        closing: GaugeSnapshot = self.capture.capture_historical(
            tank.tank_id, request.end_time, request.operator, request.tolerance_seconds, timeout)
        note = (f"Historical batch for {request.start_time.isoformat()} to {request.end_time.isoformat()}")
        batch = self._open(tank.tank_id, tank.name, tank.product, request.batch_type, opening, request.operator,
                           destination=request.destination, transport_vehicle=request.transport_vehicle,
                           driver_name=request.driver_name, seal_numbers=request.seal_numbers,
                           notes=append_note(request.notes, note) if request.notes else note)
        with self._batch_lock(batch.id):
            return self._close_with(batch, closing, request.operator)

    # --- Queries ---

    def get(self, batch_id: str) -> Batch:
        return self._load(batch_id)

    def _all_batches(self, tank_id: Optional[str] = None) -> List[Batch]:
        tank_ids = [tank_id] if tank_id else self.tanks.list_tank_ids()
        batches = []
        for tid in tank_ids:
            for key in self.records.keys(tid, BATCH_KEY_PREFIX):
                raw = self.records.get(tid, key)
                if raw is None:
                    continue
                try:
                    batch = Batch.from_dict(json.loads(raw))
                except (ValueError, KeyError) as e:
                    logger.error(f"Skipping unreadable batch record {tid}/{key}: {e}", exc_info=True)
                    continue
                batches.append(batch)
                with self._index_lock:
                    self._tank_index[batch.id] = tid
        return batches

    def list_batches(self, batch_filter: Optional[BatchFilter] = None) -> BatchPage:
        f = batch_filter or BatchFilter()
        matched = []
        for batch in self._all_batches(f.tank_id):
            if f.status and batch.status != f.status:
                continue
            if f.batch_type and batch.batch_type != f.batch_type:
                continue
            if f.batch_number and f.batch_number.lower() not in batch.batch_number.lower():
                continue
            if f.operator and f.operator not in (batch.created_by, batch.closed_by, batch.recalculated_by):
                continue
            if f.start_date and batch.created_at < f.start_date:
                continue
            if f.end_date and batch.created_at > f.end_date:
                continue
            matched.append(batch)
        matched.sort(key=lambda b: b.created_at, reverse=True)
        start = f.page_number * f.page_size
        return BatchPage(batches=matched[start:start + f.page_size], total_count=len(matched),
                         page_number=f.page_number, page_size=f.page_size)

    def statistics(self, tank_id: Optional[str] = None) -> BatchStatistics:
        stats = BatchStatistics()
        for batch in self._all_batches(tank_id):
            stats.total_batches += 1
            if batch.status == BatchStatus.OPEN:
                stats.open_batches += 1
            elif batch.status == BatchStatus.CLOSED:
                stats.closed_batches += 1
            elif batch.status == BatchStatus.RECALCULATED:
                stats.recalculated_batches += 1
            else:
                stats.voided_batches += 1
            if batch.status in CLOSED_STATES:
                stats.total_nsv_transferred += batch.transferred_nsv or 0.0
                stats.total_mass_transferred += batch.transferred_mass or 0.0
        return stats

    def closed_batches_for_tank(self, tank_id: str) -> List[Batch]:
        return [b for b in self._all_batches(tank_id) if b.status in CLOSED_STATES]
