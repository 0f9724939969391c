# File: custody_batch_engine/core/movement_detector.py
"""
Tank movement detection from polled level telemetry.

One :class:`MovementDetector` runs per monitored tank on its own daemon
thread. The detectors are owned by :class:`MovementMonitorRegistry`, keyed by
tank id. Rate, classification and confidence are plain functions so they can
be exercised without threads.
"""

import datetime
import logging
import queue
import threading
from collections import deque
from typing import Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from config import settings
from core.models.batch import BatchType
from core.models.movement import BatchSuggestion, MovementEvent, MovementType
from data.telemetry import TelemetrySource
from utils.helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)

LevelSample = Tuple[datetime.datetime, float]


# --- Pure calculations ---

def compute_rate(samples: Sequence[LevelSample]) -> Tuple[float, float, float]:
    """Returns (rate mm/h, level change mm, elapsed seconds) between the first and last sample."""
    if len(samples) < 2:
        return 0.0, 0.0, 0.0
    (first_ts, first_level), (last_ts, last_level) = samples[0], samples[-1]
    elapsed = (last_ts - first_ts).total_seconds()
    change = last_level - first_level
    if elapsed <= 0:
        return 0.0, change, 0.0
    return change / (elapsed / 3600.0), change, elapsed


def classify_movement(rate_mm_per_hour: float,
                      idle_threshold: float = settings.MOVEMENT_IDLE_THRESHOLD_MM_PER_HOUR) -> MovementType:
    if abs(rate_mm_per_hour) < idle_threshold:
        return MovementType.IDLE
    return MovementType.RECEIVING if rate_mm_per_hour > 0 else MovementType.DISPENSING


def compute_confidence(levels: Sequence[float], movement_type: MovementType) -> float:
    """``max(0, 1 - CV)`` of the buffered levels. Idle buffers and a zero mean give 0."""
    if movement_type == MovementType.IDLE or len(levels) < 2:
        return 0.0
    values = np.asarray(levels, dtype=float)
    mean = float(np.mean(values))
    if mean == 0:
        return 0.0
    cv = float(np.std(values)) / abs(mean)
    return max(0.0, 1.0 - cv)


def build_movement_event(tank_id: str, samples: Sequence[LevelSample],
                         idle_threshold: float = settings.MOVEMENT_IDLE_THRESHOLD_MM_PER_HOUR
                         ) -> Optional[MovementEvent]:
    if len(samples) < 2:
        return None
    rate, change, elapsed = compute_rate(samples)
    movement_type = classify_movement(rate, idle_threshold)
    return MovementEvent(
        tank_id=tank_id,
        timestamp=samples[-1][0],
        movement_type=movement_type,
        rate_mm_per_hour=rate,
        confidence=compute_confidence([level for _, level in samples], movement_type),
        level_change_mm=change,
        duration_seconds=elapsed,
        current_level_mm=samples[-1][1],
    )


def suggestion_for_event(event: MovementEvent,
                         min_confidence: float = settings.MOVEMENT_MIN_CONFIDENCE,
                         typical_height_mm: float = settings.MOVEMENT_TYPICAL_TANK_HEIGHT_MM) -> BatchSuggestion:
    if event.movement_type == MovementType.IDLE:
        return BatchSuggestion(event.tank_id, False, event.confidence, "Tank is idle.", movement=event)
    if event.confidence < min_confidence:
        return BatchSuggestion(
            event.tank_id, False, event.confidence,
            f"Movement confidence {event.confidence:.2f} is below {min_confidence:.2f}.", movement=event)
    suggested = BatchType.RECEIVING if event.movement_type == MovementType.RECEIVING else BatchType.DISPENSING
    # Assumes roughly half a tank is moved per operation.
    duration_hours = typical_height_mm * 0.5 / abs(event.rate_mm_per_hour)
    return BatchSuggestion(
        tank_id=event.tank_id,
        should_suggest=True,
        confidence=event.confidence,
        reason=(f"Tank {event.tank_id} is {event.movement_type.value} at "
                f"{abs(event.rate_mm_per_hour):.1f} mm/h."),
        suggested_type=suggested,
        estimated_duration_hours=duration_hours,
        movement=event,
    )


# --- Subscriptions ---

_CLOSED = object()


class MovementSubscription:
    """Unbounded per-subscriber channel of movement events. Iteration ends when the detector stops."""

    def __init__(self, tank_id: str, on_close: Optional[Callable[["MovementSubscription"], None]] = None):
        self.tank_id = tank_id
        self._queue: "queue.Queue" = queue.Queue()
        self._on_close = on_close
        self.closed = False

    def _put(self, event: MovementEvent) -> None:
        if not self.closed:
            self._queue.put(event)

    def _finish(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put(_CLOSED)

    def get(self, timeout: Optional[float] = None) -> Optional[MovementEvent]:
        """Next event, or None once the stream has ended or ``timeout`` expires."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item

    def close(self) -> None:
        self._finish()
        if self._on_close:
            self._on_close(self)

    def __iter__(self) -> Iterator[MovementEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item


# --- Detector ---

class MovementDetector:
    def __init__(self, tank_id: str, telemetry: TelemetrySource,
                 interval_seconds: float = settings.MOVEMENT_POLL_INTERVAL_SECONDS,
                 buffer_size: int = settings.MOVEMENT_BUFFER_SIZE,
                 idle_threshold: float = settings.MOVEMENT_IDLE_THRESHOLD_MM_PER_HOUR,
                 level_key: str = "level"):
        self.tank_id = tank_id
        self.telemetry = telemetry
        self.interval = interval_seconds
        self.idle_threshold = idle_threshold
        self.level_key = level_key
        self._buffer: Deque[LevelSample] = deque(maxlen=buffer_size)
        self._subscribers: List[MovementSubscription] = []
        self._lock = threading.Lock()
        self.stop_event = threading.Event()
        self.thread = threading.Thread(target=self._run, name=f"movement-{tank_id}", daemon=True)
        self.last_event: Optional[MovementEvent] = None

    def start(self) -> None:
        logger.info(f"Movement monitoring started for tank {self.tank_id} (every {self.interval}s)")
        self.thread.start()

    def stop(self, join_timeout: float = 2.0) -> None:
        self.stop_event.set()
        with self._lock:
            subscribers, self._subscribers = self._subscribers, []
            self._buffer.clear()
            self.last_event = None
        for sub in subscribers:
            sub._finish()
        if self.thread.is_alive() and threading.current_thread() is not self.thread:
            self.thread.join(timeout=join_timeout)
        logger.info(f"Movement monitoring stopped for tank {self.tank_id}")

    @property
    def running(self) -> bool:
        return self.thread.is_alive() and not self.stop_event.is_set()

    def subscribe(self) -> MovementSubscription:
        sub = MovementSubscription(self.tank_id, on_close=self._unsubscribe)
        with self._lock:
            if self.stop_event.is_set():
                sub._finish()
            else:
                self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: MovementSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def buffer(self) -> List[LevelSample]:
        with self._lock:
            return list(self._buffer)

    def add_sample(self, timestamp: datetime.datetime, level: float) -> Optional[MovementEvent]:
        """Buffers one level sample and publishes the resulting event, if any."""
        timestamp = ensure_utc(timestamp)
        with self._lock:
            if self.stop_event.is_set():
                return None
            if self._buffer and self._buffer[-1][0] >= timestamp:
                return None
            self._buffer.append((timestamp, float(level)))
            event = build_movement_event(self.tank_id, list(self._buffer), self.idle_threshold)
            if event is None:
                return None
            self.last_event = event
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub._put(event)
        return event

    def poll_once(self) -> Optional[MovementEvent]:
        data = self.telemetry.latest(self.tank_id, [self.level_key])
        samples = data.get(self.level_key)
        if not samples:
            logger.debug(f"No level telemetry for tank {self.tank_id} this tick.")
            return None
        ts, level = max(samples, key=lambda s: s[0])
        event = self.add_sample(ts, level)
        if event:
            logger.debug(f"Tank {self.tank_id}: {event.movement_type.value} at {event.rate_mm_per_hour:.1f} mm/h "
                         f"(confidence {event.confidence:.2f})")
        return event

    def _run(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Movement poll failed for tank {self.tank_id}: {e}", exc_info=True)
            self.stop_event.wait(self.interval)


class MovementMonitorRegistry:
    """Owns one detector per monitored tank and applies the suggestion cool-down."""

    def __init__(self, telemetry: TelemetrySource,
                 interval_seconds: float = settings.MOVEMENT_POLL_INTERVAL_SECONDS,
                 buffer_size: int = settings.MOVEMENT_BUFFER_SIZE,
                 idle_threshold: float = settings.MOVEMENT_IDLE_THRESHOLD_MM_PER_HOUR,
                 min_confidence: float = settings.MOVEMENT_MIN_CONFIDENCE,
                 cooldown_seconds: float = settings.MOVEMENT_SUGGESTION_COOLDOWN_SECONDS,
                 typical_height_mm: float = settings.MOVEMENT_TYPICAL_TANK_HEIGHT_MM,
                 clock: Callable[[], datetime.datetime] = utc_now):
        self.telemetry = telemetry
        self.interval = interval_seconds
        self.buffer_size = buffer_size
        self.idle_threshold = idle_threshold
        self.min_confidence = min_confidence
        self.cooldown = datetime.timedelta(seconds=cooldown_seconds)
        self.typical_height_mm = typical_height_mm
        self.clock = clock
        self._detectors: Dict[str, MovementDetector] = {}
        self._suppressed_until: Dict[str, datetime.datetime] = {}
        self._lock = threading.Lock()

    def start_monitoring(self, tank_id: str, autostart: bool = True) -> MovementSubscription:
        with self._lock:
            detector = self._detectors.get(tank_id)
            if detector is None:
                detector = MovementDetector(tank_id, self.telemetry, self.interval, self.buffer_size,
                                            self.idle_threshold)
                self._detectors[tank_id] = detector
                if autostart:
                    detector.start()
        return detector.subscribe()

    def stop_monitoring(self, tank_id: str) -> bool:
        with self._lock:
            detector = self._detectors.pop(tank_id, None)
            self._suppressed_until.pop(tank_id, None)
        if detector is None:
            return False
        detector.stop()
        return True

    def stop_all(self) -> None:
        for tank_id in self.monitored_tanks():
            self.stop_monitoring(tank_id)

    def monitored_tanks(self) -> List[str]:
        with self._lock:
            return sorted(self._detectors)

    def detector(self, tank_id: str) -> Optional[MovementDetector]:
        with self._lock:
            return self._detectors.get(tank_id)

    def latest_event(self, tank_id: str) -> Optional[MovementEvent]:
        detector = self.detector(tank_id)
        return detector.last_event if detector else None

    def suggest_batch(self, tank_id: str) -> BatchSuggestion:
        event = self.latest_event(tank_id)
        if event is None:
            return BatchSuggestion(tank_id, False, 0.0, f"No movement data for tank {tank_id}.")
        with self._lock:
            until = self._suppressed_until.get(tank_id)
        if until and self.clock() < until:
            return BatchSuggestion(tank_id, False, event.confidence,
                                   f"Suggestions for tank {tank_id} suppressed until {until.isoformat()}.",
                                   movement=event)
        return suggestion_for_event(event, self.min_confidence, self.typical_height_mm)

    def dismiss_suggestion(self, tank_id: str) -> datetime.datetime:
        """Suppresses suggestions for the tank for the cool-down window."""
        return self._suppress(tank_id, "dismissed")

    def acknowledge_suggestion(self, tank_id: str) -> datetime.datetime:
        """Called once a batch has been opened on the tank; starts the same cool-down."""
        return self._suppress(tank_id, "acted upon")

    def _suppress(self, tank_id: str, why: str) -> datetime.datetime:
        until = self.clock() + self.cooldown
        with self._lock:
            self._suppressed_until[tank_id] = until
        logger.info(f"Batch suggestions for tank {tank_id} {why}; suppressed until {until.isoformat()}")
        return until
