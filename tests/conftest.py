from __future__ import annotations

import datetime as dt
import itertools

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.batch_engine import BatchEngine
from core.gauge_capture import GaugeCapture
from core.models.batch import BatchType
from core.models.requests import CloseBatchRequest, CreateBatchRequest
from core.movement_detector import MovementMonitorRegistry
from data.db_models import Base
from data.stores import InMemoryAssociationStore, InMemoryAttributeStore, InMemoryAuditStore
from data.telemetry import InMemoryTankMetadataSource, InMemoryTelemetrySource, TankInfo

TANK_ID = "TANK-01"
T0 = dt.datetime(2024, 3, 1, 8, 0, tzinfo=dt.timezone.utc)


class FixedClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, start: dt.datetime = T0):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def ids():
    counter = itertools.count(1)
    return lambda: f"id-{next(counter):04d}"


@pytest.fixture()
def tank() -> TankInfo:
    return TankInfo(tank_id=TANK_ID, name="Crude Tank 01", diameter_m=20.0, api_gravity_base=35.0,
                    product="Crude Oil")


@pytest.fixture()
def tanks(tank: TankInfo) -> InMemoryTankMetadataSource:
    return InMemoryTankMetadataSource([tank])


@pytest.fixture()
def telemetry() -> InMemoryTelemetrySource:
    return InMemoryTelemetrySource()


@pytest.fixture()
def records() -> InMemoryAttributeStore:
    return InMemoryAttributeStore()


@pytest.fixture()
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture()
def association_store() -> InMemoryAssociationStore:
    return InMemoryAssociationStore()


@pytest.fixture()
def capture(telemetry, tanks, clock):
    gauge_capture = GaugeCapture(telemetry, tanks, clock=clock, default_timeout_seconds=2.0)
    yield gauge_capture
    gauge_capture.shutdown()


@pytest.fixture()
def engine(telemetry, tanks, records, audit_store, association_store, capture, clock, ids):
    batch_engine = BatchEngine(
        telemetry=telemetry, tanks=tanks, records=records, audit_store=audit_store,
        associations=association_store, capture=capture,
        movement=MovementMonitorRegistry(telemetry, interval_seconds=0.05, clock=clock),
        clock=clock, id_factory=ids,
    )
    yield batch_engine
    batch_engine.shutdown()


@pytest.fixture()
def open_batch(engine):
    """Dispensing batch opened at T0 with the reference opening gauge."""
    return engine.create_batch(CreateBatchRequest(
        tank_id=TANK_ID, batch_type=BatchType.DISPENSING, operator="alice",
        opening_level=8500, opening_temperature=28.5, opening_api_gravity=35.2, opening_bsw=0.3,
        opening_timestamp=T0,
    ))


@pytest.fixture()
def closed_batch(engine, open_batch, clock):
    clock.advance(hours=2)
    return engine.close_batch(CloseBatchRequest(
        batch_id=open_batch.id, operator="bob",
        closing_level=7200, closing_temperature=29.0, closing_api_gravity=35.3, closing_bsw=0.4,
        closing_timestamp=T0 + dt.timedelta(hours=2),
    ))


@pytest.fixture()
def sql_session_factory():
    db_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=db_engine)
    yield sessionmaker(bind=db_engine, autoflush=False, autocommit=False)
    db_engine.dispose()
