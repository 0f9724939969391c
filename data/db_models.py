import datetime
from sqlalchemy import (
    Column, String, Float, Boolean, Text, Numeric, Integer, JSON, ForeignKey, TIMESTAMP, func
)
from sqlalchemy.orm import declarative_base

# Base class for all ORM models
Base = declarative_base()


class Asset(Base):
    __tablename__ = 'assets'
    asset_id = Column(String(50), primary_key=True)
    asset_type = Column(String(50), nullable=False, index=True, default='StorageTank')
    depot_id = Column(String(20), default='DEMO_DEPOT_01')
    description = Column(String(255))
    product_service = Column(String(50), index=True)
    capacity_litres = Column(Numeric)
    diameter_m = Column(Float)
    api_gravity_base = Column(Float)
    is_active = Column(Boolean, default=True)
    notes = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    last_updated = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    def to_dict(self):
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


class SensorReading(Base):
    __tablename__ = 'sensor_readings'
    time = Column(TIMESTAMP(timezone=True), primary_key=True, nullable=False)
    asset_id = Column(String(50), primary_key=True, nullable=False, index=True)
    data_source_id = Column(String(100), primary_key=True, nullable=False, default='telemetry')
    metric_name = Column(String(50), primary_key=True, nullable=False, index=True)
    value_numeric = Column(Float)
    value_text = Column(Text)
    unit = Column(String(20))
    status = Column(String(50), default='OK')

    def to_dict(self):
        return {
            "time": self.time.isoformat() if self.time else None, "asset_id": self.asset_id,
            "data_source_id": self.data_source_id, "metric_name": self.metric_name,
            "value": self.value_numeric if self.value_numeric is not None else self.value_text,
            "unit": self.unit, "status": self.status
        }


class EntityAttribute(Base):
    """Generic key/value record store. Batches live here as JSON text under their tank."""
    __tablename__ = 'entity_attributes'
    entity_id = Column(String(50), primary_key=True)
    attribute_key = Column(String(255), primary_key=True)
    value_text = Column(Text, nullable=False)
    last_updated = Column(TIMESTAMP(timezone=True), nullable=False,
                          default=lambda: datetime.datetime.now(datetime.timezone.utc))

    def to_dict(self):
        return {
            "entity_id": self.entity_id, "key": self.attribute_key, "value": self.value_text,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None
        }


class BatchAuditEvent(Base):
    __tablename__ = 'batch_audit_events'
    event_id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    event_type = Column(String(30), nullable=False, index=True)
    batch_id = Column(String(64), nullable=False, index=True)
    batch_number = Column(String(50))
    actor = Column(String(100), nullable=False, index=True)
    action = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)

    def to_dict(self):
        return {
            "id": self.event_id, "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "event_type": self.event_type, "batch_id": self.batch_id, "batch_number": self.batch_number,
            "actor": self.actor, "action": self.action, "details": self.details or {}
        }


class LabBatchAssociationRecord(Base):
    __tablename__ = 'lab_batch_associations'
    association_id = Column(String(64), primary_key=True)
    lab_result_id = Column(String(64), nullable=False, index=True)
    batch_id = Column(String(64), nullable=False, index=True)
    tank_id = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, default='pending', index=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)


class StrappingData(Base):
    __tablename__ = 'strapping_data'
    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(String(50), ForeignKey('assets.asset_id'), nullable=False, index=True)
    level_mm = Column(Numeric, nullable=False)
    volume_litres = Column(Numeric, nullable=False)
