import datetime
import logging
from typing import Any, Dict, Optional
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from data.db_models import Base, Asset, SensorReading, StrappingData
from utils.helpers import ensure_utc, parse_iso_datetime

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


try:
    engine = build_engine(settings.DATABASE_URL)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info("Database engine created successfully and SessionLocal configured.")
except (SQLAlchemyError, ImportError) as e:
    logger.critical(f"CRITICAL: Failed to create database engine or SessionLocal: {e}", exc_info=True)
    engine = None
    SessionLocal = None


@contextmanager
def get_db() -> Optional[Session]:
    """Provide a transactional scope around a series of operations."""
    if not SessionLocal:
        logger.error("Database SessionLocal is not initialized. Cannot provide DB session.")
        yield None
        return

    db = SessionLocal()
    try:
        yield db
    except SQLAlchemyError as e:
        logger.error(f"Database Session Error during yield: {e}", exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def create_all_tables(bind: Optional[Engine] = None) -> None:
    Base.metadata.create_all(bind=bind or engine)


def save_sensor_reading(db: Session, time: datetime.datetime, asset_id: str, metric_name: str,
                        value: Any, unit: Optional[str] = None, status: str = "OK",
                        data_source_id: str = "telemetry") -> bool:
    if not db: return False
    try:
        value_numeric = float(value) if isinstance(value, (int, float)) else None
        value_text = str(value) if not isinstance(value, (int, float)) else None
        if isinstance(time, str):
            time = parse_iso_datetime(time)
        reading = SensorReading(
            time=ensure_utc(time), asset_id=asset_id, data_source_id=data_source_id,
            metric_name=metric_name, value_numeric=value_numeric,
            value_text=value_text, unit=unit, status=status
        )
        db.add(reading)
        db.commit()
        return True
    except SQLAlchemyError as e:
        logger.error(f"DB Error saving sensor reading for {asset_id}, metric {metric_name}: {e}", exc_info=True)
        db.rollback()
        return False


def save_tank(db: Session, asset_id: str, description: Optional[str] = None, product_service: Optional[str] = None,
              diameter_m: Optional[float] = None, api_gravity_base: Optional[float] = None,
              capacity_litres: Optional[float] = None) -> bool:
    if not db: return False
    try:
        db.merge(Asset(
            asset_id=asset_id, asset_type='StorageTank', description=description,
            product_service=product_service, diameter_m=diameter_m,
            api_gravity_base=api_gravity_base, capacity_litres=capacity_litres,
        ))
        db.commit()
        return True
    except SQLAlchemyError as e:
        logger.error(f"DB Error saving tank {asset_id}: {e}", exc_info=True)
        db.rollback()
        return False


def get_strapping_data_from_db(db: Session, asset_id: str) -> Optional[Dict[int, float]]:
    if not db: return None
    results = db.query(StrappingData).filter(StrappingData.asset_id == asset_id).order_by(StrappingData.level_mm).all()
    if not results: return None
    return {int(row.level_mm): float(row.volume_litres) for row in results}
