# File: utils/helpers.py
import logging
import datetime
import json
from enum import Enum
from typing import Optional
from decimal import Decimal

logger = logging.getLogger(__name__)


def setup_main_logging(level: str = "INFO"):
    """Sets up basic root logging configuration."""
    logging.basicConfig(
        level=level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_utc(dt: datetime.datetime) -> datetime.datetime:
    """Treats naive datetimes as UTC and converts aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def parse_iso_datetime(timestamp_str: str) -> Optional[datetime.datetime]:
    """Parses an ISO 8601 timestamp string to a timezone-aware datetime object (UTC)."""
    if not timestamp_str:
        return None
    try:
        if timestamp_str.endswith('Z'):
            timestamp_str = timestamp_str[:-1] + '+00:00'
        return ensure_utc(datetime.datetime.fromisoformat(timestamp_str))
    except (ValueError, TypeError) as e:
        logger.warning(f"Could not parse timestamp string: {timestamp_str}. Error: {e}")
        return None


def format_iso_datetime(dt: Optional[datetime.datetime]) -> Optional[str]:
    """Full-precision ISO 8601 string, so that parse_iso_datetime gives back the same instant."""
    return ensure_utc(dt).isoformat() if dt else None


class CustomJsonEncoder(json.JSONEncoder):
    """
    JSON encoder for the types the engine hands to the API and MQTT layers:
    datetimes, Decimals, enums and objects exposing ``to_dict``.
    """
    def default(self, obj):
        if isinstance(obj, datetime.datetime):
            return format_iso_datetime(obj)
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return json.JSONEncoder.default(self, obj)
