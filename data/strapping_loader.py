# File: custody_batch_engine/data/strapping_loader.py
import csv
import os
import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Key: tank_id, Value: level_mm -> volume_litres. Missing tables are cached as None.
_strapping_tables_cache: Dict[str, Optional[Dict[int, float]]] = {}
_cache_lock = threading.Lock()

STRAPPING_DATA_BASE_PATH = os.getenv(
    "STRAPPING_DATA_PATH", os.path.join(os.path.dirname(__file__), 'strapping'))
DEFAULT_STRAPPING_FILENAME_TEMPLATE = "{tank_id}.csv"


def load_strapping_csv(file_path: str) -> Optional[Dict[int, float]]:
    """
    Reads a ``level_mm,volume_litres`` CSV with a header row.
    Malformed rows are skipped with a warning.
    """
    if not os.path.exists(file_path):
        logger.debug(f"Strapping table file not found: {file_path}")
        return None

    strapping_data: Dict[int, float] = {}
    try:
        with open(file_path, mode='r', newline='', encoding='utf-8') as csvfile:
            reader = csv.reader(csvfile)
            next(reader, None)
            for line_no, row in enumerate(reader, start=2):
                if len(row) < 2:
                    logger.warning(f"Skipping malformed row in {file_path} at line {line_no}: {row}")
                    continue
                try:
                    strapping_data[int(float(row[0]))] = float(row[1])
                except ValueError:
                    logger.warning(f"Skipping non-numeric row in {file_path} at line {line_no}: {row}")
    except OSError as e:
        logger.error(f"Error reading strapping table {file_path}: {e}", exc_info=True)
        return None

    if not strapping_data:
        logger.warning(f"No valid data loaded from strapping table: {file_path}")
        return None
    logger.info(f"Loaded strapping table {file_path} with {len(strapping_data)} entries.")
    return strapping_data


def get_strapping_table_litres(tank_id: str, base_path: Optional[str] = None,
                               filename_template: str = DEFAULT_STRAPPING_FILENAME_TEMPLATE) -> Optional[Dict[int, float]]:
    """Returns the cached strapping table for ``tank_id``, loading it from CSV on first use."""
    with _cache_lock:
        if tank_id in _strapping_tables_cache:
            return _strapping_tables_cache[tank_id]

    file_path = os.path.join(base_path or STRAPPING_DATA_BASE_PATH, filename_template.format(tank_id=tank_id))
    table = load_strapping_csv(file_path)
    with _cache_lock:
        _strapping_tables_cache[tank_id] = table
    return table


def clear_strapping_cache():
    with _cache_lock:
        _strapping_tables_cache.clear()
    logger.info("Strapping table cache cleared.")
