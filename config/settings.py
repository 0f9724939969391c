# File: custody_batch_engine/config/settings.py
import os
import logging
from dotenv import load_dotenv

from utils.helpers import setup_main_logging

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
setup_main_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

try:
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    dotenv_path = os.path.join(project_root, '.env')
    logger.info(f"Attempting to load .env file from: {dotenv_path}")

    if os.path.exists(dotenv_path):
        if load_dotenv(dotenv_path=dotenv_path):
            logger.info(f"Successfully loaded .env file from {dotenv_path}")
        else:
            logger.info(f".env file at {dotenv_path} processed but set no new vars.")
    else:
        logger.info(f".env file not found at {dotenv_path}. Using system environment variables or defaults.")
except OSError as e:
    logger.error(f"Error loading .env file: {e}", exc_info=True)


def _get_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _get_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


# --- API Configuration ---
API_KEY = os.getenv("API_KEY")
if not API_KEY:
    logger.warning("API_KEY is not set. The batch API will reject every authenticated request.")
FLASK_PORT = _get_int("FLASK_PORT", "5000")
API_THREADS = _get_int("API_THREADS", "8")


# --- MQTT Configuration ---
MQTT_BROKER_ADDRESS = os.getenv("MQTT_BROKER_ADDRESS", "localhost")
MQTT_BROKER_PORT = _get_int("MQTT_BROKER_PORT", "1883")
MQTT_CLIENT_ID_MOVEMENT = os.getenv("MQTT_CLIENT_ID_MOVEMENT", "batch_movement_monitor")
MQTT_BASE_TOPIC = os.getenv("MQTT_BASE_TOPIC", "demo/depot/dev")
MQTT_USERNAME = os.getenv("MQTT_USERNAME", "")
MQTT_PASSWORD = os.getenv("MQTT_PASSWORD", "")
MQTT_USE_TLS = os.getenv("MQTT_USE_TLS", "false").lower() == "true"

logger.info(f"MQTT_BROKER_ADDRESS = {MQTT_BROKER_ADDRESS}")
logger.info(f"MQTT_BROKER_PORT = {MQTT_BROKER_PORT}")
logger.info(f"MQTT_BASE_TOPIC = {MQTT_BASE_TOPIC}")
logger.info(f"MQTT_USE_TLS = {MQTT_USE_TLS}")


# --- Database Configuration (For SQLAlchemy) ---
DB_NAME = os.getenv("DB_NAME", "custody_batches_db")
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
SQLITE_FALLBACK_PATH = os.getenv("SQLITE_FALLBACK_PATH", os.path.join(project_root, "custody_batches.sqlite"))

DATABASE_URL = os.getenv("DATABASE_URL")
if DATABASE_URL:
    logger.info("DATABASE_URL taken from environment.")
elif DB_PASSWORD:
    DATABASE_URL = f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
    masked_db_url = f"postgresql+psycopg2://{DB_USER}:***@{DB_HOST}:{DB_PORT}/{DB_NAME}"
    logger.info(f"DATABASE_URL constructed: {masked_db_url}")
else:
    DATABASE_URL = f"sqlite:///{SQLITE_FALLBACK_PATH}"
    logger.warning(f"DB_PASSWORD is not set. Falling back to local SQLite database at {SQLITE_FALLBACK_PATH}")


# --- Volume Correction Settings ---
REFERENCE_TEMPERATURE_CELSIUS = _get_float("REFERENCE_TEMPERATURE_CELSIUS", "15.0")
THERMAL_EXPANSION_COEFF = _get_float("THERMAL_EXPANSION_COEFF", "0.0006")
DEFAULT_API_GRAVITY = _get_float("DEFAULT_API_GRAVITY", "35.0")
DEFAULT_PRESSURE_BAR = _get_float("DEFAULT_PRESSURE_BAR", "1.013")

logger.info(f"REFERENCE_TEMPERATURE_CELSIUS = {REFERENCE_TEMPERATURE_CELSIUS}°C")
logger.info(f"THERMAL_EXPANSION_COEFF = {THERMAL_EXPANSION_COEFF}")


# --- Gauge Capture Settings ---
TEMPERATURE_CHANNELS = [
    key.strip() for key in os.getenv(
        "TEMPERATURE_CHANNELS",
        "temperature_19,temperature_20,temperature_21,temperature_22,temperature_23,temperature_24",
    ).split(",") if key.strip()
]
TELEMETRY_MAX_AGE_SECONDS = _get_float("TELEMETRY_MAX_AGE_SECONDS", "60")
HISTORICAL_TOLERANCE_SECONDS = _get_float("HISTORICAL_TOLERANCE_SECONDS", "60")
CAPTURE_TIMEOUT_SECONDS = _get_float("CAPTURE_TIMEOUT_SECONDS", "10")

logger.info(f"TEMPERATURE_CHANNELS = {TEMPERATURE_CHANNELS}")
logger.info(f"TELEMETRY_MAX_AGE_SECONDS = {TELEMETRY_MAX_AGE_SECONDS}")


# --- Recalculation Approval Policy ---
RECALC_APPROVAL_PERCENT_THRESHOLD = _get_float("RECALC_APPROVAL_PERCENT_THRESHOLD", "0.5")
RECALC_APPROVAL_MASS_THRESHOLD_KG = _get_float("RECALC_APPROVAL_MASS_THRESHOLD_KG", "100")

logger.info(f"RECALC_APPROVAL_PERCENT_THRESHOLD = {RECALC_APPROVAL_PERCENT_THRESHOLD}%")
logger.info(f"RECALC_APPROVAL_MASS_THRESHOLD_KG = {RECALC_APPROVAL_MASS_THRESHOLD_KG} kg")


# --- Lab Variance Thresholds ---
LAB_API_GRAVITY_THRESHOLD = _get_float("LAB_API_GRAVITY_THRESHOLD", "0.1")
LAB_TEMPERATURE_THRESHOLD = _get_float("LAB_TEMPERATURE_THRESHOLD", "2.0")
LAB_BSW_THRESHOLD = _get_float("LAB_BSW_THRESHOLD", "0.5")
LAB_PERCENTAGE_THRESHOLD = _get_float("LAB_PERCENTAGE_THRESHOLD", "0.5")


# --- Movement Detection ---
MOVEMENT_BUFFER_SIZE = _get_int("MOVEMENT_BUFFER_SIZE", "5")
MOVEMENT_POLL_INTERVAL_SECONDS = _get_float("MOVEMENT_POLL_INTERVAL_SECONDS", "10")
MOVEMENT_IDLE_THRESHOLD_MM_PER_HOUR = _get_float("MOVEMENT_IDLE_THRESHOLD_MM_PER_HOUR", "5")
MOVEMENT_MIN_CONFIDENCE = _get_float("MOVEMENT_MIN_CONFIDENCE", "0.6")
MOVEMENT_SUGGESTION_COOLDOWN_SECONDS = _get_float("MOVEMENT_SUGGESTION_COOLDOWN_SECONDS", "300")
MOVEMENT_TYPICAL_TANK_HEIGHT_MM = _get_float("MOVEMENT_TYPICAL_TANK_HEIGHT_MM", "10000")
MOVEMENT_MONITORED_TANKS = [t.strip() for t in os.getenv("MOVEMENT_MONITORED_TANKS", "").split(",") if t.strip()]

logger.info(f"MOVEMENT_POLL_INTERVAL_SECONDS = {MOVEMENT_POLL_INTERVAL_SECONDS}")
logger.info(f"MOVEMENT_BUFFER_SIZE = {MOVEMENT_BUFFER_SIZE}")


logger.info("Configuration settings loaded.")
