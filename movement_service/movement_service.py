# custody_batch_engine/movement_service/movement_service.py

import os
import sys
import json
import ssl
import time
import logging
import threading
from typing import Dict, List, Optional

# --- ROBUST PATH SETUP ---
current_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(current_dir)
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import paho.mqtt.client as mqtt

from config import settings
from core.batch_engine import BatchEngine, build_default_engine
from core.errors import NotFound
from core.models.movement import BatchSuggestion, MovementEvent
from core.movement_detector import MovementSubscription
from utils.helpers import CustomJsonEncoder

logger = logging.getLogger("MovementService")


def movement_topic(tank_id: str) -> str:
    return f"{settings.MQTT_BASE_TOPIC}/tanks/{tank_id}/movement"


def suggestion_topic(tank_id: str) -> str:
    return f"{settings.MQTT_BASE_TOPIC}/tanks/{tank_id}/batch_suggestion"


def build_mqtt_client() -> mqtt.Client:
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=settings.MQTT_CLIENT_ID_MOVEMENT)
    if settings.MQTT_USE_TLS:
        client.tls_set(cert_reqs=ssl.CERT_REQUIRED, tls_version=ssl.PROTOCOL_TLS)
        logger.info("MQTT TLS enabled")
    if settings.MQTT_USERNAME and settings.MQTT_PASSWORD:
        client.username_pw_set(settings.MQTT_USERNAME, settings.MQTT_PASSWORD)
        logger.info("MQTT authentication configured")
    return client


class MovementService:
    """
    Monitors tank levels and publishes movement events and batch suggestions
    to the MQTT broker. One consumer thread drains each tank's event stream.
    """
    def __init__(self, engine: BatchEngine, client: Optional[mqtt.Client] = None):
        self.engine = engine
        self.client = client or build_mqtt_client()
        self._consumers: Dict[str, threading.Thread] = {}
        self._last_suggested: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"Failed to connect to MQTT Broker, reason: {reason_code}")
        else:
            logger.info(f"Successfully connected to MQTT Broker at {settings.MQTT_BROKER_ADDRESS}")

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        logger.warning("Disconnected from MQTT Broker. The client will attempt to reconnect automatically.")

    def connect(self):
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        logger.info(f"Attempting to connect to MQTT broker at {settings.MQTT_BROKER_ADDRESS}:{settings.MQTT_BROKER_PORT}...")
        self.client.connect(settings.MQTT_BROKER_ADDRESS, settings.MQTT_BROKER_PORT, 60)
        self.client.loop_start()

    def publish(self, topic: str, payload: Dict):
        try:
            self.client.publish(topic, json.dumps(payload, cls=CustomJsonEncoder), qos=1)
            logger.debug(f"Published to {topic}: {payload}")
        except Exception as e:
            logger.error(f"Failed to publish to topic {topic}: {e}")

    def handle_event(self, event: MovementEvent) -> Optional[BatchSuggestion]:
        """Publishes the event, then the tank's suggestion whenever it changes."""
        self.publish(movement_topic(event.tank_id), event.to_dict())
        suggestion = self.engine.suggest_batch(event.tank_id)
        current = suggestion.suggested_type.value if suggestion.should_suggest else None
        with self._lock:
            changed = self._last_suggested.get(event.tank_id) != current
            self._last_suggested[event.tank_id] = current
        if changed:
            self.publish(suggestion_topic(event.tank_id), suggestion.to_dict())
            if suggestion.should_suggest:
                logger.info(f"Batch suggestion for tank {event.tank_id}: {suggestion.reason}")
            return suggestion
        return None

    def _consume(self, subscription: MovementSubscription):
        for event in subscription:
            try:
                self.handle_event(event)
            except Exception as e:
                logger.error(f"Failed to handle movement event for tank {subscription.tank_id}: {e}", exc_info=True)
        logger.info(f"Movement stream for tank {subscription.tank_id} ended.")

    def monitor(self, tank_id: str) -> bool:
        with self._lock:
            if tank_id in self._consumers:
                return False
        try:
            subscription = self.engine.start_monitoring(tank_id)
        except NotFound:
            logger.warning(f"Tank {tank_id} is unknown; not monitoring it.")
            return False
        consumer = threading.Thread(target=self._consume, args=(subscription,),
                                    name=f"movement-publisher-{tank_id}", daemon=True)
        with self._lock:
            self._consumers[tank_id] = consumer
        consumer.start()
        return True

    def stop(self):
        with self._lock:
            tank_ids = list(self._consumers)
            self._consumers.clear()
        for tank_id in tank_ids:
            self.engine.stop_monitoring(tank_id)
        self.client.loop_stop()
        self.client.disconnect()
        logger.info("Movement service stopped.")


def tanks_to_monitor(engine: BatchEngine) -> List[str]:
    if settings.MOVEMENT_MONITORED_TANKS:
        return list(settings.MOVEMENT_MONITORED_TANKS)
    return engine.lifecycle.tanks.list_tank_ids()


def main():
    logger.info("Starting Movement Service...")
    if not all([settings.MQTT_BROKER_ADDRESS, settings.MQTT_BROKER_PORT]):
        logger.critical("MQTT Broker configuration is missing. Exiting.")
        sys.exit(1)

    engine = build_default_engine()
    service = MovementService(engine)
    service.connect()
    for tank_id in tanks_to_monitor(engine):
        service.monitor(tank_id)

    try:
        while True:
            time.sleep(60)
            logger.info(f"Monitoring tanks: {', '.join(engine.movement.monitored_tanks()) or 'none'}")
    except KeyboardInterrupt:
        logger.info("Shutdown requested.")
    finally:
        service.stop()
        engine.shutdown()


if __name__ == "__main__":
    main()
