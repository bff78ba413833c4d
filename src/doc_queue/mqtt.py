"""MQTT broadcaster for queue change events."""

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import paho.mqtt.client as mqtt

from .change_bus import ChangeBus
from .schemas import QueueChange

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    def connect(self) -> bool: ...

    def disconnect(self) -> None: ...

    def publish_event(self, event_type: str, entry_id: str, data: dict[str, Any]) -> bool: ...


class MQTTBroadcaster:
    """MQTT event broadcaster for queue entry changes."""

    def __init__(self, broker: str, port: int, topic: str):
        self.broker = broker
        self.port = port
        self.topic = topic
        self.client: mqtt.Client | None = None
        self.connected = False

    def connect(self) -> bool:
        try:
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            self.client.on_connect = self._on_connect
            self.client.connect(self.broker, self.port, keepalive=60)
            self.client.loop_start()
            self.connected = True
            return True
        except Exception as e:
            logger.warning("Failed to connect to MQTT broker: %s", e)
            return False

    def disconnect(self) -> None:
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
            self.connected = False

    def publish_event(self, event_type: str, entry_id: str, data: dict[str, Any]) -> bool:
        if not self.connected or not self.client:
            return False
        try:
            payload = {
                "entry_id": entry_id,
                "event_type": event_type,
                "timestamp": int(time.time() * 1000),
                **data,
            }
            result = self.client.publish(self.topic, json.dumps(payload), qos=1)
            return result.rc == mqtt.MQTT_ERR_SUCCESS
        except Exception as e:
            logger.error("Error publishing event: %s", e)
            return False

    def _on_connect(self, client, userdata, flags, reason_code, properties):  # pyright: ignore[reportMissingParameterType, reportUnusedParameter]
        self.connected = not reason_code.is_failure


class NoOpBroadcaster:
    """No-operation broadcaster for testing or when MQTT disabled."""

    def connect(self) -> bool:
        return True

    def disconnect(self) -> None:
        pass

    def publish_event(self, event_type: str, entry_id: str, data: dict[str, Any]) -> bool:
        return True


_broadcaster: MQTTBroadcaster | NoOpBroadcaster | None = None


def get_broadcaster(
    broadcast_type: str, broker: str, port: int, topic: str
) -> MQTTBroadcaster | NoOpBroadcaster:
    """Get or create global broadcaster instance."""
    global _broadcaster
    if _broadcaster is not None:
        return _broadcaster

    if broadcast_type == "mqtt":
        _broadcaster = MQTTBroadcaster(broker, port, topic)
    else:
        _broadcaster = NoOpBroadcaster()
    _ = _broadcaster.connect()

    return _broadcaster


def shutdown_broadcaster() -> None:
    """Shutdown global broadcaster."""
    global _broadcaster
    if _broadcaster:
        _broadcaster.disconnect()
        _broadcaster = None


def change_to_event(change: QueueChange) -> tuple[str, dict[str, Any]]:
    """Map a queue change to an (event_type, data) pair for publishing."""
    entry = change.entry
    return change.kind.value, {
        "document_id": entry.document_id,
        "status": entry.status.value,
        "phase": entry.processing_phase.value,
        "progress": entry.progress_percentage,
        "attempt_count": entry.attempt_count,
    }


def attach_broadcaster(bus: ChangeBus, broadcaster: Broadcaster) -> Callable[[], None]:
    """Forward every queue change on ``bus`` to ``broadcaster``.

    Returns:
        Function that detaches the broadcaster
    """

    def forward(change: QueueChange) -> None:
        event_type, data = change_to_event(change)
        if not broadcaster.publish_event(event_type, change.entry.entry_id, data):
            logger.debug("Broadcast of %s for %s dropped", event_type, change.entry.entry_id)

    return bus.subscribe(forward)
