"""MQTT transport between the controllers and the rest of the smart home."""

import json
import logging
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from config import GlobalConfig, RoomConfig
from topics import (
    FAN_SUBCATEGORIES,
    fan_topic,
    light_status_topic,
    room_humidity_topic,
    room_temperature_topic,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class MqttMessaging:
    """Thin wrapper around a paho client with JSON payloads.

    Subscriptions are remembered and re-made on every (re)connect.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        client_id: str = "room-fan-controller",
        username: Optional[str] = None,
        password: Optional[str] = None,
        client: Optional[mqtt.Client] = None,
    ):
        self.host = host
        self.port = port
        self.client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=client_id
        )
        if username:
            self.client.username_pw_set(username, password)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

        self._handler: Optional[MessageHandler] = None
        self._subscriptions = []

    @classmethod
    def from_config(cls, gc: GlobalConfig) -> "MqttMessaging":
        return cls(
            host=gc.mqtt_host,
            port=gc.mqtt_port,
            client_id=gc.mqtt_client_id,
            username=gc.mqtt_username,
            password=gc.mqtt_password,
        )

    def set_handler(self, handler: MessageHandler) -> None:
        self._handler = handler

    def connect(self) -> None:
        logger.info(f"Connecting to MQTT broker {self.host}:{self.port}")
        self.client.connect_async(self.host, self.port, keepalive=60)
        self.client.loop_start()

    def close(self) -> None:
        self.client.loop_stop()
        self.client.disconnect()

    def subscribe(self, topic: str) -> None:
        if topic not in self._subscriptions:
            self._subscriptions.append(topic)
        if self.client.is_connected():
            self.client.subscribe(topic)

    def subscribe_room(self, room: RoomConfig) -> None:
        """Subscribe to every fan, light and sensor topic of a room."""
        for fan in room.fans:
            for subcategory in FAN_SUBCATEGORIES:
                self.subscribe(fan_topic(room.id, fan.id, subcategory))
        for light in room.lights:
            self.subscribe(light_status_topic(room.id, light.id))
        self.subscribe(room_humidity_topic(room.id))
        self.subscribe(room_temperature_topic(room.id))

    def publish(self, topic: str, payload: Any, retain: bool = True) -> bool:
        info = self.client.publish(topic, json.dumps(payload), qos=1, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"Error publishing to {topic}: {mqtt.error_string(info.rc)}")
            return False
        logger.debug(f"Published {payload} to {topic}")
        return True

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error(f"MQTT connection refused: {reason_code}")
            return
        logger.info("Connected to MQTT broker")
        for topic in self._subscriptions:
            client.subscribe(topic)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    def _on_message(self, client, userdata, msg):
        if self._handler is None:
            return
        try:
            self._handler(msg.topic, msg.payload)
        except Exception as e:
            logger.error(f"Error handling message on {msg.topic}: {e}", exc_info=True)
