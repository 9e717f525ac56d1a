"""Routes incoming MQTT messages to the room controllers."""

import json
import logging
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from controller import RoomController, RoomWorker
from state import Reading
from topics import FAN_SUBCATEGORIES, parse_topic

logger = logging.getLogger(__name__)

# Fan settings carrying numbers; control and speed are passed through as-is
NUMERIC_FAN_SETTINGS = {
    "minHumidityThreshold",
    "maxHumidityThreshold",
    "minRunTime",
    "lightTimeout",
    "trailingTime",
}


def parse_since(raw: Any) -> Optional[datetime]:
    """
    Parse a payload timestamp.

    Accepts ISO-8601 strings and epoch milliseconds. Naive datetimes are
    taken as UTC.

    Raises:
        ValueError: If the timestamp cannot be parsed
    """
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(f"Invalid timestamp: {raw!r}")
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw / 1000, UTC)
    if isinstance(raw, str):
        since = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if since.tzinfo is None:
            since = since.replace(tzinfo=UTC)
        return since
    raise ValueError(f"Invalid timestamp: {raw!r}")


def parse_payload(payload: bytes, numeric: bool = False) -> Reading:
    """
    Decode a JSON {value, since?} payload into a Reading.

    Raises:
        ValueError: If the payload is not valid JSON, has no value, or
            carries a non-numeric value where a number is required
    """
    data = json.loads(payload)
    if not isinstance(data, dict) or data.get("value") is None:
        raise ValueError("payload has no value")

    value = data["value"]
    if numeric:
        if isinstance(value, bool):
            raise ValueError(f"expected a number, got {value!r}")
        value = float(value)

    return Reading(value=value, since=parse_since(data.get("since")))


class Dispatcher:
    """Maps topics to RoomController mutators.

    When a RoomWorker is given for a room, mutators are queued on it instead
    of running on the calling (transport) thread.
    """

    def __init__(
        self,
        controllers: Dict[str, RoomController],
        workers: Optional[Dict[str, RoomWorker]] = None,
    ):
        self.controllers = controllers
        self.workers = workers or {}

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Route a message to its room; malformed messages are dropped."""
        logger.debug(f"Message on {topic}: {payload!r}")

        parsed = parse_topic(topic)
        if parsed is None:
            logger.debug(f"Ignoring unknown topic {topic}")
            return

        controller = self.controllers.get(parsed.room_id)
        if controller is None:
            logger.debug(f"Ignoring message for unknown room {parsed.room_id}")
            return

        numeric = parsed.category in ("humidity", "temperature") or (
            parsed.subcategory in NUMERIC_FAN_SETTINGS
        )
        try:
            reading = parse_payload(payload, numeric=numeric)
        except (ValueError, TypeError, OverflowError, OSError) as e:
            logger.debug(f"Dropping malformed payload on {topic}: {e}")
            return

        if parsed.category == "humidity":
            self._call(parsed.room_id, controller.set_humidity, reading)
        elif parsed.category == "temperature":
            self._call(parsed.room_id, controller.set_temperature, reading)
        elif parsed.category == "lights":
            self._call(parsed.room_id, controller.set_light, parsed.element_id, reading)
        elif parsed.category == "fans":
            mutator = getattr(controller, f"set_fan_{FAN_SUBCATEGORIES[parsed.subcategory]}")
            self._call(parsed.room_id, mutator, parsed.element_id, reading)

    def _call(self, room_id: str, mutator, *args) -> None:
        worker = self.workers.get(room_id)
        if worker is None:
            mutator(*args)
        else:
            worker.submit(mutator, *args)
