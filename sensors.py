"""Bridges Home Assistant sensor and light states onto the room topics."""

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Tuple

from config import RoomConfig
from ha import HomeAssistantAPI
from state import utc_now
from topics import light_status_topic, room_humidity_topic, room_temperature_topic

logger = logging.getLogger(__name__)

ON_STATES = {"on", "open", "true", 1.0}


def normalize_light_state(state: Any) -> str:
    return "on" if state in ON_STATES else "off"


class SensorBridge:
    """
    Polls room sensors and lights and publishes their values on change.

    Published messages are retained, so controllers started later pick up
    the last known reading on subscribe.
    """

    def __init__(self, ha: HomeAssistantAPI, publisher, rooms: Iterable[RoomConfig], clock=utc_now):
        self.ha = ha
        self.publisher = publisher
        self.clock = clock
        self._last: Dict[str, Any] = {}
        self._sources: List[Tuple[str, str, Callable[[Any], Any]]] = []

        for room in rooms:
            if room.sensor and room.sensor.humidity_entity:
                self._sources.append(
                    (room.sensor.humidity_entity, room_humidity_topic(room.id), float)
                )
            if room.sensor and room.sensor.temperature_entity:
                self._sources.append(
                    (room.sensor.temperature_entity, room_temperature_topic(room.id), float)
                )
            for light in room.lights:
                if light.entity:
                    self._sources.append(
                        (
                            light.entity,
                            light_status_topic(room.id, light.id),
                            normalize_light_state,
                        )
                    )

    def poll(self) -> int:
        """
        Read every source once and publish the changed ones.

        Returns: Number of published updates
        """
        published = 0
        for entity_id, topic, convert in self._sources:
            result = self.ha.get_state_changed(entity_id)
            if result is None:
                continue
            state, last_changed = result

            try:
                value = convert(state)
            except (ValueError, TypeError):
                logger.warning(f"Unexpected state {state!r} for {entity_id}")
                continue

            if self._last.get(topic) == value:
                continue

            # Home Assistant knows when the state changed; fall back to now
            since = last_changed or self.clock()
            payload = {"value": value, "since": since.isoformat()}
            if self.publisher.publish(topic, payload, retain=True):
                self._last[topic] = value
                published += 1

        return published

    def run(self, stop_event: threading.Event, interval: float = 10.0) -> None:
        logger.info(f"Polling {len(self._sources)} sensor sources every {interval}s")
        while not stop_event.is_set():
            try:
                self.poll()
            except Exception as e:
                logger.error(f"Sensor polling failed: {e}", exc_info=True)
            stop_event.wait(interval)
