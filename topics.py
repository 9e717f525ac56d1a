"""MQTT topic layout shared by the controller, dispatcher and sensor bridge."""

from typing import NamedTuple, Optional

# Fan setting subtopics as they appear on the wire, mapped to FanStatus fields
FAN_SUBCATEGORIES = {
    "control": "control",
    "speed": "speed",
    "minHumidityThreshold": "min_humidity_threshold",
    "maxHumidityThreshold": "max_humidity_threshold",
    "minRunTime": "min_run_time",
    "lightTimeout": "light_timeout",
    "trailingTime": "trailing_time",
}

ROOM_READINGS = ("humidity", "temperature")


class Topic(NamedTuple):
    room_id: str
    category: str
    element_id: Optional[str] = None
    subcategory: Optional[str] = None


def fan_topic(room_id: str, fan_id: str, subcategory: str) -> str:
    return f"room/{room_id}/fans/{fan_id}/{subcategory}"


def fan_speed_topic(room_id: str, fan_id: str) -> str:
    return fan_topic(room_id, fan_id, "speed")


def light_status_topic(room_id: str, light_id: str) -> str:
    return f"room/{room_id}/lights/{light_id}/status"


def room_humidity_topic(room_id: str) -> str:
    return f"room/{room_id}/humidity"


def room_temperature_topic(room_id: str) -> str:
    return f"room/{room_id}/temperature"


def parse_topic(topic: str) -> Optional[Topic]:
    """
    Split a topic string into its room, category, element and subcategory.

    Returns None for topics outside the room/ namespace or with an
    unexpected shape.
    """
    parts = topic.split("/")
    if len(parts) < 3 or parts[0] != "room" or not parts[1]:
        return None

    room_id, category = parts[1], parts[2]

    if category in ROOM_READINGS and len(parts) == 3:
        return Topic(room_id, category)

    if category == "fans" and len(parts) == 5 and parts[3]:
        if parts[4] not in FAN_SUBCATEGORIES:
            return None
        return Topic(room_id, category, parts[3], parts[4])

    if category == "lights" and len(parts) == 5 and parts[3] and parts[4] == "status":
        return Topic(room_id, category, parts[3], parts[4])

    return None
