"""Configuration loader for room fan control."""

import os
import yaml
from dataclasses import dataclass, field
from typing import Dict, List, Optional


DEFAULT_SPEED_PERCENTAGES = {"off": 0, "min": 50, "max": 100}


class ConfigError(ValueError):
    """Raised when the configuration file is structurally invalid."""


@dataclass
class FanConfig:
    """Static settings of a single exhaust fan."""

    id: str
    label: str
    entity: str
    min_humidity_threshold: float
    max_humidity_threshold: float
    min_run_time: float  # seconds
    light_timeout: float  # seconds
    trailing_time: float  # seconds
    trigger_lights: List[str] = field(default_factory=list)
    speed_percentages: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_SPEED_PERCENTAGES)
    )


@dataclass
class LightConfig:
    """A light whose on/off state drives trailing runs."""

    id: str
    label: str
    entity: Optional[str] = None


@dataclass
class SensorConfig:
    """Home Assistant entities providing room climate readings."""

    humidity_entity: Optional[str] = None
    temperature_entity: Optional[str] = None


@dataclass
class RoomConfig:
    """Configuration for a single room."""

    id: str
    label: str
    fans: List[FanConfig] = field(default_factory=list)
    lights: List[LightConfig] = field(default_factory=list)
    sensor: Optional[SensorConfig] = None

    def get_fan(self, fan_id: str) -> Optional[FanConfig]:
        for fan in self.fans:
            if fan.id == fan_id:
                return fan
        return None


@dataclass
class GlobalConfig:
    """Global configuration."""

    homeassistant_url: str
    homeassistant_token: Optional[str]
    mqtt_host: str
    mqtt_port: int = 1883
    mqtt_client_id: str = "room-fan-controller"
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    controlled_rooms: List[str] = field(default_factory=list)
    tick_interval: float = 1.0
    sensor_poll_interval: float = 10.0
    request_timeout: float = 10


@dataclass
class Config:
    """Complete configuration."""

    global_config: GlobalConfig
    rooms: Dict[str, RoomConfig]

    def controlled_rooms(self) -> List[RoomConfig]:
        """Rooms handled by this process (all rooms when none are listed)."""
        wanted = self.global_config.controlled_rooms
        if not wanted:
            return list(self.rooms.values())
        return [room for room_id, room in self.rooms.items() if room_id in wanted]


def _require(raw: dict, key: str, path: str):
    if not isinstance(raw, dict) or key not in raw:
        raise ConfigError(f"Missing required config key '{path}.{key}'")
    return raw[key]


def _parse_fan(fan_id: str, fan_raw: dict, path: str) -> FanConfig:
    speeds = dict(DEFAULT_SPEED_PERCENTAGES)
    speeds.update(fan_raw.get("speed_percentages") or {})

    return FanConfig(
        id=fan_id,
        label=fan_raw.get("label", fan_id.replace("_", " ").title()),
        entity=_require(fan_raw, "entity", path),
        min_humidity_threshold=float(
            _require(fan_raw, "min_humidity_threshold", path)
        ),
        max_humidity_threshold=float(
            _require(fan_raw, "max_humidity_threshold", path)
        ),
        min_run_time=float(_require(fan_raw, "min_run_time", path)),
        light_timeout=float(_require(fan_raw, "light_timeout", path)),
        trailing_time=float(_require(fan_raw, "trailing_time", path)),
        trigger_lights=list(fan_raw.get("trigger_lights") or []),
        speed_percentages=speeds,
    )


def _parse_room(room_id: str, room_raw: dict) -> RoomConfig:
    path = f"rooms.{room_id}"
    room_raw = room_raw or {}

    lights = []
    for light_id, light_raw in (room_raw.get("lights") or {}).items():
        light_raw = light_raw or {}
        lights.append(
            LightConfig(
                id=light_id,
                label=light_raw.get("label", light_id.replace("_", " ").title()),
                entity=light_raw.get("entity"),
            )
        )

    light_ids = {light.id for light in lights}
    fans = []
    for fan_id, fan_raw in (room_raw.get("fans") or {}).items():
        fan = _parse_fan(fan_id, fan_raw or {}, f"{path}.fans.{fan_id}")
        unknown = [light for light in fan.trigger_lights if light not in light_ids]
        if unknown:
            raise ConfigError(
                f"Fan '{path}.fans.{fan_id}' references unknown trigger lights: "
                f"{', '.join(unknown)}"
            )
        fans.append(fan)

    sensor = None
    sensor_raw = room_raw.get("sensor")
    if sensor_raw:
        sensor = SensorConfig(
            humidity_entity=sensor_raw.get("humidity"),
            temperature_entity=sensor_raw.get("temperature"),
        )

    return RoomConfig(
        id=room_id,
        label=room_raw.get("label", room_id.replace("_", " ").title()),
        fans=fans,
        lights=lights,
        sensor=sensor,
    )


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from YAML file."""
    with open(config_path, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    # Parse global config
    global_raw = _require(raw_config, "global", "config")
    ha_raw = _require(global_raw, "homeassistant", "global")
    mqtt_raw = _require(global_raw, "mqtt", "global")

    global_config = GlobalConfig(
        homeassistant_url=_require(ha_raw, "url", "global.homeassistant"),
        homeassistant_token=os.getenv("HA_TOKEN"),
        mqtt_host=_require(mqtt_raw, "host", "global.mqtt"),
        mqtt_port=int(mqtt_raw.get("port", 1883)),
        mqtt_client_id=mqtt_raw.get("client_id", "room-fan-controller"),
        mqtt_username=os.getenv("MQTT_USERNAME"),
        mqtt_password=os.getenv("MQTT_PASSWORD"),
        controlled_rooms=list(global_raw.get("controlled_rooms") or []),
        tick_interval=float(global_raw.get("tick_interval", 1.0)),
        sensor_poll_interval=float(global_raw.get("sensor_poll_interval", 10.0)),
        request_timeout=float(ha_raw.get("timeout", 10)),
    )

    # Parse room configs
    rooms = {}
    for room_id, room_raw in (_require(raw_config, "rooms", "config") or {}).items():
        rooms[room_id] = _parse_room(room_id, room_raw)

    for room_id in global_config.controlled_rooms:
        if room_id not in rooms:
            raise ConfigError(f"Controlled room '{room_id}' is not configured")

    return Config(global_config=global_config, rooms=rooms)
