"""Runtime state of a controlled room."""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    """Get current UTC time (for default factory)."""
    return datetime.now(UTC)


@dataclass
class Reading:
    """A value together with the moment it was observed or set."""

    value: Any
    since: Optional[datetime] = None


@dataclass
class FanStatus:
    """Mode, commanded speed and setting overrides of one fan.

    Overrides left as None fall back to the fan's configured defaults.
    """

    control: Reading = field(default_factory=lambda: Reading("manual"))
    speed: Reading = field(default_factory=lambda: Reading("off", utc_now()))
    min_humidity_threshold: Optional[Reading] = None
    max_humidity_threshold: Optional[Reading] = None
    min_run_time: Optional[Reading] = None
    light_timeout: Optional[Reading] = None
    trailing_time: Optional[Reading] = None

    def effective(self, name: str, default: Any) -> Any:
        """Return the override for a setting, or the default when unset."""
        override = getattr(self, name)
        if override is None or override.value is None:
            return default
        return override.value


@dataclass
class RoomStatus:
    """Last known readings and fan state of a room."""

    humidity: Optional[Reading] = None
    temperature: Optional[Reading] = None
    fans: Dict[str, FanStatus] = field(default_factory=dict)
    lights: Dict[str, Reading] = field(default_factory=dict)
