import logging
import time
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import requests

from config import FanConfig

logger = logging.getLogger(__name__)


def _parse_state(state: dict):
    # Handle 'unavailable' or 'unknown' states
    if state["state"] in ["unavailable", "unknown", "none", None]:
        return None

    try:
        return float(state["state"])
    except (ValueError, TypeError):
        return state["state"]


class HomeAssistantAPI:
    def __init__(self, ha_url: str, ha_token: str, timeout: float = 10):
        self.ha_url = ha_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {ha_token}",
            "Content-Type": "application/json",
        }
        self.timeout = timeout

    def _fetch_state(self, entity_id: str) -> dict:
        url = f"{self.ha_url}/api/states/{entity_id}"
        response = requests.get(url, headers=self.headers, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def get_state(self, entity_id: str):
        try:
            return _parse_state(self._fetch_state(entity_id))
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.error(f"Error getting state for {entity_id}: {e}")
            return None

    def get_state_changed(self, entity_id: str) -> Optional[Tuple[Any, Optional[datetime]]]:
        """
        Get an entity state together with its last_changed timestamp.

        Returns:
            (state, last_changed), or None if the entity is unavailable.
            last_changed is None when Home Assistant does not report it.
        """
        try:
            state = self._fetch_state(entity_id)
            value = _parse_state(state)
            if value is None:
                return None

            last_changed = state.get("last_changed")
            if last_changed:
                last_changed = datetime.fromisoformat(last_changed.replace("Z", "+00:00"))
                if last_changed.tzinfo is None:
                    last_changed = last_changed.replace(tzinfo=UTC)
            return value, last_changed or None
        except (requests.RequestException, ValueError, KeyError, AttributeError) as e:
            logger.error(f"Error getting state for {entity_id}: {e}")
            return None

    def call_service(self, domain: str, service: str, **kwargs) -> bool:
        try:
            url = f"{self.ha_url}/api/services/{domain}/{service}"
            response = requests.post(
                url, headers=self.headers, json=kwargs, timeout=self.timeout
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"Error calling {domain}.{service}: {e}")
            return False

    def get_attribute(self, entity_id: str, attribute: str):
        """Get a specific attribute value from an entity."""
        try:
            state = self._fetch_state(entity_id)

            # Handle missing attributes
            if "attributes" not in state or attribute not in state["attributes"]:
                return None

            return state["attributes"][attribute]
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.error(f"Error getting attribute '{attribute}' for {entity_id}: {e}")
            return None


class HomeAssistantFanActuator:
    """Drives fan entities in Home Assistant from off/min/max speeds.

    A command repeating the last applied speed is skipped while that speed
    was confirmed less than verify_interval seconds ago. After that the
    entity's real state is read back, and the speed is sent again if the
    fan was changed outside the controller.
    """

    def __init__(
        self,
        ha: HomeAssistantAPI,
        fans: Iterable[FanConfig],
        verify_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ha = ha
        self.fans: Dict[str, FanConfig] = {fan.id: fan for fan in fans}
        self.verify_interval = verify_interval
        self.clock = clock
        # fan id -> (speed, monotonic time it was last sent or confirmed)
        self._applied: Dict[str, Tuple[Any, float]] = {}

    def read_percentage(self, fan: FanConfig) -> Optional[int]:
        """Current percentage of a fan entity, 0 when off, None if unknown."""
        state = self.ha.get_state(fan.entity)
        if state is None:
            return None
        if state == "off":
            return 0
        percentage = self.ha.get_attribute(fan.entity, "percentage")
        return None if percentage is None else int(percentage)

    def set_speed(self, fan_id: str, speed: Any) -> bool:
        fan = self.fans.get(fan_id)
        if fan is None:
            logger.error(f"Cannot set speed of unknown fan {fan_id}")
            return False

        percentage = fan.speed_percentages.get(speed)
        if percentage is None:
            logger.error(f"Unsupported speed {speed!r} for {fan.entity}")
            return False

        applied = self._applied.get(fan_id)
        if applied is not None and applied[0] == speed:
            if self.clock() - applied[1] < self.verify_interval:
                return True
            if self.read_percentage(fan) == percentage:
                self._applied[fan_id] = (speed, self.clock())
                return True
            logger.warning(f"{fan.entity} is no longer at {speed}, sending again")

        if percentage == 0:
            ok = self.ha.call_service("fan", "turn_off", entity_id=fan.entity)
        else:
            ok = self.ha.call_service(
                "fan", "set_percentage", entity_id=fan.entity, percentage=percentage
            )

        if ok:
            logger.info(f"Set {fan.entity} to {speed} ({percentage}%)")
            self._applied[fan_id] = (speed, self.clock())
        else:
            # Forget the applied speed so the next evaluation retries
            self._applied.pop(fan_id, None)
        return ok
