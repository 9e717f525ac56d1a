"""Per-room exhaust fan controller with humidity hysteresis and light trailing."""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import FanConfig, RoomConfig
from state import FanStatus, Reading, RoomStatus, utc_now
from topics import fan_speed_topic

logger = logging.getLogger(__name__)

# Hysteresis below each threshold before a running speed is dropped
MIN_HYSTERESIS_BAND = 5
MAX_HYSTERESIS_BAND = 10

SPEED_RANK = {"off": 0, "min": 1, "max": 2}


@dataclass
class FanDecision:
    """Outcome of evaluating one fan."""

    speed: Any
    trailing: bool
    manual: bool = False
    held: bool = False
    reason: str = ""


def seconds_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds()


def calculate_humidity_speed(
    humidity: Optional[float],
    current_speed: Any,
    min_threshold: float,
    max_threshold: float,
) -> Tuple[str, str]:
    """
    Pick a speed from humidity, holding the current speed inside the bands.

    The band under the max threshold is wider than the one under the min
    threshold, so "max" is held down to max - 10 while "min" is held only
    down to min - 5.

    Returns: (speed, reason)
    """
    if humidity is None:
        return "off", "no humidity reading"

    down_to_min = min_threshold - MIN_HYSTERESIS_BAND
    down_to_max = max_threshold - MAX_HYSTERESIS_BAND

    if humidity > max_threshold:
        return "max", f"humidity {humidity} > {max_threshold}"
    if current_speed == "max" and humidity > down_to_max:
        return "max", f"keep running, humidity {humidity} > {down_to_max}"
    if humidity > min_threshold:
        return "min", f"humidity {humidity} > {min_threshold}"
    if current_speed == "min" and humidity > down_to_min:
        return "min", f"keep running, humidity {humidity} > {down_to_min}"
    return "off", f"humidity {humidity} <= {min_threshold}"


def update_trailing(
    trigger_lights: List[str],
    lights: Dict[str, Reading],
    trailing: bool,
    light_timeout: float,
    trailing_time: float,
    now: datetime,
) -> Tuple[bool, str]:
    """
    Advance the trailing flag from the state of the trigger lights.

    A trigger light that stays on longer than light_timeout starts trailing.
    Trailing ends once every trigger light has been off for longer than
    trailing_time. Lights without a known state are ignored.

    Returns: (trailing, reason)
    """
    min_on_since = None
    max_off_since = None
    any_on = False

    for light_id in trigger_lights:
        light = lights.get(light_id)
        if light is None or light.since is None:
            continue

        if light.value == "on":
            any_on = True
            if min_on_since is None or light.since < min_on_since:
                min_on_since = light.since
        elif max_off_since is None or light.since > max_off_since:
            max_off_since = light.since

    if any_on:
        on_duration = seconds_between(min_on_since, now)
        if on_duration > light_timeout:
            return True, f"light on for {on_duration:.0f}s > {light_timeout}s"
        return trailing, f"light on for {on_duration:.0f}s"

    if trailing and max_off_since is not None:
        off_duration = seconds_between(max_off_since, now)
        if off_duration > trailing_time:
            return False, f"trailing time of {trailing_time}s reached"
        return True, f"keep trailing, light off for {off_duration:.0f}s"

    return trailing, ""


def decide_fan_speed(
    fan: FanConfig,
    status: FanStatus,
    humidity: Optional[float],
    lights: Dict[str, Reading],
    trailing: bool,
    now: datetime,
) -> FanDecision:
    """
    Decide the speed of one fan from a snapshot of the room.

    This is a pure function: it neither reads the clock nor mutates its
    arguments, so timer and event driven evaluations behave identically.
    """
    control = status.control.value if status.control else "manual"
    speed = status.speed.value if status.speed else "off"
    speed_since = status.speed.since if status.speed and status.speed.since else now

    if control == "manual":
        return FanDecision(speed=speed, trailing=trailing, manual=True, reason="manual")

    min_run_time = float(status.effective("min_run_time", fan.min_run_time))
    if speed != "off" and seconds_between(speed_since, now) < min_run_time:
        return FanDecision(
            speed=speed,
            trailing=trailing,
            held=True,
            reason=f"keep running, {min_run_time}s not reached",
        )

    new_speed, reason = calculate_humidity_speed(
        humidity,
        speed,
        float(status.effective("min_humidity_threshold", fan.min_humidity_threshold)),
        float(status.effective("max_humidity_threshold", fan.max_humidity_threshold)),
    )

    trailing, trailing_reason = update_trailing(
        fan.trigger_lights,
        lights,
        trailing,
        float(status.effective("light_timeout", fan.light_timeout)),
        float(status.effective("trailing_time", fan.trailing_time)),
        now,
    )

    if trailing and SPEED_RANK[new_speed] < SPEED_RANK["min"]:
        new_speed = "min"
        reason = f"trailing ({trailing_reason})"

    return FanDecision(speed=new_speed, trailing=trailing, reason=reason)


class RoomController:
    """
    Owns the status of one room and drives its fans.

    Every mutator stores its reading and re-evaluates immediately; a
    RoomWorker re-evaluates periodically. A per-room lock serialises both.
    """

    def __init__(
        self,
        room: RoomConfig,
        actuator,
        publisher,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.room = room
        self.actuator = actuator
        self.publisher = publisher
        self.clock = clock
        self.fans_trailing: Dict[str, bool] = {fan.id: False for fan in room.fans}
        self.status = RoomStatus(
            fans={
                fan.id: FanStatus(speed=Reading("off", clock())) for fan in room.fans
            }
        )
        self._lock = threading.Lock()

    def _location(self, fan: FanConfig) -> str:
        return f"{self.room.label}/{fan.label}"

    def _stamp(self, reading: Reading) -> Reading:
        if reading.since is None:
            return Reading(reading.value, self.clock())
        return reading

    # ---- state ingestion ----

    def _set_fan_field(self, fan_id: str, name: str, reading: Reading) -> None:
        with self._lock:
            fan_status = self.status.fans.get(fan_id)
            if fan_status is None:
                logger.debug(f"[{self.room.label}] Ignoring {name} for unknown fan {fan_id}")
                return

            if name == "speed" and reading.since is None:
                # Repeating the current speed (e.g. our own retained publish)
                # must not restart the minimum run time
                if fan_status.speed.value == reading.value:
                    reading = fan_status.speed

            setattr(fan_status, name, self._stamp(reading))
            self._evaluate_locked()

    def set_fan_control(self, fan_id: str, reading: Reading) -> None:
        self._set_fan_field(fan_id, "control", reading)

    def set_fan_speed(self, fan_id: str, reading: Reading) -> None:
        self._set_fan_field(fan_id, "speed", reading)

    def set_fan_min_humidity_threshold(self, fan_id: str, reading: Reading) -> None:
        self._set_fan_field(fan_id, "min_humidity_threshold", reading)

    def set_fan_max_humidity_threshold(self, fan_id: str, reading: Reading) -> None:
        self._set_fan_field(fan_id, "max_humidity_threshold", reading)

    def set_fan_min_run_time(self, fan_id: str, reading: Reading) -> None:
        self._set_fan_field(fan_id, "min_run_time", reading)

    def set_fan_light_timeout(self, fan_id: str, reading: Reading) -> None:
        self._set_fan_field(fan_id, "light_timeout", reading)

    def set_fan_trailing_time(self, fan_id: str, reading: Reading) -> None:
        self._set_fan_field(fan_id, "trailing_time", reading)

    def set_light(self, light_id: str, reading: Reading) -> None:
        with self._lock:
            if not any(light.id == light_id for light in self.room.lights):
                logger.debug(f"[{self.room.label}] Ignoring unknown light {light_id}")
                return
            self.status.lights[light_id] = self._stamp(reading)
            self._evaluate_locked()

    def set_humidity(self, reading: Reading) -> None:
        with self._lock:
            self.status.humidity = self._stamp(reading)
            self._evaluate_locked()

    def set_temperature(self, reading: Reading) -> None:
        # Informational only, the decision logic does not use temperature
        with self._lock:
            self.status.temperature = self._stamp(reading)
            self._evaluate_locked()

    # ---- evaluation ----

    def evaluate(self) -> None:
        """Re-evaluate all fans of the room, waiting for the room lock."""
        with self._lock:
            self._evaluate_locked()

    def tick(self) -> bool:
        """
        Periodic re-evaluation.

        Skipped when an evaluation for this room is already running.

        Returns: True if the evaluation ran
        """
        if not self._lock.acquire(blocking=False):
            logger.debug(f"[{self.room.label}] Evaluation in progress, skipping tick")
            return False
        try:
            self._evaluate_locked()
        finally:
            self._lock.release()
        return True

    def _evaluate_locked(self) -> None:
        now = self.clock()
        humidity = self.status.humidity.value if self.status.humidity else None

        for fan in self.room.fans:
            try:
                self._update_fan(fan, humidity, now)
            except Exception as e:
                logger.error(
                    f"[{self._location(fan)}] Fan evaluation failed: {e}", exc_info=True
                )

    def _update_fan(self, fan: FanConfig, humidity: Optional[float], now: datetime) -> None:
        location = self._location(fan)
        fan_status = self.status.fans[fan.id]

        decision = decide_fan_speed(
            fan,
            fan_status,
            humidity,
            self.status.lights,
            self.fans_trailing[fan.id],
            now,
        )

        if decision.manual:
            self._actuate(fan, decision.speed)
            return

        if decision.held:
            logger.debug(f"[{location}] {decision.reason}")
            return

        if decision.trailing != self.fans_trailing[fan.id]:
            logger.info(
                f"[{location}] Trailing {'started' if decision.trailing else 'ended'}"
            )
        self.fans_trailing[fan.id] = decision.trailing

        if decision.speed != fan_status.speed.value:
            logger.info(
                f"[{location}] Fan {fan_status.speed.value} -> {decision.speed}: "
                f"{decision.reason}"
            )
            fan_status.speed = Reading(decision.speed, now)
            self._publish_speed(fan, decision.speed)
        else:
            logger.debug(f"[{location}] Fan stays {decision.speed}: {decision.reason}")

        self._actuate(fan, decision.speed)

    def _publish_speed(self, fan: FanConfig, speed: str) -> None:
        try:
            self.publisher.publish(
                fan_speed_topic(self.room.id, fan.id), {"value": speed}, retain=True
            )
        except Exception as e:
            logger.error(f"[{self._location(fan)}] Failed to publish speed: {e}")

    def _actuate(self, fan: FanConfig, speed: Any) -> None:
        try:
            self.actuator.set_speed(fan.id, speed)
        except Exception as e:
            logger.error(f"[{self._location(fan)}] Failed to set speed {speed}: {e}")


class RoomWorker(threading.Thread):
    """
    Single inbound channel of a room.

    Events submitted from the transport thread are applied in order on this
    thread, and the room is re-evaluated every interval in between. A tick
    that falls behind is dropped rather than run twice.
    """

    def __init__(self, controller: RoomController, interval: float = 1.0):
        super().__init__(name=f"room-{controller.room.id}", daemon=True)
        self.controller = controller
        self.interval = interval
        self._inbox: "queue.Queue" = queue.Queue()
        self._stop_event = threading.Event()

    def submit(self, fn: Callable, *args) -> None:
        """Queue a controller call; returns immediately."""
        self._inbox.put((fn, args))

    def run(self) -> None:
        logger.info(f"Starting control loop for {self.controller.room.label}")
        next_tick = time.monotonic() + self.interval

        while not self._stop_event.is_set():
            try:
                fn, args = self._inbox.get(timeout=max(0.0, next_tick - time.monotonic()))
            except queue.Empty:
                pass
            else:
                self._call(fn, *args)

            now = time.monotonic()
            if now >= next_tick:
                self._call(self.controller.tick)
                next_tick = max(next_tick + self.interval, now)

    def _call(self, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.error(
                f"Control loop error in {self.controller.room.label}: {e}",
                exc_info=True,
            )

    def stop(self) -> None:
        self._stop_event.set()


class ActuatorWorker(threading.Thread):
    """
    Applies fan speeds on a background thread.

    Only the latest requested speed per fan is kept, so a slow actuator
    never builds a backlog and never holds up the controller.
    """

    def __init__(self, actuator, name: str = "actuator"):
        super().__init__(name=name, daemon=True)
        self.actuator = actuator
        self._pending: Dict[str, Any] = {}
        self._condition = threading.Condition()
        self._stopped = False

    def set_speed(self, fan_id: str, speed: Any) -> None:
        with self._condition:
            self._pending[fan_id] = speed
            self._condition.notify()

    def run(self) -> None:
        while True:
            with self._condition:
                while not self._pending and not self._stopped:
                    self._condition.wait()
                if self._stopped:
                    return
                fan_id = next(iter(self._pending))
                speed = self._pending.pop(fan_id)

            try:
                self.actuator.set_speed(fan_id, speed)
            except Exception as e:
                logger.error(f"Failed to set speed {speed} on fan {fan_id}: {e}")

    def stop(self) -> None:
        with self._condition:
            self._stopped = True
            self._condition.notify_all()
