"""Unit tests for topic parsing and message dispatching."""

import json
import unittest
from datetime import datetime, UTC
from unittest.mock import Mock, patch

from dispatcher import Dispatcher, parse_payload, parse_since
from state import Reading
from topics import (
    Topic,
    fan_topic,
    light_status_topic,
    parse_topic,
    room_humidity_topic,
    room_temperature_topic,
)


def encode(payload):
    return json.dumps(payload).encode()


class TestTopics(unittest.TestCase):
    """Topic builders and parser."""

    def test_builders(self):
        self.assertEqual(fan_topic("bath", "exhaust", "minRunTime"), "room/bath/fans/exhaust/minRunTime")
        self.assertEqual(light_status_topic("bath", "ceiling"), "room/bath/lights/ceiling/status")
        self.assertEqual(room_humidity_topic("bath"), "room/bath/humidity")
        self.assertEqual(room_temperature_topic("bath"), "room/bath/temperature")

    def test_parse_fan_topic(self):
        self.assertEqual(
            parse_topic("room/bath/fans/exhaust/trailingTime"),
            Topic("bath", "fans", "exhaust", "trailingTime"),
        )

    def test_parse_light_topic(self):
        self.assertEqual(
            parse_topic("room/bath/lights/ceiling/status"),
            Topic("bath", "lights", "ceiling", "status"),
        )

    def test_parse_room_readings(self):
        self.assertEqual(parse_topic("room/bath/humidity"), Topic("bath", "humidity"))
        self.assertEqual(parse_topic("room/bath/temperature"), Topic("bath", "temperature"))

    def test_parse_rejects_unknown_shapes(self):
        for topic in (
            "house/bath/humidity",
            "room",
            "room//humidity",
            "room/bath/humidity/extra",
            "room/bath/fans/exhaust",
            "room/bath/fans/exhaust/turbo",
            "room/bath/fans//speed",
            "room/bath/windows/w1/status",
            "room/bath/lights/ceiling/brightness",
            "room/bath/lights/ceiling/",
        ):
            self.assertIsNone(parse_topic(topic), topic)


class TestParsePayload(unittest.TestCase):
    """Payload decoding at the transport boundary."""

    def test_value_only(self):
        self.assertEqual(parse_payload(encode({"value": "auto"})), Reading("auto", None))

    def test_iso_since(self):
        reading = parse_payload(encode({"value": "on", "since": "2024-01-01T12:00:00Z"}))
        self.assertEqual(reading.since, datetime(2024, 1, 1, 12, 0, tzinfo=UTC))

    def test_naive_since_is_utc(self):
        self.assertEqual(
            parse_since("2024-01-01T12:00:00"), datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        )

    def test_epoch_millis_since(self):
        self.assertEqual(parse_since(1704110400000), datetime(2024, 1, 1, 12, 0, tzinfo=UTC))

    def test_numeric_coercion(self):
        self.assertEqual(parse_payload(encode({"value": "61.5"}), numeric=True).value, 61.5)

    def test_rejects_malformed(self):
        for payload, numeric in (
            (b"not json", False),
            (encode({"since": "2024-01-01T12:00:00Z"}), False),
            (encode({"value": None}), False),
            (encode(["on"]), False),
            (encode({"value": "wet"}), True),
            (encode({"value": True}), True),
            (encode({"value": "on", "since": "yesterday"}), False),
        ):
            with self.assertRaises(ValueError, msg=payload):
                parse_payload(payload, numeric=numeric)


class TestDispatcher(unittest.TestCase):
    """Routing messages to room controllers."""

    def setUp(self):
        self.controller = Mock()
        self.dispatcher = Dispatcher({"bath": self.controller})

    def test_routes_fan_settings(self):
        cases = {
            "control": ("set_fan_control", "auto"),
            "speed": ("set_fan_speed", "max"),
            "minHumidityThreshold": ("set_fan_min_humidity_threshold", 60.0),
            "maxHumidityThreshold": ("set_fan_max_humidity_threshold", 80.0),
            "minRunTime": ("set_fan_min_run_time", 120.0),
            "lightTimeout": ("set_fan_light_timeout", 600.0),
            "trailingTime": ("set_fan_trailing_time", 300.0),
        }
        for subcategory, (method, value) in cases.items():
            self.dispatcher.handle_message(
                fan_topic("bath", "exhaust", subcategory), encode({"value": value})
            )
            getattr(self.controller, method).assert_called_once_with(
                "exhaust", Reading(value, None)
            )

    def test_routes_light(self):
        self.dispatcher.handle_message(
            light_status_topic("bath", "ceiling"), encode({"value": "on"})
        )
        self.controller.set_light.assert_called_once_with("ceiling", Reading("on", None))

    def test_routes_room_readings(self):
        self.dispatcher.handle_message(room_humidity_topic("bath"), encode({"value": 72}))
        self.dispatcher.handle_message(room_temperature_topic("bath"), encode({"value": 21}))
        self.controller.set_humidity.assert_called_once_with(Reading(72.0, None))
        self.controller.set_temperature.assert_called_once_with(Reading(21.0, None))

    def test_drops_malformed_payload(self):
        self.dispatcher.handle_message(room_humidity_topic("bath"), encode({"since": 1}))
        self.dispatcher.handle_message(room_humidity_topic("bath"), b"{")
        self.controller.set_humidity.assert_not_called()

    def test_drops_out_of_range_since(self):
        for since in (1e20, -1e20):
            self.dispatcher.handle_message(
                room_humidity_topic("bath"), encode({"value": 72, "since": since})
            )
        self.controller.set_humidity.assert_not_called()

    @patch("dispatcher.parse_since")
    def test_drops_since_rejected_by_platform(self, since):
        # Some platforms raise OSError for timestamps outside the C time range
        since.side_effect = OSError(22, "Invalid argument")
        self.dispatcher.handle_message(
            light_status_topic("bath", "ceiling"), encode({"value": "on", "since": 1e15})
        )
        self.controller.set_light.assert_not_called()

    def test_non_status_light_topic_dropped(self):
        self.dispatcher.handle_message(
            "room/bath/lights/ceiling/brightness", encode({"value": "on"})
        )
        self.controller.set_light.assert_not_called()

    def test_queues_on_room_worker(self):
        worker = Mock()
        dispatcher = Dispatcher({"bath": self.controller}, {"bath": worker})

        dispatcher.handle_message(room_humidity_topic("bath"), encode({"value": 72}))
        dispatcher.handle_message(
            fan_topic("bath", "exhaust", "control"), encode({"value": "auto"})
        )

        # Nothing runs on the calling thread
        self.controller.set_humidity.assert_not_called()
        self.assertEqual(
            worker.submit.call_args_list,
            [
                ((self.controller.set_humidity, Reading(72.0, None)),),
                ((self.controller.set_fan_control, "exhaust", Reading("auto", None)),),
            ],
        )

    def test_drops_unknown_room_and_topic(self):
        self.dispatcher.handle_message(room_humidity_topic("kitchen"), encode({"value": 72}))
        self.dispatcher.handle_message("room/bath/fans/exhaust/turbo", encode({"value": 1}))
        self.dispatcher.handle_message("status/online", b"1")
        self.assertEqual(self.controller.method_calls, [])

    def test_end_to_end_with_controller(self):
        from controller import RoomController
        from test_controller import make_room, FakeClock

        actuator = Mock()
        publisher = Mock()
        controller = RoomController(make_room(), actuator, publisher, clock=FakeClock())
        dispatcher = Dispatcher({"bathroom": controller})

        dispatcher.handle_message(fan_topic("bathroom", "exhaust", "control"), encode({"value": "auto"}))
        dispatcher.handle_message(room_humidity_topic("bathroom"), encode({"value": "85"}))

        self.assertEqual(controller.status.fans["exhaust"].speed.value, "max")
        actuator.set_speed.assert_called_with("exhaust", "max")


if __name__ == "__main__":
    unittest.main()
