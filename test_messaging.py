"""Unit tests for the MQTT messaging wrapper."""

import json
import unittest
from unittest.mock import Mock

import paho.mqtt.client as mqtt

from messaging import MqttMessaging
from test_controller import make_room


class TestMqttMessaging(unittest.TestCase):
    """Test suite for MqttMessaging."""

    def setUp(self):
        self.client = Mock()
        self.client.is_connected.return_value = False
        self.client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
        self.messaging = MqttMessaging("broker.local", username="fans", password="pw", client=self.client)

    def test_credentials_set(self):
        self.client.username_pw_set.assert_called_once_with("fans", "pw")

    def test_publish_json_retained(self):
        self.assertTrue(self.messaging.publish("room/bath/fans/exhaust/speed", {"value": "max"}))
        self.client.publish.assert_called_once_with(
            "room/bath/fans/exhaust/speed", json.dumps({"value": "max"}), qos=1, retain=True
        )

    def test_publish_failure_logged(self):
        self.client.publish.return_value.rc = mqtt.MQTT_ERR_NO_CONN
        with self.assertLogs("messaging", level="ERROR"):
            self.assertFalse(self.messaging.publish("room/bath/humidity", {"value": 50}))

    def test_subscribe_room(self):
        self.messaging.subscribe_room(make_room())
        topics = self.messaging._subscriptions

        self.assertIn("room/bathroom/fans/exhaust/control", topics)
        self.assertIn("room/bathroom/fans/exhaust/trailingTime", topics)
        self.assertIn("room/bathroom/lights/mirror/status", topics)
        self.assertIn("room/bathroom/humidity", topics)
        self.assertIn("room/bathroom/temperature", topics)
        # 7 fan settings, 2 lights, humidity and temperature
        self.assertEqual(len(topics), 11)
        # Not connected yet, subscribed on connect
        self.client.subscribe.assert_not_called()

    def test_resubscribe_on_connect(self):
        self.messaging.subscribe("room/bathroom/humidity")
        reason_code = Mock(is_failure=False)
        self.messaging._on_connect(self.client, None, {}, reason_code, None)
        self.client.subscribe.assert_called_once_with("room/bathroom/humidity")

    def test_subscribe_when_connected(self):
        self.client.is_connected.return_value = True
        self.messaging.subscribe("room/bathroom/humidity")
        self.messaging.subscribe("room/bathroom/humidity")
        self.assertEqual(self.client.subscribe.call_count, 2)
        self.assertEqual(self.messaging._subscriptions, ["room/bathroom/humidity"])

    def test_refused_connection_does_not_subscribe(self):
        self.messaging.subscribe("room/bathroom/humidity")
        with self.assertLogs("messaging", level="ERROR"):
            self.messaging._on_connect(self.client, None, {}, Mock(is_failure=True), None)
        self.client.subscribe.assert_not_called()

    def test_messages_forwarded_to_handler(self):
        handler = Mock()
        self.messaging.set_handler(handler)
        message = Mock(topic="room/bathroom/humidity", payload=b'{"value": 50}')

        self.messaging._on_message(self.client, None, message)
        handler.assert_called_once_with("room/bathroom/humidity", b'{"value": 50}')

    def test_handler_errors_logged(self):
        self.messaging.set_handler(Mock(side_effect=RuntimeError("boom")))
        message = Mock(topic="room/bathroom/humidity", payload=b"{}")
        with self.assertLogs("messaging", level="ERROR"):
            self.messaging._on_message(self.client, None, message)

    def test_connect_and_close(self):
        self.messaging.connect()
        self.client.connect_async.assert_called_once_with("broker.local", 1883, keepalive=60)
        self.client.loop_start.assert_called_once()

        self.messaging.close()
        self.client.loop_stop.assert_called_once()
        self.client.disconnect.assert_called_once()


if __name__ == "__main__":
    unittest.main()
