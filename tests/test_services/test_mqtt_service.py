import json
import time
from types import SimpleNamespace

import paho.mqtt.client as mqtt

from burnin.app.settings import MqttSettings
from burnin.services.mqtt_service import MqttStatusPublisher


class FakeClient:
    def __init__(self):
        self.published = []
        self.on_connect = None
        self.on_disconnect = None
        self.credentials = None

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def connect(self, host, port, keepalive=60):
        self.on_connect(self, None, {}, SimpleNamespace(is_failure=False), None)

    def loop_start(self):
        pass

    def loop_stop(self):
        pass

    def disconnect(self):
        pass

    def publish(self, topic, payload=None, qos=0, retain=False):
        self.published.append((topic, json.loads(payload), qos, retain))
        return SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS)


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_disabled_publisher_drops_events():
    publisher = MqttStatusPublisher(MqttSettings(enabled=False))
    publisher.on_supervisor_event("run_started", {"workstation_id": "ws-1"})
    assert publisher.pending() == 0


def test_build_topic_joins_base_and_suffix():
    publisher = MqttStatusPublisher(MqttSettings(base_topic="/plant/burnin/"))
    assert publisher.build_topic("workstations/ws-1") == "plant/burnin/workstations/ws-1"
    assert MqttStatusPublisher(MqttSettings(base_topic="")).build_topic("devices/d") == "devices/d"


def test_events_are_published_to_workstation_and_device_topics():
    client = FakeClient()
    settings = MqttSettings(enabled=True, username="user", password="pw", qos=1)
    publisher = MqttStatusPublisher(settings, client_factory=lambda: client)
    publisher.start()
    try:
        publisher.on_supervisor_event("state_changed", {"workstation_id": "ws-1", "state": "Running"})
        publisher.on_connectivity_change("dev1", False, {"device_id": "dev1", "online": False})
        assert wait_for(lambda: len(client.published) == 2)
    finally:
        publisher.shutdown()

    topics = {topic: payload for topic, payload, _, _ in client.published}
    assert topics["burnin/workstations/ws-1"]["type"] == "state_changed"
    assert topics["burnin/workstations/ws-1"]["state"] == "Running"
    assert topics["burnin/devices/dev1"]["state"] == "OFFLINE"
    assert client.credentials == ("user", "pw")


def test_events_without_workstation_are_ignored():
    publisher = MqttStatusPublisher(MqttSettings(enabled=True), client_factory=FakeClient)
    publisher.on_supervisor_event("workstation_deleted", {})
    assert publisher.pending() == 0
