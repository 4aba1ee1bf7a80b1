import threading

import pytest

from burnin.models.device import DeviceInstance, DeviceType
from burnin.services.device_state_store import DeviceStateStore, evaluate_probe


@pytest.fixture()
def probed_type() -> DeviceType:
    return DeviceType.model_validate(
        {
            "id": "Chamber",
            "name": "Chamber",
            "registerMap": [
                {"name": "temperature", "address": 0},
                {"name": "status", "address": 1},
            ],
            "probe": {"expression": "status = 1 and temperature > -40"},
        }
    )


def test_device_is_offline_until_first_poll(store):
    assert store.is_online("dev1") is False
    assert store.get("dev1", "temperature") == (None, None)


def test_publish_without_probe_marks_online_and_stamps_values(store):
    assert store.publish("dev1", {"temperature": 65.5}, timestamp=10.0) is True
    assert store.is_online("dev1") is True
    assert store.get("dev1", "temperature") == (65.5, 10.0)
    assert store.last_timestamp("dev1") == 10.0
    assert store.last_update("dev1") is not None


def test_three_consecutive_failures_mark_offline(store):
    store.publish("dev1", {"temperature": 20.0})
    store.record_failure("dev1", "timeout")
    store.record_failure("dev1", "timeout")
    assert store.is_online("dev1") is True
    store.record_failure("dev1", "timeout")
    assert store.is_online("dev1") is False
    # last known values are kept
    assert store.get("dev1", "temperature")[0] == 20.0
    assert store.status("dev1")["failures"] == 3


def test_success_resets_failure_counter(store):
    store.publish("dev1", {"temperature": 20.0})
    store.record_failure("dev1", "timeout")
    store.record_failure("dev1", "timeout")
    store.publish("dev1", {"temperature": 21.0})
    store.record_failure("dev1", "timeout")
    assert store.is_online("dev1") is True


def test_probe_decides_connectivity(probed_type):
    state = DeviceStateStore()
    state.register_device(DeviceInstance(id="ch1", deviceTypeId="Chamber"), probed_type)

    assert state.publish("ch1", {"temperature": 25.0, "status": 0}) is False
    assert state.publish("ch1", {"status": 1}) is True


def test_probe_is_a_pure_function_of_the_snapshot(probed_type):
    snapshot = {"temperature": 25.0, "status": 1}
    results = {evaluate_probe(probed_type, dict(snapshot)) for _ in range(5)}
    assert results == {True}
    assert evaluate_probe(probed_type, {"temperature": 25.0}) is False


def test_broken_probe_counts_as_offline():
    broken = DeviceType.model_validate(
        {"id": "X", "name": "X", "registerMap": [{"name": "a", "address": 0}], "probe": {"expression": "a +"}}
    )
    assert evaluate_probe(broken, {"a": 1}) is False


def test_connectivity_observers_fire_on_change_only(store):
    events = []
    store.subscribe(lambda device_id, online, payload: events.append((device_id, online)))

    store.publish("dev1", {"temperature": 1.0})
    store.publish("dev1", {"temperature": 2.0})
    for _ in range(3):
        store.record_failure("dev1", "down")

    assert events == [("dev1", True), ("dev1", False)]


def test_set_fans_out_to_the_writer_before_caching(store):
    writes = []
    store.attach_writer("dev1", lambda point, value: writes.append((point, value)))

    store.set("dev1", "setpoint", 60)

    assert writes == [("setpoint", 60)]
    assert store.get("dev1", "setpoint")[0] == 60


def test_rejected_write_is_not_cached(store):
    def reject(point, value):
        raise ValueError("read-only")

    store.attach_writer("dev1", reject)
    with pytest.raises(ValueError):
        store.set("dev1", "temperature", 1)
    assert store.get("dev1", "temperature") == (None, None)


def test_unknown_device_status_raises_key_error(store):
    with pytest.raises(KeyError):
        store.status("nope")


def test_concurrent_readers_and_writer_do_not_lose_points(store):
    errors = []

    def writer():
        for i in range(500):
            store.publish("dev1", {"temperature": float(i), f"p{i % 10}": i})

    def reader():
        try:
            for _ in range(500):
                store.snapshot("dev1")
                store.get("dev1", "temperature")
        except Exception as exc:  # pragma: no cover - failure path
            errors.append(exc)

    threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert store.get("dev1", "temperature")[0] == 499.0
    assert len(store.snapshot("dev1")) == 11


def test_status_lists_points_outside_their_normal_range():
    device_type = DeviceType.model_validate(
        {
            "id": "Chamber",
            "name": "Chamber",
            "registerMap": [
                {"name": "temperature", "address": 0, "normalRange": [20, 80]},
                {"name": "humidity", "address": 1, "normalRange": [10, 90]},
                {"name": "mode", "address": 2},
            ],
        }
    )
    store = DeviceStateStore()
    store.register_device(DeviceInstance(id="c1", deviceTypeId="Chamber"), device_type)
    store.publish("c1", {"temperature": 95, "humidity": 50, "mode": 3})

    assert store.status("c1")["out_of_range"] == ["temperature"]
    assert store.device_type("c1") is device_type
    assert store.device_type("ghost") is None
