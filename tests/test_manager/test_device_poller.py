import asyncio

import pytest

from burnin.adapters.base_adapters import BaseTransport
from burnin.app.settings import PollingSettings
from burnin.errors import TransportError
from burnin.manager.device_polling_manager import (
    DevicePoller,
    PollingManager,
    build_scan_plans,
)
from burnin.models.device import DeviceInstance, DeviceType, RegisterType


class DummyTransport:
    def __init__(self, words=None, fail=0):
        self.words = list(words or [655, 60])
        self.fail = fail
        self.reads = []
        self.writes = []
        self.disconnects = 0

    async def connect(self):
        return None

    async def disconnect(self):
        self.disconnects += 1

    async def read_block(self, register_type, offset, count, slave=None):
        self.reads.append((register_type, offset, count, slave))
        if self.fail:
            self.fail -= 1
            raise TransportError("dev1: read timeout after 3.00s")
        return self.words[:count]

    async def write(self, register_type, offset, values, slave=None):
        self.writes.append((register_type, offset, list(values), slave))

    async def read_feed(self):
        return {"temperature": 21.5, "battery": 80}

    def retry_in(self):
        return 0.0


class FlakyTransport(BaseTransport):
    """In-memory device whose reads can stall and whose writes can be rejected."""

    def __init__(self, device_type, instance, **kwargs):
        super().__init__(device_type, instance, **kwargs)
        self.words = [655, 60]
        self.reads = 0
        self.slow_reads = set()
        self.failing_writes = 0
        self.writes = []

    async def _open(self):
        return None

    async def _close(self):
        return None

    async def _read(self, register_type, offset, count, slave):
        self.reads += 1
        if self.reads in self.slow_reads:
            await asyncio.sleep(1.0)
        return self.words[offset:offset + count]

    async def _write(self, register_type, offset, values, slave):
        if self.failing_writes:
            self.failing_writes -= 1
            raise OSError("connection reset by peer")
        self.writes.append((register_type, offset, list(values)))


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def make_poller(temp_sensor_type, dev1, store, transport, **kwargs):
    return DevicePoller(temp_sensor_type, dev1, store, transport=transport, **kwargs)


def test_successful_poll_publishes_decoded_values(temp_sensor_type, dev1, store):
    transport = DummyTransport()
    poller = make_poller(temp_sensor_type, dev1, store, transport)

    assert asyncio.run(poller.poll_once()) is True

    assert transport.reads == [(RegisterType.HOLDING, 0, 2, 1)]
    assert store.is_online("dev1")
    assert store.get("dev1", "temperature")[0] == pytest.approx(65.5)
    assert store.get("dev1", "setpoint")[0] == 60


def test_three_failed_polls_take_device_offline_without_raising(temp_sensor_type, dev1, store):
    transport = DummyTransport()
    poller = make_poller(temp_sensor_type, dev1, store, transport)
    asyncio.run(poller.poll_once())
    transport.fail = 3

    async def failing_ticks():
        results = []
        for _ in range(3):
            for plan in poller.plans:
                plan.next_due = 0.0
            results.append(await poller.poll_once())
            results.append(store.is_online("dev1"))
        return results

    assert asyncio.run(failing_ticks()) == [False, True, False, True, False, False]
    # last good values are kept for inspection
    assert store.get("dev1", "setpoint")[0] == 60
    assert "timeout" in store.status("dev1")["last_error"]


def test_plans_are_only_read_when_due(temp_sensor_type, dev1, store):
    clock = FakeClock()
    transport = DummyTransport()
    poller = make_poller(temp_sensor_type, dev1, store, transport, clock=clock)

    async def run():
        await poller.poll_once()
        clock.now += 0.5
        await poller.poll_once()
        clock.now += 0.5
        await poller.poll_once()

    asyncio.run(run())
    assert len(transport.reads) == 2


def test_writes_are_validated_and_flushed_on_next_tick(temp_sensor_type, dev1, store):
    transport = DummyTransport()
    poller = make_poller(temp_sensor_type, dev1, store, transport)

    with pytest.raises(ValueError):
        poller.enqueue_write("missing", 1)
    with pytest.raises(ValueError):
        poller.enqueue_write("setpoint", 40000)

    poller.enqueue_write("setpoint", -5)
    assert poller.pending_writes() == 1

    asyncio.run(poller.poll_once())

    assert transport.writes == [(RegisterType.HOLDING, 1, [0xFFFB], 1)]
    assert poller.pending_writes() == 0


def test_input_registers_are_read_only(dev1, store):
    device_type = DeviceType.model_validate(
        {"id": "TempSensor", "name": "Meter", "registerMap": [{"name": "energy", "address": 30001}]}
    )
    poller = DevicePoller(device_type, dev1, store, transport=DummyTransport())
    with pytest.raises(ValueError, match="read-only"):
        poller.enqueue_write("energy", 1)


def test_custom_feed_is_polled_as_a_snapshot(store):
    feed_type = DeviceType.model_validate({"id": "Feed", "name": "Feed", "protocol": "custom"})
    feed = DeviceInstance(id="feed-1", deviceTypeId="Feed")
    store.register_device(feed, feed_type)
    poller = DevicePoller(feed_type, feed, store, transport=DummyTransport())

    assert poller.plans == []
    assert asyncio.run(poller.poll_once()) is True
    assert store.snapshot("feed-1") == {"temperature": 21.5, "battery": 80}
    with pytest.raises(ValueError):
        poller.enqueue_write("temperature", 1)


def test_build_scan_plans_splits_far_apart_registers(dev1):
    device_type = DeviceType.model_validate(
        {
            "id": "TempSensor",
            "name": "Wide",
            "registerMap": [
                {"name": "a", "address": 40001},
                {"name": "b", "address": 40003, "dataType": "FLOAT32"},
                {"name": "c", "address": 40500},
                {"name": "alarm", "address": 10001, "dataType": "BOOL"},
                {"name": "remote", "address": 40002, "slaveAddress": 7},
            ],
        }
    )

    plans = build_scan_plans(device_type, dev1, 500)
    layout = sorted((p.register_type.value, p.slave, p.offset, p.count) for p in plans)

    assert layout == [
        ("discrete", 1, 0, 1),
        ("holding", 1, 0, 4),
        ("holding", 1, 499, 1),
        ("holding", 7, 1, 1),
    ]
    assert all(plan.interval_s == 0.5 for plan in plans)


def test_build_scan_plans_uses_scan_configs(dev1):
    device_type = DeviceType.model_validate(
        {
            "id": "TempSensor",
            "name": "Scanned",
            "registerMap": [
                {"name": "a", "address": 40001},
                {"name": "b", "address": 40010},
                {"name": "outside", "address": 40300},
            ],
            "scanConfigs": [{"registerType": "holding", "startAddress": 40001, "endAddress": 40010, "scanInterval": 250}],
        }
    )

    [plan] = build_scan_plans(device_type, dev1, 1000)

    assert (plan.offset, plan.count, plan.interval_s) == (0, 10, 0.25)
    assert [m.name for m in plan.mappings] == ["a", "b"]
    assert [m.address for m in plan.mappings] == [0, 9]


def test_chunks_respect_pdu_limits(temp_sensor_type, dev1, store):
    poller = make_poller(temp_sensor_type, dev1, store, DummyTransport())
    plan = poller.plans[0]
    plan.count = 300
    assert plan.chunks() == [(0, 125), (125, 125), (250, 50)]


def test_manager_wires_store_writes_to_the_poller(temp_sensor_type, dev1):
    from burnin.services.device_state_store import DeviceStateStore

    store = DeviceStateStore()
    transport = DummyTransport()
    settings = PollingSettings(enabled=False)
    manager = PollingManager(
        store,
        settings=settings,
        poller_factory=lambda dt, inst, st, settings=None: DevicePoller(dt, inst, st, settings=settings, transport=transport),
    )

    async def run():
        poller = await manager.add_device(temp_sensor_type, dev1)
        assert await manager.add_device(temp_sensor_type, dev1) is poller
        assert not poller.running
        store.set("dev1", "setpoint", 12)
        assert poller.pending_writes() == 1
        assert await manager.remove_device("dev1") is True
        assert await manager.remove_device("dev1") is False

    asyncio.run(run())
    assert store.device_ids() == []
    assert transport.disconnects == 1


def test_running_poller_stops_cleanly(temp_sensor_type, dev1, store):
    transport = DummyTransport()
    poller = make_poller(temp_sensor_type, dev1, store, transport, settings=PollingSettings(default_interval_ms=10))

    async def run():
        await poller.start()
        assert poller.running
        await asyncio.sleep(0.05)
        await poller.stop()

    asyncio.run(run())
    assert not poller.running
    assert len(transport.reads) >= 2
    assert store.is_online("dev1")


def test_single_timeout_does_not_take_device_offline(monkeypatch, temp_sensor_type, dev1, store):
    transport = FlakyTransport(temp_sensor_type, dev1, timeout_s=0.05, backoff_initial_s=0.1, backoff_max_s=1.0)
    transport.slow_reads = {2}
    poller = make_poller(temp_sensor_type, dev1, store, transport, settings=PollingSettings(default_interval_ms=100))

    failures = []
    record_failure = store.record_failure

    def counting(device_id, reason=None):
        failures.append(reason)
        return record_failure(device_id, reason)

    monkeypatch.setattr(store, "record_failure", counting)
    transitions = []
    store.subscribe(lambda device_id, online, payload: transitions.append(online))

    async def run():
        await poller.start()
        await asyncio.sleep(0.6)
        await poller.stop()

    asyncio.run(run())

    assert len(failures) == 1
    assert "timeout" in failures[0]
    assert transitions == [True]
    assert store.is_online("dev1")
    # one read per interval, no retry storm while the transport backs off
    assert 3 <= transport.reads <= 8


def test_backoff_window_is_skipped_and_keeps_queued_writes(temp_sensor_type, dev1, store):
    clock = FakeClock()
    transport = FlakyTransport(temp_sensor_type, dev1, backoff_initial_s=1.0, clock=clock)
    transport.failing_writes = 1
    poller = make_poller(temp_sensor_type, dev1, store, transport, clock=clock)
    poller.enqueue_write("setpoint", 55)

    async def run():
        results = [await poller.poll_once()]
        clock.now += 0.5
        results.append(await poller.poll_once())
        results.append(poller.pending_writes())
        clock.now += 0.5
        results.append(await poller.poll_once())
        return results

    assert asyncio.run(run()) == [False, None, 1, True]
    assert transport.writes == [(RegisterType.HOLDING, 1, [55])]
    assert poller.pending_writes() == 0
    assert store.status("dev1")["failures"] == 0
    assert store.get("dev1", "setpoint")[0] == 60


def test_rejected_write_is_dropped_after_repeated_attempts(temp_sensor_type, dev1, store):
    clock = FakeClock()
    transport = FlakyTransport(temp_sensor_type, dev1, backoff_initial_s=1.0, backoff_max_s=1.0, clock=clock)
    transport.failing_writes = 10
    poller = make_poller(temp_sensor_type, dev1, store, transport, clock=clock)
    poller.enqueue_write("setpoint", 55)

    async def run():
        results = []
        for _ in range(4):
            results.append(await poller.poll_once())
            clock.now += 1.0
        return results

    assert asyncio.run(run()) == [False, False, False, True]
    assert poller.pending_writes() == 0
    assert transport.writes == []
