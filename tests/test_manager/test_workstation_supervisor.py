import asyncio

import pytest

from burnin.errors import ConfigError, ConflictError, NotFoundError, NotRunningError
from burnin.manager.workstation_supervisor import WorkstationSupervisor


@pytest.fixture()
def fast_settings(settings):
    engine = settings.engine.model_copy(update={"tick_interval_s": 0.01})
    return settings.model_copy(update={"engine": engine})


@pytest.fixture()
def supervisor(repository, store, engine, fast_settings):
    store.publish("dev1", {"temperature": 25.0, "setpoint": 60})
    return WorkstationSupervisor(repository, store, engine, settings=fast_settings)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_unbound_alias_refuses_start_and_leaves_workstation_idle(supervisor, repository):
    repository.add_process(
        {"id": "oven-check", "name": "Oven check", "devices": [{"alias": "oven", "deviceTypeId": "TempSensor"}]}
    )

    with pytest.raises(ConfigError, match="oven"):
        asyncio.run(supervisor.start("ws-1", "oven-check"))

    status = supervisor.status("ws-1")
    assert status["status"] == "idle"
    assert status["run"] is None
    assert status["devices"] == {"dev1": True}


def test_offline_device_refuses_start(supervisor, store):
    for _ in range(3):
        store.record_failure("dev1", "timeout")

    with pytest.raises(ConfigError, match="offline devices: dev1"):
        asyncio.run(supervisor.start("ws-1", "burn-in"))


def test_unknown_process_and_workstation(supervisor):
    with pytest.raises(ConfigError):
        asyncio.run(supervisor.start("ws-1", "missing"))
    with pytest.raises(NotFoundError):
        asyncio.run(supervisor.start("ws-404", "burn-in"))
    with pytest.raises(NotFoundError):
        supervisor.run_log("ws-1")


def test_invalid_condition_is_reported_before_the_run_exists(supervisor, repository):
    repository.add_process(
        {
            "id": "broken",
            "name": "Broken",
            "devices": [{"alias": "dev1", "deviceTypeId": "TempSensor"}],
            "states": [{"name": "S", "mode": "condition", "conditions": [{"condition": "dev1.temperature >", "action": "fail"}]}],
        }
    )
    with pytest.raises(ConfigError, match="invalid script"):
        asyncio.run(supervisor.start("ws-1", "broken"))
    assert supervisor.status("ws-1")["status"] == "idle"


def test_start_pause_resume_stop_lifecycle(supervisor):
    events = []
    supervisor.subscribe(lambda event, payload: events.append(event))

    async def scenario():
        run = await supervisor.start("ws-1", "burn-in")
        with pytest.raises(ConflictError):
            await supervisor.start("ws-1", "burn-in")
        await wait_until(lambda: run.current_state == "Running")

        await supervisor.pause("ws-1")
        assert supervisor.status("ws-1")["status"] == "paused"
        await supervisor.resume("ws-1")
        assert supervisor.status("ws-1")["status"] == "running"

        stopped = await supervisor.stop("ws-1")
        with pytest.raises(NotRunningError):
            await supervisor.stop("ws-1")
        with pytest.raises(NotRunningError):
            await supervisor.pause("ws-1")
        return run, stopped

    run, stopped = asyncio.run(scenario())

    assert stopped is run
    assert supervisor.status("ws-1")["status"] == "stopped"
    assert [entry["run_id"] for entry in supervisor.history("ws-1")] == [run.id]
    assert events[0] == "run_started"
    assert "state_changed" in events
    assert events[-3:] == ["run_resumed", "state_changed", "run_stopped"]
    assert any(entry["message"].startswith("Run started") for entry in supervisor.run_log("ws-1"))


def test_run_that_reaches_success_is_archived(supervisor, repository):
    repository.add_process(
        {
            "id": "quick",
            "name": "Quick",
            "devices": [{"alias": "dev1", "deviceTypeId": "TempSensor"}],
            "states": [{"name": "Check", "pythonScript": "if dev1.temperature < 30:\n    jumpstate('success')"}],
            "recording": {"recordAll": True},
        }
    )
    events = []
    supervisor.subscribe(lambda event, payload: events.append(event))

    async def scenario():
        run = await supervisor.start("ws-1", "quick")
        await wait_until(lambda: supervisor.history("ws-1"))
        return run

    run = asyncio.run(scenario())

    assert run.current_state == "success"
    status = supervisor.status("ws-1")
    assert status["status"] == "passed"
    assert status["active"] is False
    assert "run_finished" in events
    assert "dev1.temperature" in supervisor.recorder("ws-1").series()
    assert run.reported is True


def test_delete_requires_an_idle_workstation(supervisor, repository):
    async def scenario():
        await supervisor.start("ws-1", "burn-in")
        with pytest.raises(ConflictError):
            await supervisor.delete("ws-1")
        await supervisor.stop("ws-1")
        await supervisor.delete("ws-1")

    asyncio.run(scenario())

    with pytest.raises(NotFoundError):
        repository.get_workstation("ws-1")
    assert supervisor.list_workstations() == []


def test_shutdown_stops_active_runs(supervisor):
    async def scenario():
        run = await supervisor.start("ws-1", "burn-in")
        await supervisor.shutdown()
        return run

    run = asyncio.run(scenario())
    assert run.status.value == "stopped"
    assert "engine shutdown" in run.log_entries()[-1]["message"]


class BlockingReporter:
    """MES reporter stand-in whose delivery waits until released."""

    def __init__(self):
        self.delivered = []
        self.started = None
        self.release = None

    def arm(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def report(self, run, *, record_provider=None):
        self.started.set()
        await self.release.wait()
        self.delivered.append(run.id)
        return True


def test_mes_delivery_does_not_hold_the_workstation(repository, store, engine, fast_settings):
    store.publish("dev1", {"temperature": 25.0, "setpoint": 60})
    repository.add_process(
        {
            "id": "quick",
            "name": "Quick",
            "devices": [{"alias": "dev1", "deviceTypeId": "TempSensor"}],
            "states": [{"name": "Check", "pythonScript": "jumpstate('success')"}],
        }
    )
    reporter = BlockingReporter()
    supervisor = WorkstationSupervisor(repository, store, engine, settings=fast_settings, mes_reporter=reporter)

    async def scenario():
        reporter.arm()
        run = await supervisor.start("ws-1", "quick")
        await asyncio.wait_for(reporter.started.wait(), timeout=2.0)
        assert run.reported is True
        # the workstation lock is free while the report is in flight
        with pytest.raises(NotRunningError):
            await asyncio.wait_for(supervisor.pause("ws-1"), timeout=0.5)
        assert supervisor.status("ws-1")["status"] == "passed"
        reporter.release.set()
        await wait_until(lambda: reporter.delivered)
        return run

    run = asyncio.run(scenario())
    assert reporter.delivered == [run.id]
