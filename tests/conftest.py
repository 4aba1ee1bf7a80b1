# tests/conftest.py
import pytest

from burnin.app import create_app
from burnin.app.settings import AppSettings
from burnin.models.device import DeviceInstance, DeviceType
from burnin.models.process import AgingProcess
from burnin.models.workstation import Run
from burnin.repository.config_repository import ConfigRepository
from burnin.runtime.script_engine import ScriptEngine
from burnin.services.device_state_store import DeviceStateStore
from burnin.services.engine_runtime import EngineRuntime
from burnin.simulations.runtime import simulation_registry


TEMP_SENSOR = {
    "id": "TempSensor",
    "name": "Temperature sensor",
    "protocol": "modbus-tcp",
    "registerMap": [
        {"name": "temperature", "address": 40001, "dataType": "UINT16", "scale": 0.1},
        {"name": "setpoint", "address": 40002, "dataType": "INT16"},
    ],
}


@pytest.fixture()
def temp_sensor_type() -> DeviceType:
    return DeviceType.model_validate(TEMP_SENSOR)


@pytest.fixture()
def dev1(temp_sensor_type) -> DeviceInstance:
    return DeviceInstance(id="dev1", deviceTypeId=temp_sensor_type.id, ip="10.0.0.10")


@pytest.fixture()
def store(temp_sensor_type, dev1) -> DeviceStateStore:
    """State store with ``dev1`` registered (offline until first publish)."""
    state = DeviceStateStore(offline_after_failures=3)
    state.register_device(dev1, temp_sensor_type)
    return state


@pytest.fixture()
def engine():
    script_engine = ScriptEngine(timeout_ms=200, max_workers=2)
    yield script_engine
    script_engine.shutdown()


@pytest.fixture()
def settings() -> AppSettings:
    return AppSettings().with_environment("testing")


@pytest.fixture()
def make_process():
    """Build an :class:`AgingProcess` binding ``dev1`` to a TempSensor."""

    def _make(**overrides) -> AgingProcess:
        data = {
            "id": "burn-in",
            "name": "Burn-in",
            "devices": [{"alias": "dev1", "deviceTypeId": "TempSensor"}],
            "states": [{"name": "Running", "mode": "condition", "conditions": []}],
        }
        data.update(overrides)
        return AgingProcess.model_validate(data)

    return _make


@pytest.fixture()
def make_run(make_process):
    def _make(process=None, **overrides) -> Run:
        return Run(
            workstation_id="ws-1",
            process=process or make_process(**overrides),
            bindings={"dev1": "dev1"},
        )

    return _make


@pytest.fixture()
def repository(temp_sensor_type, dev1, make_process) -> ConfigRepository:
    repo = ConfigRepository()
    repo.add_device_type(temp_sensor_type)
    repo.add_device(dev1)
    repo.add_workstation({"id": "ws-1", "name": "Bench 1", "pairings": {"dev1": "dev1"}})
    repo.add_process(make_process())
    return repo


@pytest.fixture(autouse=True)
def _clean_simulation():
    simulation_registry.clear()
    yield
    simulation_registry.clear()


@pytest.fixture()
def runtime(settings, repository):
    """Started engine runtime with polling disabled; ``dev1`` is marked online."""

    polling = settings.polling.model_copy(update={"enabled": False})
    engine_settings = settings.engine.model_copy(update={"tick_interval_s": 0.01})
    settings = settings.model_copy(
        update={"polling": polling, "engine": engine_settings, "command_timeout_s": 2.0}
    )
    engine_runtime = EngineRuntime(settings, repository)
    engine_runtime.start()
    engine_runtime.store.publish("dev1", {"temperature": 25.0, "setpoint": 60})
    yield engine_runtime
    engine_runtime.shutdown()


@pytest.fixture()
def app(runtime):
    return create_app("testing", runtime=runtime)


@pytest.fixture()
def client(app):
    return app.test_client()
