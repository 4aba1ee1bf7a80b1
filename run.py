import logging
import os
from typing import Any, Dict

from burnin.app import create_app
from burnin.app.settings import load_settings
from burnin.services.engine_runtime import EngineRuntime
from burnin.simulations.runtime import simulation_registry
from burnin.utils.logs import logger, setup_logger

# ===========================================================
# CONFIGURAÇÕES
# ===========================================================
WORKSTATIONS = 2
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "5000"))


# ===========================================================
# CONFIGURAÇÃO DE DEMONSTRAÇÃO
# ===========================================================
CHAMBER_TYPE: Dict[str, Any] = {
    "id": "chamber",
    "name": "Climatic chamber (sim)",
    "protocol": "modbus-tcp",
    "registerMap": [
        {"name": "temperature", "address": 40001, "dataType": "INT16", "scale": 0.1, "unit": "°C", "isImportant": True},
        {"name": "setpoint", "address": 40002, "dataType": "INT16", "scale": 0.1, "unit": "°C"},
        {"name": "running", "address": 40003, "dataType": "BOOL"},
        {"name": "alarm", "address": 10001, "dataType": "BOOL"},
    ],
    "probe": {"expression": "temperature > -40", "description": "sensor answers with a sane value"},
}

DUT_TYPE: Dict[str, Any] = {
    "id": "dut",
    "name": "Device under test (sim)",
    "protocol": "custom",
}

BURN_IN_PROCESS: Dict[str, Any] = {
    "id": "burn-in-60",
    "name": "Burn-in 60 °C",
    "devices": [
        {"alias": "chamber", "deviceTypeId": "chamber"},
        {"alias": "dut", "deviceTypeId": "dut"},
    ],
    "globalChecks": [
        {"id": "chamber-alarm", "mode": "condition", "condition": "chamber.alarm = True", "jumpTarget": "pause"},
    ],
    "states": [
        {
            "name": "heat-up",
            "mode": "script",
            "pythonScript": (
                "chamber.set('setpoint', 60)\n"
                "chamber.set('running', True)\n"
                "system.log('heating to', 60)\n"
                "next()\n"
            ),
        },
        {
            "name": "soak",
            "mode": "condition",
            "checkInterval": "2s",
            "conditions": [
                {"condition": "dut.temperature > 45", "action": "fail"},
                {"condition": "system.state_time >= 30", "action": "cool-down"},
            ],
        },
        {
            "name": "cool-down",
            "mode": "script",
            "delay": "5s",
            "pythonScript": (
                "chamber.set('running', False)\n"
                "if dut.get('battery') < 20:\n"
                "    jumpstate('fail')\n"
                "else:\n"
                "    jumpstate('success')\n"
            ),
        },
    ],
    "recording": {"recordAll": True, "interval": "2s"},
}


def demo_config() -> Dict[str, Any]:
    devices = []
    workstations = []
    for index in range(1, WORKSTATIONS + 1):
        chamber_id = f"chamber-{index:02d}"
        dut_id = f"dut-{index:02d}"
        devices.append(
            {"id": chamber_id, "deviceTypeId": "chamber", "ip": f"127.0.0.{index}", "simulated": True}
        )
        devices.append({"id": dut_id, "deviceTypeId": "dut", "simulated": True})
        workstations.append(
            {"id": f"ws-{index:02d}", "name": f"Workstation {index}", "pairings": {"chamber": chamber_id, "dut": dut_id}}
        )
    return {
        "deviceTypes": [CHAMBER_TYPE, DUT_TYPE],
        "devices": devices,
        "workstations": workstations,
        "processes": [BURN_IN_PROCESS],
    }


def seed_simulation(runtime: EngineRuntime) -> None:
    """Freeze the chamber words so the demo process has stable inputs."""

    chamber = runtime.repository.get_device_type("chamber")
    temperature = chamber.mapping("temperature")
    for instance in runtime.repository.devices():
        if instance.device_type_id != "chamber":
            continue
        # 40001 -> holding offset 0, 40003 -> holding offset 2, 10001 -> discrete offset 0
        simulation_registry.set_point(instance.id, temperature, 25.0, offset=0)
        simulation_registry.set_static_value(instance.id, "holding", 2, 0)
        simulation_registry.set_static_value(instance.id, "discrete", 0, False)


if __name__ == "__main__":
    settings = load_settings(os.getenv("APP_ENV"))
    setup_logger(logging.getLevelName(settings.log_level))

    runtime = EngineRuntime(settings)
    if settings.config_file:
        logger.process("Loading configuration from %s", settings.config_file)
        runtime.repository.load_file(settings.config_file)
    else:
        logger.process("No BURNIN_CONFIG set; loading the simulated demo configuration")
        runtime.repository.load_dict(demo_config())
        seed_simulation(runtime)

    app = create_app(settings.environment, runtime=runtime)
    runtime.start()
    logger.info("Engine runtime started in background.")

    try:
        logger.process("Starting Flask server on http://%s:%s", HOST, PORT)
        app.run(host=HOST, port=PORT, debug=settings.debug, use_reloader=False)
    finally:
        runtime.shutdown()
