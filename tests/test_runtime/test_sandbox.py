import asyncio
import time

import pytest

from burnin.errors import ScriptError
from burnin.runtime.script_engine import (
    ScriptProgram,
    SystemContext,
    SystemNamespace,
    TransitionRequest,
    build_bindings,
    run_program,
)


def run(source, bindings=None, timeout_s=0.5):
    return run_program(ScriptProgram(source), bindings or {}, timeout_s=timeout_s)


@pytest.fixture()
def script_env(store):
    store.publish("dev1", {"temperature": 42.0, "setpoint": 60})
    writes = []
    store.attach_writer("dev1", lambda point, value: writes.append((point, value)))
    system = SystemNamespace(SystemContext(workstation_id="ws-1", state="Heat"))
    transition = TransitionRequest()
    bindings = build_bindings({"dev1": "dev1"}, store, system, transition)
    return bindings, system, transition, writes


def test_plain_python_subset_runs():
    source = (
        "def clamp(value, low=0, high=10):\n"
        "    return max(low, min(high, value))\n"
        "values = [clamp(v) for v in range(-2, 14, 4)]\n"
        "total = 0\n"
        "for v in values:\n"
        "    if v == 10:\n"
        "        break\n"
        "    total += v\n"
        "label = f'{total:03d}'\n"
    )
    result = run(source)
    assert result["values"] == [0, 2, 6, 10]
    assert result["total"] == 8
    assert result["label"] == "008"


def test_script_exceptions_can_be_caught():
    result = run(
        "try:\n"
        "    x = {'a': 1}['b']\n"
        "except KeyError as exc:\n"
        "    x = 'missing ' + str(exc.args[0])\n"
    )
    assert result["x"] == "missing b"


def test_device_and_system_bindings(script_env):
    bindings, system, transition, writes = script_env
    run(
        "t = dev1.get('temperature')\n"
        "dev1.set('setpoint', t + 8)\n"
        "system.log('state', system.get_state(), dev1.temperature)\n"
        "if dev1.is_online():\n"
        "    jumpstate('Soak')\n",
        bindings,
    )
    assert writes == [("setpoint", 50.0)]
    assert system.drain_messages() == ["state Heat 42.0"]
    assert transition.resolve(lambda: "unused") == "Soak"


def test_last_transition_call_wins(script_env):
    bindings, _, transition, _ = script_env
    run("jumpstate('Soak')\nnext()", bindings)
    assert transition.resolve(lambda: "Cool") == "Cool"


def test_bindings_cannot_be_rebound(script_env):
    bindings, _, _, _ = script_env
    with pytest.raises(ScriptError, match="cannot rebind"):
        run("system = None", bindings)


@pytest.mark.parametrize(
    "source",
    [
        "import os",
        "from os import path",
        "x = __import__('os')",
        "x = (1).__class__",
        "lambda: 1",
        "class A:\n    pass",
        "with open('f') as fh:\n    pass",
        "global x",
        "def f(*args):\n    pass",
        "x = 1 +",
    ],
)
def test_forbidden_constructs_are_rejected_at_compile_time(source):
    with pytest.raises(ScriptError):
        ScriptProgram(source)


@pytest.mark.parametrize(
    "source, fragment",
    [
        ("x = open('f')", "NameError"),
        ("x = eval('1')", "NameError"),
        ("x = 'a'.format_map({})", "AttributeError"),
        ("x = 2 ** 100000", "ValueError"),
        ("x = 3 ** 999 + 1\nx = x ** 999 + 1\nx = x ** 20", "integer power"),
        ("x = 7 ** 900\nfor i in range(100):\n    x = x * x", "integer product"),
        ("x = 'a' * 10000000", "ValueError"),
        ("x = list(range(10000000))", "ValueError"),
        ("raise ValueError('boom')", "ValueError: boom"),
    ],
)
def test_runtime_failures_become_script_errors(source, fragment):
    with pytest.raises(ScriptError) as info:
        run(source)
    assert fragment in str(info.value)
    assert info.value.source == source


def test_system_attributes_are_allow_listed(script_env):
    bindings, _, _, _ = script_env
    with pytest.raises(ScriptError, match="AttributeError"):
        run("x = system.drain_messages()", bindings)


def test_runaway_loop_hits_the_deadline():
    with pytest.raises(ScriptError, match="budget"):
        run("while True:\n    pass", timeout_s=0.05)


def test_unbounded_recursion_is_stopped():
    with pytest.raises(ScriptError, match="RecursionError"):
        run("def f(n):\n    return f(n + 1)\nf(0)")


def test_break_outside_loop():
    with pytest.raises(ScriptError, match="outside loop"):
        run("break")


def test_engine_runs_scripts_off_the_loop(engine, script_env):
    bindings, system, _, _ = script_env

    async def go():
        return await engine.run_script("y = 6 * 7\nsystem.log('done')", bindings)

    assert asyncio.run(go()) == {"y": 42}
    assert system.drain_messages() == ["done"]
    assert engine.compile_script("y = 6 * 7\nsystem.log('done')") is engine.compile_script(
        "y = 6 * 7\nsystem.log('done')"
    )


def test_deadline_is_checked_after_the_last_statement():
    def slow():
        time.sleep(0.1)

    with pytest.raises(ScriptError, match="budget"):
        run("slow()", {"slow": slow}, timeout_s=0.05)


def test_engine_gives_up_on_a_script_past_its_budget(engine):
    def stuck():
        time.sleep(1.0)

    async def go():
        started = time.monotonic()
        with pytest.raises(ScriptError, match="100ms budget"):
            await engine.run_script("stuck()", {"stuck": stuck}, timeout_ms=100)
        return time.monotonic() - started

    assert asyncio.run(go()) < 0.8


def test_huge_integer_powers_fail_fast(engine):
    source = "x = 3 ** 999 + 1\nx = x ** 999 + 1\nx = x ** 20"

    async def go():
        started = time.monotonic()
        with pytest.raises(ScriptError, match="ValueError"):
            await engine.run_script(source, {}, timeout_ms=200)
        return time.monotonic() - started

    assert asyncio.run(go()) < 1.0
