"""Aging process definitions: devices, global checks and the state graph."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import Field, field_validator, model_validator

from burnin.models.device import FrozenModel

_DURATION = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_seconds(value: Any) -> Any:
    """Accept ``"500ms"``, ``"5s"``, ``"2m"`` or plain numbers (seconds)."""

    if not isinstance(value, str):
        return value
    match = _DURATION.match(value)
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    unit = (match.group("unit") or "s").lower()
    return float(match.group("value")) * _UNIT_SECONDS[unit]

START = "start"
PAUSE = "pause"
FAIL = "fail"
SUCCESS = "success"
END = "end"

RESERVED_STATES = frozenset({START, PAUSE, FAIL, SUCCESS, END})
TERMINAL_STATES = frozenset({FAIL, SUCCESS, END})


class ProcessMode(str, Enum):
    SCRIPT = "script"
    CONDITION = "condition"


class ProcessDevice(FrozenModel):
    """Alias used by the process scripts, bound to a device type."""

    alias: str = Field(min_length=1)
    device_type_id: str = Field(alias="deviceTypeId")


class GlobalCheck(FrozenModel):
    id: str = ""
    mode: ProcessMode = ProcessMode.CONDITION
    script: str = Field(default="", alias="pythonScript")
    condition: str = ""
    jump_target: str = Field(default=PAUSE, alias="jumpTarget")

    @model_validator(mode="after")
    def _body_present(self) -> "GlobalCheck":
        if self.mode is ProcessMode.SCRIPT and not self.script.strip():
            raise ValueError(f"global check {self.id!r} in script mode needs a script")
        if self.mode is ProcessMode.CONDITION and not self.condition.strip():
            raise ValueError(f"global check {self.id!r} in condition mode needs a condition")
        return self


class ConditionRule(FrozenModel):
    condition: str = Field(min_length=1)
    target: str = Field(alias="action")


class ProcessState(FrozenModel):
    id: str = ""
    name: str = Field(min_length=1)
    description: str = ""
    mode: ProcessMode = ProcessMode.SCRIPT
    script: str = Field(default="", alias="pythonScript")
    delay_s: float = Field(default=0.0, ge=0, alias="delay")
    jump_target: Optional[str] = Field(default=None, alias="jumpTarget")
    conditions: List[ConditionRule] = Field(default_factory=list)
    check_interval_s: float = Field(default=0.0, ge=0, alias="checkInterval")

    @field_validator("delay_s", "check_interval_s", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> Any:
        return parse_seconds(value)


class RecordingConfig(FrozenModel):
    record_all: bool = Field(default=False, alias="recordAll")
    points: List[Tuple[str, str]] = Field(default_factory=list)
    interval_s: Optional[float] = Field(default=None, gt=0, alias="interval")


class MesReportingConfig(FrozenModel):
    enabled: bool = True
    script: str = ""
    url: Optional[str] = None


class AgingProcess(FrozenModel):
    id: str
    name: str
    description: str = ""
    devices: List[ProcessDevice] = Field(default_factory=list)
    global_checks: List[GlobalCheck] = Field(default_factory=list, alias="globalChecks")
    states: List[ProcessState] = Field(default_factory=list)
    entry_state: Optional[str] = Field(default=None, alias="entryState")
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    mes: MesReportingConfig = Field(default_factory=MesReportingConfig)

    @model_validator(mode="after")
    def _check_graph(self) -> "AgingProcess":
        names = [state.name for state in self.states]
        if len(set(names)) != len(names):
            raise ValueError(f"process {self.id!r} has duplicate state names")
        clash = RESERVED_STATES.intersection(names)
        if clash:
            raise ValueError(
                f"process {self.id!r} redefines reserved states: {', '.join(sorted(clash))}"
            )
        aliases = [device.alias for device in self.devices]
        if len(set(aliases)) != len(aliases):
            raise ValueError(f"process {self.id!r} has duplicate device aliases")

        known = set(names) | RESERVED_STATES
        targets = [check.jump_target for check in self.global_checks]
        for state in self.states:
            if state.jump_target:
                targets.append(state.jump_target)
            targets.extend(rule.target for rule in state.conditions)
        if self.entry_state:
            targets.append(self.entry_state)
        unknown = sorted({target for target in targets if target not in known})
        if unknown:
            raise ValueError(
                f"process {self.id!r} jumps to unknown states: {', '.join(unknown)}"
            )
        return self

    def state(self, name: str) -> Optional[ProcessState]:
        for state in self.states:
            if state.name == name:
                return state
        return None

    @property
    def initial_state(self) -> str:
        """First state entered after ``start``."""
        if self.entry_state:
            return self.entry_state
        if self.states:
            return self.states[0].name
        return END

    def successor(self, name: str) -> str:
        """Natural successor used by ``next()``."""
        state = self.state(name)
        if state is not None and state.jump_target:
            return state.jump_target
        if name == START:
            return self.initial_state
        for index, candidate in enumerate(self.states):
            if candidate.name == name and index + 1 < len(self.states):
                return self.states[index + 1].name
        return END

    def is_known_state(self, name: str) -> bool:
        return name in RESERVED_STATES or self.state(name) is not None


__all__ = [
    "AgingProcess",
    "ConditionRule",
    "END",
    "FAIL",
    "GlobalCheck",
    "MesReportingConfig",
    "PAUSE",
    "ProcessDevice",
    "ProcessMode",
    "ProcessState",
    "RESERVED_STATES",
    "RecordingConfig",
    "START",
    "SUCCESS",
    "TERMINAL_STATES",
]
