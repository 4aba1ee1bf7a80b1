"""In-memory configuration repository.

Holds device types, device instances, the global device registry,
workstations with their pairings and aging processes.  Cross references are
validated on every change; runs receive immutable snapshots so later edits
never leak into a run that is already executing.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from burnin.errors import ConfigError, NotFoundError
from burnin.models.device import DeviceInstance, DeviceProbeCondition, DeviceType
from burnin.models.process import AgingProcess
from burnin.models.workstation import WorkstationConfig
from burnin.utils.logs import logger


def _validated(model, data: Any, what: str):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid {what}: {exc}") from exc


class ConfigRepository:
    def __init__(self) -> None:
        self._device_types: Dict[str, DeviceType] = {}
        self._instances: Dict[str, DeviceInstance] = {}
        self._global_devices: Dict[str, str] = {}
        self._workstations: Dict[str, WorkstationConfig] = {}
        self._processes: Dict[str, AgingProcess] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Device types
    # ------------------------------------------------------------------
    def add_device_type(self, data: Union[DeviceType, Mapping[str, Any]]) -> DeviceType:
        device_type = _validated(DeviceType, data, "device type")
        with self._lock:
            self._device_types[device_type.id] = device_type
        return device_type

    def get_device_type(self, type_id: str) -> DeviceType:
        with self._lock:
            device_type = self._device_types.get(type_id)
        if device_type is None:
            raise NotFoundError(f"unknown device type {type_id!r}")
        return device_type

    def device_types(self) -> List[DeviceType]:
        with self._lock:
            return list(self._device_types.values())

    def replace_probe(self, type_id: str, probe: Optional[Union[DeviceProbeCondition, Mapping[str, Any], str]]) -> DeviceType:
        """Swap the probe condition of a modbus-tcp type; it cannot be removed."""

        if probe is None:
            raise ConfigError(f"probe condition of {type_id!r} cannot be deleted, only replaced")
        if isinstance(probe, str):
            probe = DeviceProbeCondition(expression=probe)
        probe = _validated(DeviceProbeCondition, probe, "probe condition")
        with self._lock:
            current = self.get_device_type(type_id)
            if current.is_custom:
                raise ConfigError(f"custom device type {type_id!r} has no probe condition")
            updated = current.model_copy(update={"probe": probe})
            self._device_types[type_id] = updated
        logger.info("Probe of device type %s replaced", type_id)
        return updated

    # ------------------------------------------------------------------
    # Device instances and the global registry
    # ------------------------------------------------------------------
    def add_device(self, data: Union[DeviceInstance, Mapping[str, Any]]) -> DeviceInstance:
        instance = _validated(DeviceInstance, data, "device instance")
        with self._lock:
            if instance.device_type_id not in self._device_types:
                raise ConfigError(
                    f"device {instance.id!r} references unknown type {instance.device_type_id!r}"
                )
            self._instances[instance.id] = instance
        return instance

    def get_device(self, device_id: str) -> DeviceInstance:
        with self._lock:
            instance = self._instances.get(device_id)
        if instance is None:
            raise NotFoundError(f"unknown device {device_id!r}")
        return instance

    def devices(self) -> List[DeviceInstance]:
        with self._lock:
            return list(self._instances.values())

    def _owner_of(self, device_id: str) -> Optional[str]:
        if device_id in self._global_devices.values():
            return "global registry"
        for workstation in self._workstations.values():
            if device_id in workstation.pairings.values():
                return f"workstation {workstation.id}"
        return None

    def add_global_device(self, alias: str, device_id: str) -> None:
        with self._lock:
            self.get_device(device_id)
            if alias in self._global_devices:
                raise ConfigError(f"global alias {alias!r} already in use")
            owner = self._owner_of(device_id)
            if owner:
                raise ConfigError(f"device {device_id!r} already belongs to the {owner}")
            self._global_devices[alias] = device_id

    def global_devices(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._global_devices)

    # ------------------------------------------------------------------
    # Workstations
    # ------------------------------------------------------------------
    def add_workstation(self, data: Union[WorkstationConfig, Mapping[str, Any]]) -> WorkstationConfig:
        workstation = _validated(WorkstationConfig, data, "workstation")
        with self._lock:
            previous = self._workstations.pop(workstation.id, None)
            try:
                for alias, device_id in workstation.pairings.items():
                    self.get_device(device_id)
                    owner = self._owner_of(device_id)
                    if owner:
                        raise ConfigError(f"device {device_id!r} already belongs to the {owner}")
                if len(set(workstation.pairings.values())) != len(workstation.pairings):
                    raise ConfigError(f"workstation {workstation.id!r} pairs one device twice")
            except Exception:
                if previous is not None:
                    self._workstations[previous.id] = previous
                raise
            self._workstations[workstation.id] = workstation
        return workstation

    def get_workstation(self, workstation_id: str) -> WorkstationConfig:
        with self._lock:
            workstation = self._workstations.get(workstation_id)
        if workstation is None:
            raise NotFoundError(f"unknown workstation {workstation_id!r}")
        return workstation

    def workstations(self) -> List[WorkstationConfig]:
        with self._lock:
            return list(self._workstations.values())

    def remove_workstation(self, workstation_id: str) -> bool:
        with self._lock:
            return self._workstations.pop(workstation_id, None) is not None

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------
    def add_process(self, data: Union[AgingProcess, Mapping[str, Any]]) -> AgingProcess:
        process = _validated(AgingProcess, data, "aging process")
        with self._lock:
            for device in process.devices:
                if device.device_type_id not in self._device_types:
                    raise ConfigError(
                        f"process {process.id!r} alias {device.alias!r} references "
                        f"unknown device type {device.device_type_id!r}"
                    )
            self._processes[process.id] = process
        return process

    def get_process(self, process_id: str) -> AgingProcess:
        with self._lock:
            process = self._processes.get(process_id)
        if process is None:
            raise NotFoundError(f"unknown aging process {process_id!r}")
        return process

    def processes(self) -> List[AgingProcess]:
        with self._lock:
            return list(self._processes.values())

    def snapshot(self, process_id: str) -> AgingProcess:
        """Detached copy of the process used for the lifetime of a run."""
        try:
            return self.get_process(process_id).model_copy(deep=True)
        except NotFoundError as exc:
            raise ConfigError(str(exc)) from exc

    def resolve_bindings(self, workstation_id: str, process: AgingProcess) -> Dict[str, str]:
        """Map every process alias to a device id.

        Workstation pairings win over the global registry.  Raises
        :class:`ConfigError` for unbound aliases or devices of the wrong type.
        """

        with self._lock:
            workstation = self.get_workstation(workstation_id)
            bindings: Dict[str, str] = {}
            problems: List[str] = []
            for device in process.devices:
                device_id = workstation.pairings.get(device.alias) or self._global_devices.get(device.alias)
                if device_id is None:
                    problems.append(f"alias {device.alias!r} is not bound to any device")
                    continue
                instance = self._instances.get(device_id)
                if instance is None:
                    problems.append(f"alias {device.alias!r} is bound to unknown device {device_id!r}")
                    continue
                if instance.device_type_id != device.device_type_id:
                    problems.append(
                        f"alias {device.alias!r} needs a {device.device_type_id!r} device, "
                        f"{device_id!r} is {instance.device_type_id!r}"
                    )
                    continue
                bindings[device.alias] = device_id
        if problems:
            raise ConfigError(f"cannot start {process.id!r} on {workstation_id!r}: " + "; ".join(problems))
        return bindings

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load_dict(self, data: Mapping[str, Any]) -> None:
        """Load a configuration document (``deviceTypes``, ``devices``...)."""

        def items(*keys: str) -> Iterable[Any]:
            for key in keys:
                if key in data:
                    return data[key] or []
            return []

        for entry in items("deviceTypes", "device_types"):
            self.add_device_type(entry)
        for entry in items("devices"):
            self.add_device(entry)
        for alias, device_id in dict(items("globalDevices", "global_devices") or {}).items():
            self.add_global_device(alias, device_id)
        for entry in items("workstations"):
            self.add_workstation(entry)
        for entry in items("processes"):
            self.add_process(entry)
        logger.info(
            "Configuration loaded: %d device types, %d devices, %d workstations, %d processes",
            len(self._device_types),
            len(self._instances),
            len(self._workstations),
            len(self._processes),
        )

    def load_file(self, path: Union[str, Path]) -> None:
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"configuration file {path} not found") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"configuration file {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"configuration file {path} must contain an object")
        self.load_dict(data)


__all__ = ["ConfigRepository"]
