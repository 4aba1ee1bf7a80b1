"""Process-wide cache of decoded device points and online status."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from functools import lru_cache
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from burnin.errors import ScriptError
from burnin.models.device import DeviceInstance, DeviceType
from burnin.runtime.script_engine.condition import ConditionProgram
from burnin.utils.logs import logger
from burnin.utils.rwlock import ReadWriteLock

Writer = Callable[[str, Any], None]
ConnectivityObserver = Callable[[str, bool, Dict[str, Any]], None]


@lru_cache(maxsize=128)
def _probe_program(expression: str) -> ConditionProgram:
    return ConditionProgram(expression)


def evaluate_probe(device_type: Optional[DeviceType], values: Dict[str, Any]) -> bool:
    """Probe verdict for a snapshot; a pure function of its inputs.

    Points the device has not reported yet resolve to ``None`` so that
    comparisons against them are false instead of raising.
    """

    if device_type is None or device_type.probe is None or device_type.probe.is_blank:
        return True
    namespace: Dict[str, Any] = {name: None for name in device_type.point_names()}
    namespace.update(values)
    try:
        return _probe_program(device_type.probe.expression).evaluate(namespace)
    except ScriptError as exc:
        logger.warning("Probe for device type %s failed: %s", device_type.id, exc)
        return False


def _out_of_range(device_type: Optional[DeviceType], values: Dict[str, Any]) -> List[str]:
    if device_type is None:
        return []
    names = []
    for name, value in values.items():
        mapping = device_type.mapping(name)
        if mapping is not None and mapping.in_normal_range(value) is False:
            names.append(name)
    return sorted(names)


@dataclass
class PointValue:
    value: Any
    timestamp: float
    wall_time: datetime


@dataclass
class _DeviceEntry:
    device_type: Optional[DeviceType]
    points: Dict[str, PointValue] = field(default_factory=dict)
    failures: int = 0
    online: bool = False
    polled: bool = False
    last_timestamp: Optional[float] = None
    last_update: Optional[datetime] = None
    last_error: Optional[str] = None
    writer: Optional[Writer] = None


class DeviceStateStore:
    """Latest decoded values per device, guarded by a reader/writer lock.

    Pollers are the only writers of polled values; scripts write through
    :meth:`set`, which updates the cache (last write wins) and forwards the
    value to the device writer registered by the poller.
    """

    def __init__(self, *, offline_after_failures: int = 3, clock: Callable[[], float] = time.monotonic):
        self.offline_after_failures = max(int(offline_after_failures), 1)
        self._clock = clock
        self._lock = ReadWriteLock()
        self._devices: Dict[str, _DeviceEntry] = {}
        self._observers: List[ConnectivityObserver] = []

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register_device(self, instance: DeviceInstance, device_type: Optional[DeviceType] = None) -> None:
        with self._lock.write():
            entry = self._devices.get(instance.id)
            if entry is None:
                self._devices[instance.id] = _DeviceEntry(device_type=device_type)
            else:
                entry.device_type = device_type

    def unregister_device(self, device_id: str) -> None:
        with self._lock.write():
            self._devices.pop(device_id, None)

    def attach_writer(self, device_id: str, writer: Optional[Writer]) -> None:
        with self._lock.write():
            self._entry(device_id).writer = writer

    def subscribe(self, observer: ConnectivityObserver) -> None:
        self._observers.append(observer)

    def device_ids(self) -> List[str]:
        with self._lock.read():
            return list(self._devices)

    def _entry(self, device_id: str) -> _DeviceEntry:
        entry = self._devices.get(device_id)
        if entry is None:
            raise KeyError(f"device {device_id!r} is not registered")
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, device_id: str, point: str) -> Tuple[Any, Optional[float]]:
        with self._lock.read():
            entry = self._devices.get(device_id)
            stored = entry.points.get(point) if entry else None
            if stored is None:
                return None, None
            return stored.value, stored.timestamp

    def snapshot(self, device_id: str) -> Dict[str, Any]:
        with self._lock.read():
            entry = self._devices.get(device_id)
            if entry is None:
                return {}
            return {name: stored.value for name, stored in entry.points.items()}

    def is_online(self, device_id: str) -> bool:
        with self._lock.read():
            entry = self._devices.get(device_id)
            return bool(entry and entry.online)

    def last_timestamp(self, device_id: str) -> Optional[float]:
        with self._lock.read():
            entry = self._devices.get(device_id)
            return entry.last_timestamp if entry else None

    def last_update(self, device_id: str) -> Optional[datetime]:
        with self._lock.read():
            entry = self._devices.get(device_id)
            return entry.last_update if entry else None

    def device_type(self, device_id: str) -> Optional[DeviceType]:
        with self._lock.read():
            entry = self._devices.get(device_id)
            return entry.device_type if entry else None

    def status(self, device_id: str) -> Dict[str, Any]:
        with self._lock.read():
            entry = self._entry(device_id)
            values = {name: stored.value for name, stored in entry.points.items()}
            return {
                "device_id": device_id,
                "online": entry.online,
                "failures": entry.failures,
                "last_error": entry.last_error,
                "last_update": entry.last_update.isoformat() if entry.last_update else None,
                "values": values,
                "out_of_range": _out_of_range(entry.device_type, values),
            }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def set(self, device_id: str, point: str, value: Any) -> None:
        """Cache ``value`` and hand it to the device writer."""

        with self._lock.read():
            writer = self._entry(device_id).writer
        # the writer validates the point and may reject it before caching
        if writer is not None:
            writer(point, value)
        now, wall = self._clock(), datetime.now(timezone.utc)
        with self._lock.write():
            self._entry(device_id).points[point] = PointValue(value, now, wall)

    def publish(self, device_id: str, values: Dict[str, Any], timestamp: Optional[float] = None) -> bool:
        """Merge a successful poll into the snapshot; returns the online verdict."""

        stamp = self._clock() if timestamp is None else timestamp
        wall = datetime.now(timezone.utc)
        with self._lock.write():
            entry = self._entry(device_id)
            for name, value in values.items():
                entry.points[name] = PointValue(value, stamp, wall)
            entry.failures = 0
            entry.polled = True
            entry.last_error = None
            entry.last_timestamp = stamp
            entry.last_update = wall
            current = {name: stored.value for name, stored in entry.points.items()}
            online = evaluate_probe(entry.device_type, current)
            changed = online != entry.online
            entry.online = online
        if changed:
            self._notify(device_id, online)
        return online

    def record_failure(self, device_id: str, reason: Optional[str] = None) -> bool:
        """Count a failed poll; the prior snapshot is kept."""

        with self._lock.write():
            entry = self._entry(device_id)
            entry.failures += 1
            entry.last_error = reason
            if entry.failures >= self.offline_after_failures or not entry.polled:
                online = False
            else:
                current = {name: stored.value for name, stored in entry.points.items()}
                online = evaluate_probe(entry.device_type, current)
            changed = online != entry.online
            entry.online = online
            failures = entry.failures
        if changed:
            logger.warning("Device %s offline after %d failed polls", device_id, failures)
            self._notify(device_id, online)
        return online

    def _notify(self, device_id: str, online: bool) -> None:
        payload = {"device_id": device_id, "online": online}
        for observer in list(self._observers):
            try:
                observer(device_id, online, payload)
            except Exception:
                logger.exception("Connectivity observer failed for %s", device_id)


__all__ = ["DeviceStateStore", "PointValue", "evaluate_probe"]
