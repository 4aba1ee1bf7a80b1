"""Runtime helpers that feed deterministic register words to simulated devices.

The Modbus transport transparently switches to this registry whenever the
device instance is flagged ``simulated``.  This makes it possible to exercise
the whole polling, evaluation and recording pipeline without physical
hardware: words that were never written drift between bounds, words set with
:meth:`SimulationRegistry.set_static_value` (or written by a script) stay
frozen.
"""

from __future__ import annotations

import threading
import zlib
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from burnin.models.device import RegisterMapping, RegisterType
from burnin.services.register_map import encode_words
from burnin.utils.logs import logger

_Key = Tuple[str, RegisterType, int]


@dataclass
class SimulationEntry:
    """Internal structure that tracks the state of a simulated word."""

    value: int
    step: int
    direction: int
    minimum: int
    maximum: int
    fixed: bool = False


class SimulationRegistry:
    """Simple in-memory registry that produces pseudo-realistic words."""

    def __init__(self) -> None:
        self._entries: Dict[_Key, SimulationEntry] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def read_words(self, device_id: str, register_type: RegisterType, offset: int, count: int) -> List[Any]:
        """Return ``count`` simulated values starting at ``offset``."""

        register_type = RegisterType(register_type)
        values: List[Any] = []
        with self._lock:
            for address in range(offset, offset + count):
                key = (device_id, register_type, address)
                entry = self._entries.get(key)
                if entry is None:
                    entry = self._create_entry(key)
                    self._entries[key] = entry
                if not entry.fixed:
                    self._step_value(entry)
                values.append(bool(entry.value) if register_type.is_bit else entry.value)
        return values

    def write_words(self, device_id: str, register_type: RegisterType, offset: int, values: Sequence[Any]) -> None:
        register_type = RegisterType(register_type)
        with self._lock:
            for index, value in enumerate(values):
                word = int(bool(value)) if register_type.is_bit else int(value) & 0xFFFF
                self._entries[(device_id, register_type, offset + index)] = SimulationEntry(
                    value=word, step=0, direction=1, minimum=word, maximum=word, fixed=True
                )

    def set_static_value(self, device_id: str, register_type: RegisterType, offset: int, value: Any) -> None:
        """Freeze one word (or a sequence of consecutive words)."""

        values = list(value) if isinstance(value, (list, tuple)) else [value]
        self.write_words(device_id, register_type, offset, values)

    def set_point(
        self,
        device_id: str,
        mapping: RegisterMapping,
        value: Any,
        *,
        register_type: RegisterType = RegisterType.HOLDING,
        offset: int,
    ) -> None:
        """Freeze the words of ``mapping`` so they decode to ``value``."""

        if RegisterType(register_type).is_bit:
            self.write_words(device_id, register_type, offset, [bool(value)])
            return
        self.write_words(device_id, register_type, offset, encode_words(value, mapping))

    def clear(self, device_id: str | None = None) -> None:
        with self._lock:
            if device_id is None:
                self._entries.clear()
                return
            for key in [key for key in self._entries if key[0] == device_id]:
                del self._entries[key]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _create_entry(self, key: _Key) -> SimulationEntry:
        device_id, register_type, address = key
        seed = zlib.crc32(f"{device_id}:{register_type.value}:{address}".encode()) % 1000
        if register_type.is_bit:
            entry = SimulationEntry(value=seed % 2, step=1, direction=1, minimum=0, maximum=1)
        else:
            base = 200 + (seed % 250)
            entry = SimulationEntry(
                value=base,
                step=1 + seed % 5,
                direction=1,
                minimum=base - 50,
                maximum=base + 50,
            )
        logger.debug(
            "Simulation entry created for %s/%s@%s (base=%s)",
            device_id,
            register_type.value,
            address,
            entry.value,
        )
        return entry

    @staticmethod
    def _step_value(entry: SimulationEntry) -> None:
        if entry.maximum - entry.minimum <= 1:
            entry.value = entry.maximum if entry.value == entry.minimum else entry.minimum
            return
        entry.value += entry.step * entry.direction
        if entry.value >= entry.maximum or entry.value <= entry.minimum:
            entry.direction *= -1
            entry.value = max(min(entry.value, entry.maximum), entry.minimum)


# Global registry reused by transports
simulation_registry = SimulationRegistry()

__all__ = ["simulation_registry", "SimulationEntry", "SimulationRegistry"]
