"""Infrastructure for device transports.

This module defines :class:`BaseTransport`, the common contract for drivers
capable of reading and writing device points.  Besides establishing an async
interface, the class owns the per-device connection lifecycle
(``DISCONNECTED -> CONNECTING -> CONNECTED -> ERROR -> DISCONNECTED``) and the
reconnect backoff, so pollers only ask for reads and never deal with
reconnection timing themselves.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from burnin.errors import TransportError
from burnin.models.device import DeviceInstance, DeviceType, RegisterType
from burnin.utils.logs import logger


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class BaseTransport(ABC):
    """Base contract used by every device transport.

    Concrete implementations provide ``_open``/``_close`` together with the
    raw block read and write primitives.  Public methods wrap them with the
    connection state machine: a failed operation moves the transport to
    ``ERROR``, drops the connection and schedules the next attempt with
    exponential backoff.
    """

    def __init__(
        self,
        device_type: DeviceType,
        instance: DeviceInstance,
        *,
        timeout_s: float = 3.0,
        backoff_initial_s: float = 1.0,
        backoff_max_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.device_type = device_type
        self.instance = instance
        self.timeout = max(float(timeout_s), 0.05)
        self._backoff_initial = backoff_initial_s
        self._backoff_max = backoff_max_s
        self._backoff = backoff_initial_s
        self._retry_at = 0.0
        self._clock = clock
        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Abstract API
    # ------------------------------------------------------------------
    @abstractmethod
    async def _open(self) -> None:
        """Open the underlying connection; raise on failure."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the underlying connection."""

    @abstractmethod
    async def _read(self, register_type: RegisterType, offset: int, count: int, slave: int) -> List[Any]:
        """Read ``count`` words (or bits) starting at protocol ``offset``."""

    @abstractmethod
    async def _write(self, register_type: RegisterType, offset: int, values: Sequence[Any], slave: int) -> None:
        """Write consecutive words (or one bit) starting at ``offset``."""

    async def read_feed(self) -> Dict[str, Any]:
        """Read a fixed-schema snapshot (custom feeds only)."""
        raise TransportError(f"{self.key}: transport does not provide a field feed")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    @property
    def key(self) -> str:
        return self.instance.id

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def in_simulation(self) -> bool:
        return bool(self.instance.simulated)

    def retry_in(self) -> float:
        """Seconds until the next reconnect attempt is allowed."""
        return max(self._retry_at - self._clock(), 0.0)

    async def connect(self) -> None:
        """Connect, honouring the reconnect backoff window."""

        if self.is_connected():
            return
        if self._state is ConnectionState.ERROR:
            self._state = ConnectionState.DISCONNECTED
        wait = self.retry_in()
        if wait > 0:
            raise TransportError(f"{self.key}: reconnect backoff, next attempt in {wait:.1f}s")

        self._state = ConnectionState.CONNECTING
        try:
            await asyncio.wait_for(self._open(), timeout=self.timeout)
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as exc:
            await self._fail(f"connect failed: {exc or type(exc).__name__}")
            raise TransportError(f"{self.key}: {self.last_error}") from exc

        self._state = ConnectionState.CONNECTED
        self._backoff = self._backoff_initial
        self._retry_at = 0.0
        self.last_error = None
        logger.info("Connected to device %s", self.key)

    async def disconnect(self) -> None:
        try:
            await self._close()
        except Exception:
            logger.exception("Error while disconnecting device %s", self.key)
        finally:
            self._state = ConnectionState.DISCONNECTED

    async def _fail(self, reason: str) -> None:
        self.last_error = reason
        self._state = ConnectionState.ERROR
        try:
            await self._close()
        except Exception:
            logger.debug("Close after failure raised for %s", self.key, exc_info=True)
        self._retry_at = self._clock() + self._backoff
        logger.warning("Device %s error (%s); retry in %.1fs", self.key, reason, self._backoff)
        self._backoff = min(self._backoff * 2, self._backoff_max)
        self._state = ConnectionState.DISCONNECTED

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def read_block(
        self,
        register_type: RegisterType,
        offset: int,
        count: int,
        slave: Optional[int] = None,
    ) -> List[Any]:
        async with self._lock:
            await self.connect()
            unit = self.instance.slave_id if slave is None else slave
            try:
                values = await asyncio.wait_for(
                    self._read(RegisterType(register_type), offset, count, unit),
                    timeout=self.timeout,
                )
            except asyncio.CancelledError:
                raise
            except TransportError as exc:
                await self._fail(str(exc))
                raise
            except asyncio.TimeoutError as exc:
                await self._fail(f"read timeout after {self.timeout:.2f}s")
                raise TransportError(f"{self.key}: {self.last_error}") from exc
            except Exception as exc:
                await self._fail(f"read failed: {exc or type(exc).__name__}")
                raise TransportError(f"{self.key}: {self.last_error}") from exc
            if len(values) < count:
                await self._fail(f"short read ({len(values)} of {count})")
                raise TransportError(f"{self.key}: {self.last_error}")
            return list(values[:count])

    async def write(
        self,
        register_type: RegisterType,
        offset: int,
        values: Sequence[Any],
        slave: Optional[int] = None,
    ) -> None:
        register_type = RegisterType(register_type)
        if not register_type.writable:
            raise TransportError(f"{self.key}: {register_type.value} table is read-only")
        async with self._lock:
            await self.connect()
            unit = self.instance.slave_id if slave is None else slave
            try:
                await asyncio.wait_for(
                    self._write(register_type, offset, list(values), unit),
                    timeout=self.timeout,
                )
            except asyncio.CancelledError:
                raise
            except TransportError as exc:
                await self._fail(str(exc))
                raise
            except asyncio.TimeoutError as exc:
                await self._fail(f"write timeout after {self.timeout:.2f}s")
                raise TransportError(f"{self.key}: {self.last_error}") from exc
            except Exception as exc:
                await self._fail(f"write failed: {exc or type(exc).__name__}")
                raise TransportError(f"{self.key}: {self.last_error}") from exc


__all__ = ["BaseTransport", "ConnectionState"]
