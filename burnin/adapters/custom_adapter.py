"""Transport for fixed-schema "custom" devices.

Custom devices have no register map.  Each poll asks a feed callable for a
``{field: value}`` mapping; how the integration obtains it (serial bridge,
vendor SDK, HTTP...) is up to the callable.  Feeds are registered per device
instance id or per device type id in :data:`custom_feeds`.
"""

from __future__ import annotations

import inspect
import math
import threading
import time
import zlib
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from burnin.adapters.base_adapters import BaseTransport
from burnin.errors import TransportError
from burnin.models.device import DEFAULT_CUSTOM_FIELDS, DeviceInstance, DeviceType, RegisterType
from burnin.utils.logs import logger

FeedResult = Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]
Feed = Callable[[DeviceInstance], FeedResult]


class CustomFeedRegistry:
    """Thread-safe lookup of feed callables."""

    def __init__(self) -> None:
        self._feeds: Dict[str, Feed] = {}
        self._lock = threading.Lock()

    def register(self, key: str, feed: Feed) -> None:
        with self._lock:
            self._feeds[key] = feed

    def unregister(self, key: str) -> None:
        with self._lock:
            self._feeds.pop(key, None)

    def resolve(self, instance: DeviceInstance) -> Optional[Feed]:
        with self._lock:
            return self._feeds.get(instance.id) or self._feeds.get(instance.device_type_id)

    def clear(self) -> None:
        with self._lock:
            self._feeds.clear()


custom_feeds = CustomFeedRegistry()


def simulated_feed(instance: DeviceInstance) -> Dict[str, Any]:
    """Slowly varying values for demo custom devices."""

    phase = (zlib.crc32(instance.id.encode()) % 360) / 57.3
    now = time.time() / 60.0
    return {
        "temperature": round(25.0 + 5.0 * math.sin(now + phase), 2),
        "humidity": round(45.0 + 10.0 * math.cos(now + phase), 2),
        "battery": 95,
        "rssi": -60,
    }


class CustomFeedTransport(BaseTransport):
    """Pulls field snapshots from a registered feed callable."""

    def __init__(self, device_type: DeviceType, instance: DeviceInstance, *, feed: Optional[Feed] = None, **kwargs: Any):
        super().__init__(device_type, instance, **kwargs)
        self._feed = feed
        self.fields = tuple(device_type.fields or DEFAULT_CUSTOM_FIELDS)

    def _resolve_feed(self) -> Feed:
        feed = self._feed or custom_feeds.resolve(self.instance)
        if feed is None and self.in_simulation():
            feed = simulated_feed
        if feed is None:
            raise TransportError(f"{self.key}: no feed registered for custom device")
        return feed

    async def _open(self) -> None:
        self._resolve_feed()

    async def _close(self) -> None:
        return None

    async def _read(self, register_type: RegisterType, offset: int, count: int, slave: int) -> List[Any]:
        raise TransportError(f"{self.key}: custom devices have no registers")

    async def _write(self, register_type: RegisterType, offset: int, values: Sequence[Any], slave: int) -> None:
        raise TransportError(f"{self.key}: custom devices are read-only")

    async def read_feed(self) -> Dict[str, Any]:
        async with self._lock:
            await self.connect()
            feed = self._resolve_feed()
            try:
                result = feed(self.instance)
                if inspect.isawaitable(result):
                    result = await result
            except TransportError as exc:
                await self._fail(str(exc))
                raise
            except Exception as exc:
                await self._fail(f"feed failed: {exc or type(exc).__name__}")
                raise TransportError(f"{self.key}: {self.last_error}") from exc

            if not isinstance(result, Mapping):
                await self._fail(f"feed returned {type(result).__name__}, expected a mapping")
                raise TransportError(f"{self.key}: {self.last_error}")

            values = {name: result[name] for name in self.fields if name in result}
            dropped = set(result) - set(values)
            if dropped:
                logger.debug("Custom device %s ignored unknown fields: %s", self.key, sorted(dropped))
            return values


__all__ = [
    "CustomFeedRegistry",
    "CustomFeedTransport",
    "custom_feeds",
    "simulated_feed",
]
