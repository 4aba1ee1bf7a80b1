import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from burnin.adapters.base_adapters import BaseTransport
from burnin.adapters.factory import get_transport
from burnin.app.settings import PollingSettings
from burnin.errors import DecodeError, TransportError
from burnin.models.device import DeviceInstance, DeviceType, RegisterMapping, RegisterType
from burnin.services.address_mapping import address_mapping
from burnin.services.device_state_store import DeviceStateStore
from burnin.services.register_map import decode_block, encode_words, register_count
from burnin.utils.logs import logger

# Modbus PDU limits per request
MAX_REGISTERS_PER_READ = 125
MAX_BITS_PER_READ = 2000
# gap tolerated when merging mappings into one implicit block
IMPLICIT_BLOCK_SPAN = 120
# a write rejected this many times is dropped from the queue
MAX_WRITE_ATTEMPTS = 3


@dataclass
class PendingWrite:
    point: str
    register_type: RegisterType
    offset: int
    values: List[Any]
    slave: int
    attempts: int = 0


@dataclass
class ScanPlan:
    """One register block read on a schedule, with the mappings it decodes."""

    register_type: RegisterType
    offset: int
    count: int
    slave: int
    interval_s: float
    mappings: List[RegisterMapping] = field(default_factory=list)
    next_due: float = 0.0

    def chunks(self) -> List[Tuple[int, int]]:
        limit = MAX_BITS_PER_READ if self.register_type.is_bit else MAX_REGISTERS_PER_READ
        spans = []
        start, remaining = self.offset, self.count
        while remaining > 0:
            size = min(limit, remaining)
            spans.append((start, size))
            start += size
            remaining -= size
        return spans


def _normalise(address: int, default_table: RegisterType) -> Tuple[RegisterType, int]:
    info = address_mapping.normalize(address)
    return info["register_type"] or default_table, info["offset"]


def build_scan_plans(
    device_type: DeviceType,
    instance: DeviceInstance,
    default_interval_ms: int,
) -> List[ScanPlan]:
    """Translate scan configs (or the bare register map) into read plans.

    Mappings are normalised to protocol offsets so ``40001`` and ``0`` refer
    to the same holding register.  Mappings addressed to another slave than
    the instance get their own plan.
    """

    default_slave = instance.slave_id
    plans: List[ScanPlan] = []

    if device_type.scan_configs:
        for scan in device_type.scan_configs:
            table, start = _normalise(scan.start_address, scan.register_type)
            _, end = _normalise(scan.end_address, table)
            if end < start:
                logger.warning("Scan %s-%s of %s is empty after normalisation", scan.start_address, scan.end_address, device_type.id)
                continue
            interval = (scan.interval_ms or default_interval_ms) / 1000.0
            groups: Dict[int, List[RegisterMapping]] = {}
            for mapping in device_type.register_map:
                m_table, m_offset = _normalise(mapping.address, table)
                width = 1 if table.is_bit else register_count(mapping.data_type)
                if m_table is not table or m_offset < start or m_offset + width - 1 > end:
                    continue
                slave = mapping.slave_address if mapping.slave_address is not None else default_slave
                groups.setdefault(slave, []).append(mapping.model_copy(update={"address": m_offset}))
            if not groups:
                groups[default_slave] = []
            for slave, mappings in groups.items():
                plans.append(ScanPlan(table, start, end - start + 1, slave, interval, mappings))
        return plans

    interval = default_interval_ms / 1000.0
    grouped: Dict[Tuple[RegisterType, int], List[RegisterMapping]] = {}
    for mapping in device_type.register_map:
        table, offset = _normalise(mapping.address, RegisterType.HOLDING)
        slave = mapping.slave_address if mapping.slave_address is not None else default_slave
        grouped.setdefault((table, slave), []).append(mapping.model_copy(update={"address": offset}))

    for (table, slave), mappings in grouped.items():
        mappings.sort(key=lambda m: m.address)
        current: List[RegisterMapping] = []
        block_start = block_end = 0
        for mapping in mappings:
            width = 1 if table.is_bit else register_count(mapping.data_type)
            last = mapping.address + width - 1
            if current and last - block_start < IMPLICIT_BLOCK_SPAN:
                current.append(mapping)
                block_end = max(block_end, last)
                continue
            if current:
                plans.append(ScanPlan(table, block_start, block_end - block_start + 1, slave, interval, current))
            current, block_start, block_end = [mapping], mapping.address, last
        if current:
            plans.append(ScanPlan(table, block_start, block_end - block_start + 1, slave, interval, current))
    return plans


class DevicePoller:
    """Polling loop for one device instance.

    Each tick flushes the writes queued by scripts, reads every scan block
    that is due, decodes it and publishes the merged values into the state
    store.  Transport failures are counted by the store and never leave the
    loop; reconnect timing is owned by the transport.
    """

    def __init__(
        self,
        device_type: DeviceType,
        instance: DeviceInstance,
        store: DeviceStateStore,
        *,
        settings: Optional[PollingSettings] = None,
        transport: Optional[BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.device_type = device_type
        self.instance = instance
        self.store = store
        self._settings = settings or PollingSettings()
        self.transport = transport or get_transport(device_type, instance, self._settings)
        self._clock = clock
        self.plans = [] if device_type.is_custom else build_scan_plans(
            device_type, instance, self._settings.default_interval_ms
        )
        self._feed_interval = self._settings.default_interval_ms / 1000.0
        self._pending: List[PendingWrite] = []
        self._pending_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop = False

    @property
    def key(self) -> str:
        return self.instance.id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def interval(self) -> float:
        if self.plans:
            return min(plan.interval_s for plan in self.plans)
        return self._feed_interval

    # ------------------------------------------------------------------
    # Writes (called from script worker threads)
    # ------------------------------------------------------------------
    def _write_target(self, mapping: RegisterMapping) -> Tuple[RegisterType, int, int]:
        info = address_mapping.normalize(mapping.address)
        table = info["register_type"]
        if table is None:
            for plan in self.plans:
                if any(m.name == mapping.name for m in plan.mappings):
                    table = plan.register_type
                    break
        table = table or RegisterType.HOLDING
        slave = mapping.slave_address if mapping.slave_address is not None else self.instance.slave_id
        return table, info["offset"], slave

    def enqueue_write(self, point: str, value: Any) -> None:
        """Validate and queue a point write for the next tick."""

        if self.device_type.is_custom:
            raise ValueError(f"device {self.key} is read-only")
        mapping = self.device_type.mapping(point)
        if mapping is None:
            raise ValueError(f"device {self.key} has no point {point!r}")
        table, offset, slave = self._write_target(mapping)
        if not table.writable:
            raise ValueError(f"point {point!r} lives in the read-only {table.value} table")
        words: List[Any] = [bool(value)] if table.is_bit else encode_words(value, mapping)
        with self._pending_lock:
            self._pending.append(PendingWrite(point, table, offset, words, slave))

    def pending_writes(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    async def flush_writes(self) -> None:
        """Send queued writes in order.

        On a transport failure the failed write and everything behind it go
        back to the head of the queue and the error propagates, so the tick
        counts as a failed poll.  A write that keeps failing is dropped after
        ``MAX_WRITE_ATTEMPTS``.
        """

        with self._pending_lock:
            pending, self._pending = self._pending, []
        for index, write in enumerate(pending):
            try:
                await self.transport.write(write.register_type, write.offset, write.values, write.slave)
            except TransportError as exc:
                write.attempts += 1
                remaining = pending[index:]
                if write.attempts >= MAX_WRITE_ATTEMPTS:
                    logger.warning(
                        "Dropping write of %s on %s after %d attempts: %s", write.point, self.key, write.attempts, exc
                    )
                    remaining = remaining[1:]
                else:
                    logger.warning("Write of %s on %s failed, kept in queue: %s", write.point, self.key, exc)
                with self._pending_lock:
                    self._pending[:0] = remaining
                raise
            logger.debug("Wrote %s on %s (%s@%s)", write.point, self.key, write.register_type.value, write.offset)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    async def _read_plan(self, plan: ScanPlan) -> Dict[str, Any]:
        words: List[Any] = []
        for offset, count in plan.chunks():
            words.extend(await self.transport.read_block(plan.register_type, offset, count, plan.slave))
        values, errors = decode_block(words, plan.offset, plan.mappings, bits=plan.register_type.is_bit)
        for name, reason in errors.items():
            logger.debug("Point %s of %s is stale: %s", name, self.key, reason)
        return values

    async def poll_once(self) -> Optional[bool]:
        """Run one tick.

        Returns ``True`` when every due read succeeded and ``False`` when the
        poll failed.  While the transport sits in its reconnect window the
        tick is skipped and ``None`` is returned: that is neither a poll nor a
        failure.
        """

        now = self._clock()
        if self.transport.retry_in() > 0:
            return None
        due = [plan for plan in self.plans if plan.next_due <= now]
        # a failed read waits for the next interval like a successful one
        for plan in due:
            plan.next_due = now + plan.interval_s
        try:
            await self.flush_writes()
            if self.device_type.is_custom:
                values = await self.transport.read_feed()
            elif not self.plans:
                # nothing mapped: a live connection is all we can check
                await self.transport.connect()
                values = {}
            else:
                values = {}
                if not due:
                    return True
                for plan in due:
                    values.update(await self._read_plan(plan))
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            self.store.record_failure(self.key, str(exc))
            return False
        except DecodeError as exc:
            logger.warning("Decode failure on %s: %s", self.key, exc)
            self.store.record_failure(self.key, str(exc))
            return False
        except Exception as exc:
            logger.exception("Unexpected error in poll loop for %s", self.key)
            self.store.record_failure(self.key, f"{type(exc).__name__}: {exc}")
            return False

        self.store.publish(self.key, values, timestamp=self._clock())
        return True

    def _next_delay(self) -> float:
        if self.plans:
            delay = min(plan.next_due for plan in self.plans) - self._clock()
        else:
            delay = self._feed_interval
        return max(delay, self.transport.retry_in(), 0.01)

    async def start(self) -> None:
        if self.running:
            return
        self._stop = False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=f"poller-{self.key}")

    async def stop(self) -> None:
        """Ask the loop to exit and wait for the in-flight I/O to complete."""

        self._stop = True
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            try:
                await task
            except Exception:
                logger.exception("Error while waiting for poller %s to stop", self.key)
        await self.transport.disconnect()

    async def _run_loop(self) -> None:
        logger.info("Poller starting for %s (every %.2fs)", self.key, self.interval())
        while not self._stop:
            await self.poll_once()
            if self._stop:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._next_delay())
            except asyncio.TimeoutError:
                pass
        logger.info("Poller stopped for %s", self.key)


class PollingManager:
    """Keeps one :class:`DevicePoller` per device instance id."""

    def __init__(
        self,
        store: DeviceStateStore,
        *,
        settings: Optional[PollingSettings] = None,
        poller_factory: Callable[..., DevicePoller] = DevicePoller,
    ):
        self.store = store
        self._settings = settings or PollingSettings()
        self._poller_factory = poller_factory
        self._pollers: Dict[str, DevicePoller] = {}
        self._lock = asyncio.Lock()

    async def add_device(self, device_type: DeviceType, instance: DeviceInstance) -> DevicePoller:
        async with self._lock:
            if instance.id in self._pollers:
                logger.info("Device already managed: %s", instance.id)
                return self._pollers[instance.id]
            poller = self._poller_factory(device_type, instance, self.store, settings=self._settings)
            self.store.register_device(instance, device_type)
            self.store.attach_writer(instance.id, poller.enqueue_write)
            self._pollers[instance.id] = poller
            if self._settings.enabled:
                await poller.start()
            else:
                logger.info("Polling disabled by settings; not starting %s", instance.id)
            logger.info("Added device poller %s", instance.id)
            return poller

    async def remove_device(self, device_id: str) -> bool:
        async with self._lock:
            poller = self._pollers.pop(device_id, None)
        if poller is None:
            return False
        await poller.stop()
        self.store.unregister_device(device_id)
        logger.info("Removed device poller %s", device_id)
        return True

    def get(self, device_id: str) -> Optional[DevicePoller]:
        return self._pollers.get(device_id)

    def pollers(self) -> List[DevicePoller]:
        return list(self._pollers.values())

    async def shutdown(self) -> None:
        async with self._lock:
            pollers = list(self._pollers.values())
            self._pollers.clear()
        await asyncio.gather(*(poller.stop() for poller in pollers), return_exceptions=True)
        logger.info("Polling manager shutdown complete")


__all__ = ["DevicePoller", "PollingManager", "ScanPlan", "build_scan_plans"]
