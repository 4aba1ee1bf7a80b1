from __future__ import annotations

import asyncio
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Awaitable, Optional, TypeVar

from flask import Flask

from burnin.app.settings import AppSettings
from burnin.errors import ConfigError
from burnin.manager.device_polling_manager import PollingManager
from burnin.manager.workstation_supervisor import WorkstationSupervisor
from burnin.models.device import DeviceInstance
from burnin.repository.config_repository import ConfigRepository
from burnin.runtime.script_engine import ScriptEngine
from burnin.services.device_state_store import DeviceStateStore
from burnin.services.mes_reporter import MesReporter
from burnin.services.mqtt_service import MqttStatusPublisher
from burnin.utils.logs import logger

T = TypeVar("T")


class EngineRuntime:
    """Shared state of the engine: components plus the asyncio loop thread.

    Pollers and run workers live on one event loop running in a background
    thread; synchronous callers (Flask views, ``run.py``) hand coroutines to
    it with :meth:`submit`.
    """

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        repository: Optional[ConfigRepository] = None,
        *,
        mqtt: Optional[MqttStatusPublisher] = None,
    ):
        self.settings = settings or AppSettings()
        self.repository = repository or ConfigRepository()
        self.store = DeviceStateStore(offline_after_failures=self.settings.polling.offline_after_failures)
        self.engine = ScriptEngine(
            timeout_ms=self.settings.engine.script_timeout_ms,
            max_workers=self.settings.engine.script_workers,
        )
        self.polling = PollingManager(self.store, settings=self.settings.polling)
        self.mes_reporter = MesReporter(
            self.engine,
            self.store,
            settings=self.settings.mes,
            script_timeout_ms=self.settings.engine.mes_script_timeout_ms,
        )
        self.supervisor = WorkstationSupervisor(
            self.repository,
            self.store,
            self.engine,
            settings=self.settings,
            mes_reporter=self.mes_reporter,
        )
        self.mqtt = mqtt or MqttStatusPublisher(self.settings.mqtt)
        if self.mqtt.active:
            self.supervisor.subscribe(self.mqtt.on_supervisor_event)
            self.store.subscribe(self.mqtt.on_connectivity_change)

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Loop thread
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self.loop is not None and self.loop.is_running()

    def _loop_main(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self.loop = loop
        loop.call_soon(self._ready.set)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()
                logger.info("Engine event loop closed")

    def start(self) -> None:
        """Start the loop thread, the pollers of every configured device and MQTT."""

        with self._lock:
            if self._thread is not None:
                return
            self._ready.clear()
            self._thread = threading.Thread(target=self._loop_main, name="engine-loop", daemon=True)
            self._thread.start()
        if not self._ready.wait(timeout=5.0):
            raise RuntimeError("engine event loop did not start")

        logger.process("Starting engine with %d devices", len(self.repository.devices()))
        for instance in self.repository.devices():
            self.submit(self._add_poller(instance))
        self.mqtt.start()
        if self.mqtt.active:
            logger.process(
                "MQTT publishing enabled on %s:%s (base topic: %s)",
                self.settings.mqtt.host,
                self.settings.mqtt.port,
                self.settings.mqtt.base_topic,
            )
        else:
            logger.info("MQTT publishing disabled. Set MQTT__ENABLED=true to enable it.")

    def submit(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Run ``coro`` on the engine loop and wait for its result."""

        if not self.running:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise RuntimeError("engine runtime is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        wait = self.settings.command_timeout_s if timeout is None else timeout
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError:
            future.cancel()
            raise TimeoutError(f"engine command did not complete within {wait:.1f}s") from None

    def shutdown(self) -> None:
        if self._thread is None:
            return
        logger.process("Stopping engine")
        if self.running:
            try:
                self.submit(self._shutdown_async(), timeout=max(self.settings.command_timeout_s, 5.0))
            except Exception:
                logger.exception("Error while stopping engine tasks")
            self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5.0)
        self._thread = None
        self.loop = None
        self.engine.shutdown()
        self.mqtt.shutdown()

    async def _shutdown_async(self) -> None:
        await self.supervisor.shutdown()
        await self.polling.shutdown()

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------
    async def _add_poller(self, instance: DeviceInstance) -> None:
        device_type = self.repository.get_device_type(instance.device_type_id)
        await self.polling.add_device(device_type, instance)

    def add_device(self, data: Any) -> DeviceInstance:
        """Register a device instance and start polling it when the loop runs."""

        instance = self.repository.add_device(data)
        if self.running:
            self.submit(self._add_poller(instance))
        return instance

    def write_point(self, device_id: str, point: str, value: Any) -> None:
        if device_id not in self.store.device_ids():
            raise ConfigError(f"device {device_id!r} is not polled")
        try:
            self.store.set(device_id, point, value)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

    def device_status(self) -> list[dict[str, Any]]:
        return [self.store.status(device_id) for device_id in self.store.device_ids()]


def register_runtime(app: Flask, runtime: EngineRuntime) -> None:
    app.extensions["engine_runtime"] = runtime


def get_runtime(app: Flask) -> Optional[EngineRuntime]:
    runtime = app.extensions.get("engine_runtime")
    return runtime if isinstance(runtime, EngineRuntime) else None


__all__ = ["EngineRuntime", "get_runtime", "register_runtime"]
