import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from burnin.app.settings import AppSettings
from burnin.errors import ConfigError, ConflictError, NotFoundError, NotRunningError, ScriptError
from burnin.models.workstation import Run, WorkstationConfig
from burnin.repository.config_repository import ConfigRepository
from burnin.runtime.script_engine import ScriptEngine
from burnin.services.device_state_store import DeviceStateStore
from burnin.services.mes_reporter import MesReporter
from burnin.services.recorder import RunRecorder
from burnin.services.state_machine import AgingStateMachine
from burnin.utils.logs import logger

Observer = Callable[[str, Dict[str, Any]], None]


class RunWorker:
    """Periodic tick loop of one run.

    The loop holds the workstation lock for the duration of a tick so
    operator commands never interleave with an evaluation.  Stopping only
    sets a flag: the loop exits at the next tick boundary.
    """

    def __init__(
        self,
        machine: AgingStateMachine,
        recorder: RunRecorder,
        lock: asyncio.Lock,
        *,
        tick_interval_s: float = 1.0,
    ):
        self.machine = machine
        self.recorder = recorder
        self.lock = lock
        self.tick_interval_s = tick_interval_s
        self._stop = False
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def run(self) -> Run:
        return self.machine.run

    def start(self) -> None:
        self._stop = False
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=f"run-{self.run.id}")

    def request_stop(self) -> None:
        self._stop = True
        if self._wake is not None:
            self._wake.set()

    async def join(self) -> None:
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except Exception:
            logger.exception("Run worker %s ended with an error", self.run.id)

    async def tick(self) -> None:
        async with self.lock:
            if self._stop or self.run.finished:
                return
            try:
                self.recorder.maybe_sample()
            except Exception:
                logger.exception("Recorder failed for run %s", self.run.id)
            await self.machine.tick(deliver_report=False)
            if self.run.finished:
                self.recorder.sample()
        # MES delivery can be slow; operator commands must not wait for it
        await self.machine.deliver_report()

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        logger.info("Run %s ticking every %.2fs", self.run.id, self.tick_interval_s)
        while not self._stop and not self.run.finished:
            try:
                await self.tick()
            except Exception:
                # tick() already contains script failures; anything else is a bug
                logger.exception("Unexpected error while ticking run %s", self.run.id)
            if self._stop or self.run.finished:
                break
            next_tick += self.tick_interval_s
            delay = max(next_tick - loop.time(), 0.0)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Run %s worker stopped (%s)", self.run.id, self.run.status.value)


@dataclass
class WorkstationSlot:
    config: WorkstationConfig
    history_limit: int = 50
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    worker: Optional[RunWorker] = None
    last_run: Optional[Run] = None
    last_recorder: Optional[RunRecorder] = None
    history: Deque[Dict[str, Any]] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.history_limit or None)

    @property
    def run(self) -> Optional[Run]:
        return self.worker.run if self.worker else self.last_run

    @property
    def active(self) -> bool:
        return self.worker is not None and not self.worker.run.finished

    @property
    def status(self) -> str:
        run = self.run
        return run.status.value if run else "idle"


class WorkstationSupervisor:
    """Owns the runs of every workstation and applies operator commands."""

    def __init__(
        self,
        repository: ConfigRepository,
        store: DeviceStateStore,
        engine: ScriptEngine,
        *,
        settings: Optional[AppSettings] = None,
        mes_reporter: Optional[MesReporter] = None,
    ):
        self.repository = repository
        self.store = store
        self.engine = engine
        self.settings = settings or AppSettings()
        self.mes_reporter = mes_reporter or MesReporter(
            engine,
            store,
            settings=self.settings.mes,
            script_timeout_ms=self.settings.engine.mes_script_timeout_ms,
        )
        self._slots: Dict[str, WorkstationSlot] = {}
        self._observers: List[Observer] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def _notify(self, event: str, payload: Dict[str, Any]) -> None:
        for observer in list(self._observers):
            try:
                observer(event, payload)
            except Exception:
                logger.exception("Supervisor observer failed on %s", event)

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------
    def _slot(self, workstation_id: str) -> WorkstationSlot:
        slot = self._slots.get(workstation_id)
        if slot is None:
            config = self.repository.get_workstation(workstation_id)
            slot = WorkstationSlot(config, history_limit=self.settings.engine.history_limit)
            self._slots[workstation_id] = slot
        return slot

    def _active_worker(self, slot: WorkstationSlot) -> RunWorker:
        if not slot.active:
            raise NotRunningError(f"workstation {slot.config.id} has no active run")
        return slot.worker

    def _archive(self, slot: WorkstationSlot) -> None:
        worker = slot.worker
        if worker is None:
            return
        slot.last_run = worker.run
        slot.last_recorder = worker.recorder
        slot.history.append(worker.run.summary())
        slot.worker = None

    def _on_transition(self, run: Run, old: str, new: str) -> None:
        self._notify("state_changed", {**run.summary(), "from": old, "to": new})

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def start(self, workstation_id: str, process_id: str) -> Run:
        slot = self._slot(workstation_id)
        async with slot.lock:
            if slot.active:
                raise ConflictError(f"workstation {workstation_id} already has an active run")

            process = self.repository.snapshot(process_id)
            bindings = self.repository.resolve_bindings(workstation_id, process)
            offline = sorted(alias for alias, device_id in bindings.items() if not self.store.is_online(device_id))
            if offline:
                raise ConfigError(
                    f"cannot start {process_id!r} on {workstation_id!r}: offline devices: {', '.join(offline)}"
                )

            run = Run(workstation_id=workstation_id, process=process, bindings=bindings)
            recorder = RunRecorder(
                bindings,
                self.store,
                process.recording,
                default_interval_s=self.settings.recorder.default_interval_s,
                max_samples=self.settings.recorder.max_samples_per_point,
            )
            machine = AgingStateMachine(
                run,
                self.store,
                self.engine,
                tick_interval_s=self.settings.engine.tick_interval_s,
                script_timeout_ms=self.settings.engine.script_timeout_ms,
                record_provider=recorder.exports,
                on_terminal=lambda finished: self.mes_reporter.report(finished, record_provider=recorder.exports),
                on_transition=self._on_transition,
            )
            try:
                machine.validate()
            except ScriptError as exc:
                raise ConfigError(f"process {process_id!r} has an invalid script: {exc}") from exc

            if slot.worker is not None:
                self._archive(slot)
            run.append_log(f"Run started with process {process.name!r}")
            worker = RunWorker(machine, recorder, slot.lock, tick_interval_s=self.settings.engine.tick_interval_s)
            slot.worker = worker
            worker.start()

        logger.process("Workstation %s started process %s (run %s)", workstation_id, process_id, run.id)
        self._notify("run_started", run.summary())
        return run

    async def pause(self, workstation_id: str) -> Run:
        slot = self._slot(workstation_id)
        async with slot.lock:
            worker = self._active_worker(slot)
            worker.machine.pause()
        self._notify("run_paused", worker.run.summary())
        return worker.run

    async def resume(self, workstation_id: str) -> Run:
        slot = self._slot(workstation_id)
        async with slot.lock:
            worker = self._active_worker(slot)
            worker.machine.resume()
        self._notify("run_resumed", worker.run.summary())
        return worker.run

    async def stop(self, workstation_id: str) -> Run:
        slot = self._slot(workstation_id)
        async with slot.lock:
            worker = self._active_worker(slot)
            worker.machine.stop()
            worker.request_stop()
        await worker.join()
        async with slot.lock:
            if slot.worker is worker:
                self._archive(slot)
        self._notify("run_stopped", worker.run.summary())
        return worker.run

    async def delete(self, workstation_id: str) -> None:
        slot = self._slot(workstation_id)
        async with slot.lock:
            if slot.active:
                raise ConflictError(f"workstation {workstation_id} is running; stop it first")
            self._slots.pop(workstation_id, None)
            self.repository.remove_workstation(workstation_id)
        logger.info("Workstation %s deleted", workstation_id)
        self._notify("workstation_deleted", {"workstation_id": workstation_id})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _reap(self, slot: WorkstationSlot) -> None:
        # finished runs are archived lazily once their worker is done
        if slot.worker is not None and slot.worker.run.finished:
            task = slot.worker._task
            if task is None or task.done():
                self._archive(slot)
                self._notify("run_finished", slot.last_run.summary())

    def status(self, workstation_id: str) -> Dict[str, Any]:
        slot = self._slot(workstation_id)
        self._reap(slot)
        run = slot.run
        online = {
            alias: self.store.is_online(device_id) for alias, device_id in slot.config.pairings.items()
        }
        return {
            "workstation_id": workstation_id,
            "name": slot.config.name or workstation_id,
            "status": slot.status,
            "active": slot.active,
            "run": run.summary() if run else None,
            "devices": online,
        }

    def list_workstations(self) -> List[Dict[str, Any]]:
        return [self.status(config.id) for config in self.repository.workstations()]

    def history(self, workstation_id: str) -> List[Dict[str, Any]]:
        slot = self._slot(workstation_id)
        self._reap(slot)
        return list(slot.history)

    def run_log(self, workstation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        run = self._slot(workstation_id).run
        if run is None:
            raise NotFoundError(f"workstation {workstation_id} has no run")
        return run.log_entries(limit)

    def recorder(self, workstation_id: str) -> RunRecorder:
        slot = self._slot(workstation_id)
        if slot.worker is not None:
            return slot.worker.recorder
        if slot.last_recorder is None:
            raise NotFoundError(f"workstation {workstation_id} has no recorded run")
        return slot.last_recorder

    def current_run(self, workstation_id: str) -> Optional[Run]:
        return self._slot(workstation_id).run

    async def shutdown(self) -> None:
        workers = [slot.worker for slot in self._slots.values() if slot.active]
        for worker in workers:
            async with worker.lock:
                if not worker.run.finished:
                    worker.machine.stop("engine shutdown")
                worker.request_stop()
        await asyncio.gather(*(worker.join() for worker in workers), return_exceptions=True)
        logger.info("Workstation supervisor shutdown complete")


__all__ = ["RunWorker", "WorkstationSlot", "WorkstationSupervisor"]
