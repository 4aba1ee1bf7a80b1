"""Per-run aging process state machine.

One :class:`AgingStateMachine` drives one :class:`~burnin.models.workstation.Run`.
Every tick computes at most one :class:`PendingTransition` (global checks
first, then the current state's own logic) and applies it in a single step,
so the state never changes half-way through an evaluation.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from burnin.errors import ConflictError, NotRunningError, ScriptError
from burnin.models.process import (
    FAIL,
    PAUSE,
    RESERVED_STATES,
    START,
    TERMINAL_STATES,
    ProcessMode,
)
from burnin.models.workstation import Run, RunStatus, status_for_state
from burnin.runtime.script_engine import (
    ScriptEngine,
    SystemContext,
    SystemNamespace,
    TransitionRequest,
    build_bindings,
)
from burnin.services.device_state_store import DeviceStateStore
from burnin.utils.logs import logger

# tolerance for accumulated float tick counters
_EPSILON = 1e-9

TerminalHook = Callable[[Run], Union[Awaitable[None], None]]
TransitionHook = Callable[[Run, str, str], None]


class TransitionKind(str, Enum):
    NONE = "none"
    EXPLICIT = "explicit"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class PendingTransition:
    kind: TransitionKind = TransitionKind.NONE
    target: Optional[str] = None
    reason: str = ""

    @classmethod
    def explicit(cls, target: str, reason: str = "") -> "PendingTransition":
        return cls(TransitionKind.EXPLICIT, target, reason)

    @classmethod
    def timeout(cls, target: str, reason: str = "") -> "PendingTransition":
        return cls(TransitionKind.TIMEOUT, target, reason)

    @property
    def is_none(self) -> bool:
        return self.kind is TransitionKind.NONE


NO_TRANSITION = PendingTransition()


class AgingStateMachine:
    def __init__(
        self,
        run: Run,
        store: DeviceStateStore,
        engine: ScriptEngine,
        *,
        tick_interval_s: float = 1.0,
        script_timeout_ms: Optional[int] = None,
        record_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        on_terminal: Optional[TerminalHook] = None,
        on_transition: Optional[TransitionHook] = None,
    ):
        self.run = run
        self.store = store
        self.engine = engine
        self.tick_interval_s = tick_interval_s
        self.script_timeout_ms = script_timeout_ms
        self._on_terminal = on_terminal
        self._on_transition = on_transition
        self._context = SystemContext(
            workstation_id=run.workstation_id,
            session_id=run.id,
            process_name=run.process.name,
            state=run.current_state,
        )
        self.system = SystemNamespace(self._context, record_provider=record_provider)
        self._script_done = False
        self._last_check: Optional[float] = None
        self._report_owed = False

    @property
    def process(self):
        return self.run.process

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Compile every script and condition of the process up front."""

        for check in self.process.global_checks:
            if check.mode is ProcessMode.SCRIPT:
                self.engine.compile_script(check.script)
            else:
                self.engine.compile_condition(check.condition)
        for state in self.process.states:
            if state.mode is ProcessMode.SCRIPT:
                if state.script.strip():
                    self.engine.compile_script(state.script)
            else:
                for rule in state.conditions:
                    self.engine.compile_condition(rule.condition)

    # ------------------------------------------------------------------
    # Evaluation helpers
    # ------------------------------------------------------------------
    def _sync_context(self) -> None:
        self._context.aging_time = self.run.aging_time
        self._context.state_time = self.run.state_time
        self._context.state = self.run.current_state

    def _drain_script_log(self) -> None:
        for message in self.system.drain_messages():
            self.run.append_log(message, "script")

    def _condition_namespace(self) -> Dict[str, Any]:
        return build_bindings(self.run.bindings, self.store, self.system, TransitionRequest())

    def _successor(self) -> str:
        current = self.run.current_state
        if current == PAUSE and self.run.paused_from:
            current = self.run.paused_from
        return self.process.successor(current)

    def _checked(self, target: str) -> str:
        if not self.process.is_known_state(target):
            raise ScriptError(f"jump to unknown state {target!r}")
        return target

    async def _run_script(self, source: str) -> Optional[str]:
        transition = TransitionRequest()
        bindings = build_bindings(self.run.bindings, self.store, self.system, transition)
        await self.engine.run_script(source, bindings, timeout_ms=self.script_timeout_ms)
        target = transition.resolve(self._successor)
        return self._checked(target) if target else None

    async def _evaluate_global_checks(self) -> PendingTransition:
        for index, check in enumerate(self.process.global_checks):
            label = check.id or f"#{index + 1}"
            if check.mode is ProcessMode.CONDITION:
                if self.engine.evaluate_condition(check.condition, self._condition_namespace()):
                    return PendingTransition.explicit(
                        self._checked(check.jump_target), f"global check {label}"
                    )
                continue
            target = await self._run_script(check.script)
            if target:
                return PendingTransition.explicit(target, f"global check {label}")
        return NO_TRANSITION

    async def _evaluate_state(self) -> PendingTransition:
        run = self.run
        current = run.current_state
        if current == START:
            return PendingTransition.timeout(self._checked(self.process.initial_state), "process started")
        if current in RESERVED_STATES:
            return NO_TRANSITION

        state = self.process.state(current)
        if state is None:
            raise ScriptError(f"run is in unknown state {current!r}")
        if run.state_time + _EPSILON < state.delay_s:
            return NO_TRANSITION

        if state.mode is ProcessMode.SCRIPT:
            if self._script_done:
                return NO_TRANSITION
            self._script_done = True
            target = await self._run_script(state.script) if state.script.strip() else None
            if target:
                return PendingTransition.explicit(target, f"script of {state.name}")
            return PendingTransition.timeout(
                self._checked(state.jump_target or self.process.successor(state.name)),
                f"{state.name} completed",
            )

        if self._last_check is not None and run.state_time - self._last_check + _EPSILON < state.check_interval_s:
            return NO_TRANSITION
        self._last_check = run.state_time
        namespace = self._condition_namespace()
        for rule in state.conditions:
            if self.engine.evaluate_condition(rule.condition, namespace):
                return PendingTransition.explicit(
                    self._checked(rule.target), f"condition {rule.condition.strip()!r}"
                )
        return NO_TRANSITION

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _enter(self, target: str, reason: str = "") -> bool:
        """Move the run to ``target``; returns ``True`` when it is terminal."""

        run = self.run
        old = run.current_state
        if target == old:
            return False
        if target == PAUSE:
            run.paused_from = old
        elif old == PAUSE:
            run.paused_from = None

        run.current_state = target
        run.state_time = 0.0
        self._script_done = False
        self._last_check = None
        self._context.state = target
        run.status = status_for_state(target) or RunStatus.RUNNING
        suffix = f" ({reason})" if reason else ""
        run.append_log(f"{old} -> {target}{suffix}")
        logger.info("Workstation %s: %s -> %s%s", run.workstation_id, old, target, suffix)

        terminal = target in TERMINAL_STATES
        if terminal:
            run.end_time = datetime.now(timezone.utc)
            logger.process(
                "Run %s on workstation %s finished as %s", run.id, run.workstation_id, run.status.value
            )
        if self._on_transition is not None:
            try:
                self._on_transition(run, old, target)
            except Exception:
                logger.exception("Transition observer failed for run %s", run.id)
        return terminal

    def _claim_report(self) -> None:
        # the exactly-once flag flips together with the terminal transition
        run = self.run
        self._report_owed = not run.reported and self._on_terminal is not None
        run.reported = True

    async def deliver_report(self) -> None:
        """Call the terminal hook if a report is still owed.

        Runs at most once per run.  Callers holding a workstation lock should
        release it first: the hook may perform slow network I/O.
        """

        if not self._report_owed:
            return
        self._report_owed = False
        run = self.run
        try:
            result = self._on_terminal(run)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            run.append_log(f"MES report failed: {exc}", "error")
            logger.exception("Terminal hook failed for run %s", run.id)

    async def tick(self, *, deliver_report: bool = True) -> PendingTransition:
        """Run one scheduler tick and return the transition that was applied.

        With ``deliver_report=False`` a terminal transition only claims the
        report; the caller sends it later through :meth:`deliver_report`.
        """

        run = self.run
        if run.finished:
            return NO_TRANSITION

        self._sync_context()
        try:
            pending = await self._evaluate_global_checks()
            if pending.is_none and run.status is not RunStatus.PAUSED:
                pending = await self._evaluate_state()
        except ScriptError as exc:
            run.append_log(f"Script error in state {run.current_state}: {exc}", "error")
            logger.warning("Run %s failed on script error: %s", run.id, exc)
            pending = PendingTransition.explicit(FAIL, "script error")
        finally:
            self._drain_script_log()

        if not pending.is_none and self._enter(pending.target, pending.reason):
            self._claim_report()
            if deliver_report:
                await self.deliver_report()

        if run.status is RunStatus.RUNNING:
            run.aging_time += self.tick_interval_s
            run.state_time += self.tick_interval_s
        return pending

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------
    def pause(self) -> None:
        if self.run.finished:
            raise NotRunningError(f"run {self.run.id} is already finished")
        if self.run.status is RunStatus.PAUSED:
            raise ConflictError(f"workstation {self.run.workstation_id} is already paused")
        self._enter(PAUSE, "paused by operator")

    def resume(self) -> None:
        run = self.run
        if run.finished:
            raise NotRunningError(f"run {run.id} is already finished")
        if run.status is not RunStatus.PAUSED:
            raise ConflictError(f"workstation {run.workstation_id} is not paused")
        target = run.paused_from or self.process.initial_state
        self._enter(target, "resumed by operator")

    def stop(self, reason: str = "stopped by operator") -> None:
        run = self.run
        if run.finished:
            raise NotRunningError(f"run {run.id} is already finished")
        run.status = RunStatus.STOPPED
        run.end_time = datetime.now(timezone.utc)
        run.append_log(f"{run.current_state} -> stopped ({reason})")
        logger.process("Run %s on workstation %s stopped", run.id, run.workstation_id)
        if self._on_transition is not None:
            try:
                self._on_transition(run, run.current_state, "stopped")
            except Exception:
                logger.exception("Transition observer failed for run %s", run.id)


__all__ = [
    "AgingStateMachine",
    "NO_TRANSITION",
    "PendingTransition",
    "TransitionKind",
]
