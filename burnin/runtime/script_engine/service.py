"""Script engine service: compilation cache plus bounded execution."""

from __future__ import annotations

import asyncio
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Mapping, Optional

from burnin.errors import ScriptError
from burnin.runtime.script_engine.condition import ConditionProgram
from burnin.runtime.script_engine.sandbox import ScriptProgram, run_program
from burnin.utils.logs import logger

_CACHE_SIZE = 256
# extra wait on top of a script budget before the caller gives up
_GRACE_S = 0.1


class _ProgramCache:
    def __init__(self, factory, size: int = _CACHE_SIZE):
        self._factory = factory
        self._size = size
        self._items: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, source: str) -> Any:
        with self._lock:
            program = self._items.get(source)
            if program is not None:
                self._items.move_to_end(source)
                return program
        program = self._factory(source)
        with self._lock:
            self._items[source] = program
            while len(self._items) > self._size:
                self._items.popitem(last=False)
        return program


class ScriptEngine:
    """Evaluates process scripts and conditions inside the sandbox.

    Conditions are cheap and evaluated inline.  Scripts run on a private
    thread pool so a slow one never blocks the event loop; the sandbox
    deadline guarantees the worker thread is released shortly after the
    budget expires.
    """

    def __init__(self, *, timeout_ms: int = 200, max_workers: int = 8):
        self.timeout_ms = timeout_ms
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="script")
        self._scripts = _ProgramCache(ScriptProgram)
        self._conditions = _ProgramCache(ConditionProgram)

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------
    def compile_script(self, source: str) -> ScriptProgram:
        return self._scripts.get(source)

    def compile_condition(self, expression: str) -> ConditionProgram:
        return self._conditions.get(expression)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def evaluate_condition(self, expression: str, namespace: Mapping[str, Any]) -> bool:
        return self.compile_condition(expression).evaluate(namespace)

    def run_script_sync(
        self,
        source: str,
        bindings: Mapping[str, Any],
        *,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        program = self.compile_script(source)
        budget = (timeout_ms or self.timeout_ms) / 1000.0
        return run_program(program, bindings, timeout_s=budget)

    async def run_script(
        self,
        source: str,
        bindings: Mapping[str, Any],
        *,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Run ``source`` on the worker pool and await its result.

        The wait is bounded by the budget plus a short grace period: a
        script still running after that raises :class:`ScriptError` even if
        its worker thread has not returned yet.
        """

        budget_ms = timeout_ms or self.timeout_ms
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(
                self._executor,
                lambda: self.run_script_sync(source, bindings, timeout_ms=budget_ms),
            )
        except RuntimeError as exc:
            # executor already shut down
            raise ScriptError(f"script engine unavailable: {exc}", source=source) from exc
        try:
            return await asyncio.wait_for(future, timeout=budget_ms / 1000.0 + _GRACE_S)
        except asyncio.TimeoutError:
            logger.warning("Script still running %.0fms past its budget; abandoning it", _GRACE_S * 1000)
            raise ScriptError(f"script exceeded its {budget_ms:.0f}ms budget", source=source) from None

    def shutdown(self) -> None:
        logger.debug("Shutting down script engine workers")
        self._executor.shutdown(wait=False, cancel_futures=True)


__all__ = ["ScriptEngine"]
