"""Best-effort reporting of finished runs to the MES."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from burnin.app.settings import MesSettings
from burnin.errors import ScriptError
from burnin.models.workstation import Run
from burnin.runtime.script_engine import (
    HttpClient,
    ScriptEngine,
    SystemContext,
    SystemNamespace,
    TransitionRequest,
    build_bindings,
)
from burnin.services.device_state_store import DeviceStateStore
from burnin.utils.logs import logger


class MesReporter:
    """Sends one report per run when it reaches ``fail``, ``success`` or ``end``.

    A process may supply its own reporting script; it runs in the sandbox
    with the ``report`` payload and an ``http`` client bound.  Without a
    script the payload is POSTed as JSON to the configured endpoint.
    Failures are written to the run log and never touch the run state.
    """

    def __init__(
        self,
        engine: ScriptEngine,
        store: DeviceStateStore,
        *,
        settings: Optional[MesSettings] = None,
        script_timeout_ms: int = 10000,
        session: Optional[requests.Session] = None,
    ):
        self.engine = engine
        self.store = store
        self.settings = settings or MesSettings()
        self.script_timeout_ms = script_timeout_ms
        self._session = session or requests.Session()

    def build_payload(self, run: Run) -> Dict[str, Any]:
        measurements: Dict[str, Any] = {}
        for alias, device_id in run.bindings.items():
            for point, value in self.store.snapshot(device_id).items():
                measurements[f"{alias}.{point}"] = value
        stamp = run.end_time or datetime.now(timezone.utc)
        return {
            "workstation_id": run.workstation_id,
            "process_name": run.process.name,
            "result": run.current_state,
            "timestamp": stamp.isoformat(),
            "measurements": measurements,
        }

    def _post(self, url: str, payload: Dict[str, Any]) -> int:
        response = self._session.post(url, json=payload, timeout=self.settings.timeout_s)
        return response.status_code

    async def _report_http(self, run: Run, payload: Dict[str, Any]) -> bool:
        url = run.process.mes.url or self.settings.url
        if not url:
            run.append_log("MES report skipped: no endpoint configured", "warning")
            logger.warning("No MES endpoint configured; run %s not reported", run.id)
            return False
        loop = asyncio.get_running_loop()
        try:
            status = await loop.run_in_executor(None, self._post, url, payload)
        except requests.RequestException as exc:
            run.append_log(f"MES report failed: {exc}", "error")
            logger.warning("MES report for run %s failed: %s", run.id, exc)
            return False
        if status != 200:
            run.append_log(f"MES report rejected with HTTP {status}", "error")
            logger.warning("MES rejected run %s with HTTP %s", run.id, status)
            return False
        run.append_log("MES report delivered")
        return True

    async def _report_script(
        self,
        run: Run,
        payload: Dict[str, Any],
        record_provider: Optional[Callable[[], Mapping[str, Any]]],
    ) -> bool:
        context = SystemContext(
            workstation_id=run.workstation_id,
            session_id=run.id,
            process_name=run.process.name,
            aging_time=run.aging_time,
            state_time=run.state_time,
            state=run.current_state,
        )
        system = SystemNamespace(context, record_provider=record_provider)
        http = HttpClient(default_timeout=self.settings.timeout_s, session=self._session)
        bindings = build_bindings(
            run.bindings,
            self.store,
            system,
            TransitionRequest(),
            extra={"report": payload, "http": http, "requests": http},
        )
        try:
            await self.engine.run_script(run.process.mes.script, bindings, timeout_ms=self.script_timeout_ms)
        except ScriptError as exc:
            run.append_log(f"MES script failed: {exc}", "error")
            logger.warning("MES script for run %s failed: %s", run.id, exc)
            return False
        finally:
            for message in system.drain_messages():
                run.append_log(message, "script")
        run.append_log("MES script completed")
        return True

    async def report(
        self,
        run: Run,
        *,
        record_provider: Optional[Callable[[], Mapping[str, Any]]] = None,
    ) -> bool:
        if not (self.settings.enabled and run.process.mes.enabled):
            logger.debug("MES reporting disabled for run %s", run.id)
            return False
        payload = self.build_payload(run)
        logger.process("Reporting run %s (%s) to MES", run.id, payload["result"])
        if run.process.mes.script.strip():
            return await self._report_script(run, payload, record_provider)
        return await self._report_http(run, payload)


__all__ = ["MesReporter"]
