"""Objects exposed to process scripts and conditions.

Every run gets a fixed binding table: one :class:`DeviceHandle` per process
alias, the ``system`` namespace and the ``jumpstate``/``next`` control
primitives.  Nothing else from the host interpreter is reachable.  Only the
attributes listed in ``SCRIPT_ATTRIBUTES`` can be read from these objects.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

import requests

from burnin.errors import ScriptError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from burnin.services.device_state_store import DeviceStateStore


class TransitionRequest:
    """Pending transition recorded by ``jumpstate()``/``next()`` calls.

    The last call made during one evaluation wins.
    """

    NEXT = object()

    def __init__(self) -> None:
        self._target: Any = None
        self._lock = threading.Lock()

    def jumpstate(self, name: Any) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"jumpstate() expects a state name, got {name!r}")
        with self._lock:
            self._target = name.strip()

    def next(self) -> None:
        with self._lock:
            self._target = self.NEXT

    @property
    def requested(self) -> bool:
        return self._target is not None

    def resolve(self, successor: Callable[[], str]) -> Optional[str]:
        with self._lock:
            target = self._target
        if target is None:
            return None
        if target is self.NEXT:
            return successor()
        return target


class DeviceHandle:
    """Capability-restricted view of one device for scripts."""

    SCRIPT_ATTRIBUTES = frozenset(
        {"get", "set", "get_variables", "get_last_timestamp", "is_online", "alias"}
    )

    def __init__(self, alias: str, device_id: str, store: "DeviceStateStore"):
        self.alias = alias
        self._device_id = device_id
        self._store = store

    def get(self, point: str) -> Any:
        value, _ = self._store.get(self._device_id, str(point))
        return value

    def set(self, point: str, value: Any) -> bool:
        self._store.set(self._device_id, str(point), value)
        return True

    def get_variables(self) -> Dict[str, Any]:
        return self._store.snapshot(self._device_id)

    def get_last_timestamp(self) -> Optional[float]:
        stamp = self._store.last_update(self._device_id)
        return stamp.timestamp() if stamp else None

    def is_online(self) -> bool:
        return self._store.is_online(self._device_id)

    def read_point(self, name: str) -> Any:
        """Dotted access ``dev1.temperature`` reads a point."""
        return self.get(name)

    def __repr__(self) -> str:
        return f"<device {self.alias}>"


@dataclass
class SystemContext:
    """Mutable values the state machine exposes through ``system``."""

    workstation_id: str = ""
    session_id: str = ""
    process_name: str = ""
    aging_time: float = 0.0
    state_time: float = 0.0
    state: str = "start"


class SystemNamespace:
    """The ``system`` object visible to scripts."""

    SCRIPT_ATTRIBUTES = frozenset(
        {
            "aging_time",
            "state_time",
            "log",
            "get_state",
            "session_id",
            "workstation_id",
            "process_name",
            "record",
            "now",
        }
    )

    def __init__(
        self,
        context: SystemContext,
        *,
        record_provider: Optional[Callable[[], Mapping[str, Any]]] = None,
    ):
        self._context = context
        self._record_provider = record_provider
        self._messages: List[str] = []
        self._lock = threading.Lock()

    @property
    def aging_time(self) -> float:
        return self._context.aging_time

    @property
    def state_time(self) -> float:
        return self._context.state_time

    @property
    def session_id(self) -> str:
        return self._context.session_id

    @property
    def workstation_id(self) -> str:
        return self._context.workstation_id

    @property
    def process_name(self) -> str:
        return self._context.process_name

    @property
    def record(self) -> Mapping[str, Any]:
        if self._record_provider is None:
            return {"csv": "", "json": "{}"}
        return self._record_provider()

    def log(self, *parts: Any) -> None:
        text = " ".join(str(part) for part in parts)
        with self._lock:
            self._messages.append(text)

    def get_state(self) -> str:
        return self._context.state

    def now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def drain_messages(self) -> List[str]:
        with self._lock:
            messages, self._messages = self._messages, []
        return messages


class HttpResponse:
    SCRIPT_ATTRIBUTES = frozenset({"status_code", "text", "ok", "json"})

    def __init__(self, status_code: int, text: str):
        self.status_code = status_code
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        return json.loads(self.text or "null")


class HttpClient:
    """Minimal HTTP access for MES reporting scripts, backed by ``requests``."""

    SCRIPT_ATTRIBUTES = frozenset({"get", "post"})

    def __init__(self, *, default_timeout: float = 5.0, session: Optional[requests.Session] = None):
        self._default_timeout = default_timeout
        self._session = session or requests.Session()

    def _request(self, method: str, url: Any, **kwargs: Any) -> HttpResponse:
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ValueError(f"http.{method.lower()}() needs an http(s) URL, got {url!r}")
        timeout = kwargs.pop("timeout", None) or self._default_timeout
        allowed = {key: kwargs[key] for key in ("json", "data", "headers", "params") if key in kwargs}
        response = self._session.request(method, url, timeout=float(timeout), **allowed)
        return HttpResponse(response.status_code, response.text)

    def get(self, url: Any, **kwargs: Any) -> HttpResponse:
        return self._request("GET", url, **kwargs)

    def post(self, url: Any, **kwargs: Any) -> HttpResponse:
        return self._request("POST", url, **kwargs)


def build_bindings(
    aliases: Mapping[str, str],
    store: "DeviceStateStore",
    system: SystemNamespace,
    transition: TransitionRequest,
    *,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Assemble the binding table for one evaluation."""

    bindings: Dict[str, Any] = {}
    for alias, device_id in aliases.items():
        if not alias.isidentifier() or alias.startswith("_"):
            raise ScriptError(f"device alias {alias!r} is not a valid script name")
        bindings[alias] = DeviceHandle(alias, device_id, store)
    bindings["system"] = system
    bindings["jumpstate"] = transition.jumpstate
    bindings["next"] = transition.next
    if extra:
        bindings.update(extra)
    return bindings


__all__ = [
    "DeviceHandle",
    "HttpClient",
    "HttpResponse",
    "SystemContext",
    "SystemNamespace",
    "TransitionRequest",
    "build_bindings",
]
