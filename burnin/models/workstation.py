"""Workstations, their device pairings and the runs executed on them."""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pydantic import Field

from burnin.models.device import FrozenModel
from burnin.models.process import END, FAIL, PAUSE, SUCCESS, AgingProcess

MAX_LOG_ENTRIES = 5000


class WorkstationConfig(FrozenModel):
    """Static description of a workstation and the devices paired to it."""

    id: str
    name: str = ""
    pairings: Dict[str, str] = Field(default_factory=dict)


class RunStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    PASSED = "passed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_active(self) -> bool:
        return self in (RunStatus.RUNNING, RunStatus.PAUSED)


def status_for_state(state: str) -> Optional[RunStatus]:
    """Run status implied by entering ``state`` (``None`` keeps it)."""

    if state == PAUSE:
        return RunStatus.PAUSED
    if state == FAIL:
        return RunStatus.FAILED
    if state in (SUCCESS, END):
        return RunStatus.PASSED
    return None


@dataclass
class LogEntry:
    timestamp: datetime
    message: str
    level: str = "info"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }


@dataclass
class Run:
    """One execution of an aging process on a workstation."""

    workstation_id: str
    process: AgingProcess
    bindings: Dict[str, str]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    current_state: str = "start"
    status: RunStatus = RunStatus.RUNNING
    aging_time: float = 0.0
    state_time: float = 0.0
    paused_from: Optional[str] = None
    reported: bool = False
    log: Deque[LogEntry] = field(default_factory=lambda: deque(maxlen=MAX_LOG_ENTRIES))

    @property
    def finished(self) -> bool:
        return not self.status.is_active

    def append_log(self, message: str, level: str = "info") -> LogEntry:
        entry = LogEntry(timestamp=datetime.now(timezone.utc), message=message, level=level)
        self.log.append(entry)
        return entry

    def log_entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        entries = list(self.log)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [entry.as_dict() for entry in entries]

    def summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.id,
            "workstation_id": self.workstation_id,
            "process_id": self.process.id,
            "process_name": self.process.name,
            "state": self.current_state,
            "status": self.status.value,
            "aging_time": round(self.aging_time, 3),
            "state_time": round(self.state_time, 3),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }


__all__ = [
    "LogEntry",
    "Run",
    "RunStatus",
    "WorkstationConfig",
    "status_for_state",
]
