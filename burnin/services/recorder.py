"""Time-series recording of device points during a run."""

from __future__ import annotations

import json
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from burnin.models.process import RecordingConfig
from burnin.services.device_state_store import DeviceStateStore

Sample = Tuple[datetime, Any]


class RunRecorder:
    """Samples the selected points of one run at a fixed interval.

    With ``record_all`` every point currently known for every bound device
    is sampled; otherwise the curated ``(alias, point)`` pairs, or, when none
    are listed, the points each bound device type marks as important.  Each
    series is bounded to ``max_samples`` entries, oldest dropped first.
    """

    def __init__(
        self,
        bindings: Mapping[str, str],
        store: DeviceStateStore,
        config: RecordingConfig,
        *,
        default_interval_s: float = 5.0,
        max_samples: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bindings = dict(bindings)
        self.store = store
        self.config = config
        self.interval_s = config.interval_s or default_interval_s
        self.max_samples = max_samples
        self._clock = clock
        self._series: Dict[str, Deque[Sample]] = {}
        self._next_due: Optional[float] = None
        self._lock = threading.Lock()

    @staticmethod
    def series_key(alias: str, point: str) -> str:
        return f"{alias}.{point}"

    def selection(self) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        if self.config.record_all:
            for alias, device_id in self.bindings.items():
                pairs.extend((alias, point) for point in sorted(self.store.snapshot(device_id)))
            return pairs
        if self.config.points:
            return [(alias, point) for alias, point in self.config.points if alias in self.bindings]
        for alias, device_id in self.bindings.items():
            device_type = self.store.device_type(device_id)
            if device_type is not None:
                pairs.extend((alias, point) for point in device_type.important_points())
        return pairs

    def maybe_sample(self) -> bool:
        """Sample when the interval has elapsed; the first call always samples."""

        now = self._clock()
        if self._next_due is not None and now < self._next_due:
            return False
        self._next_due = now + self.interval_s
        self.sample()
        return True

    def sample(self, timestamp: Optional[datetime] = None) -> int:
        stamp = timestamp or datetime.now(timezone.utc)
        count = 0
        snapshots: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            for alias, point in self.selection():
                device_id = self.bindings[alias]
                if device_id not in snapshots:
                    snapshots[device_id] = self.store.snapshot(device_id)
                if point not in snapshots[device_id]:
                    continue
                key = self.series_key(alias, point)
                series = self._series.get(key)
                if series is None:
                    series = self._series[key] = deque(maxlen=self.max_samples)
                series.append((stamp, snapshots[device_id][point]))
                count += 1
        return count

    # ------------------------------------------------------------------
    # Exports
    # ------------------------------------------------------------------
    def series(self) -> Dict[str, List[Tuple[str, Any]]]:
        with self._lock:
            return {
                key: [(stamp.isoformat(), value) for stamp, value in samples]
                for key, samples in self._series.items()
            }

    def latest(self) -> Dict[str, Any]:
        with self._lock:
            return {key: samples[-1][1] for key, samples in self._series.items() if samples}

    def to_dataframe(self) -> pd.DataFrame:
        """Wide frame: one row per sampling instant, one column per series."""

        with self._lock:
            rows = [
                {"timestamp": stamp, "series": key, "value": value}
                for key, samples in self._series.items()
                for stamp, value in samples
            ]
        if not rows:
            return pd.DataFrame(columns=["timestamp"]).set_index("timestamp")
        frame = pd.DataFrame(rows)
        wide = frame.pivot(index="timestamp", columns="series", values="value").sort_index()
        wide.columns.name = None
        return wide

    def to_csv(self) -> str:
        return self.to_dataframe().to_csv(date_format="%Y-%m-%dT%H:%M:%S.%f%z")

    def to_json(self) -> str:
        return json.dumps(self.series(), default=str)

    def exports(self) -> Dict[str, str]:
        """Views handed to MES scripts as ``system.record``."""
        return {"csv": self.to_csv(), "json": self.to_json()}


__all__ = ["RunRecorder"]
