from __future__ import annotations

import collections
import threading
import time
from dataclasses import dataclass
from typing import Callable

import pandas as pd

DIAL_TIME = "ws_dial_time_ms"
SESSION_DURATION = "ws_session_duration_ms"
SESSIONS = "ws_sessions"
MESSAGES_SENT = "ws_msgs_sent"
MESSAGES_RECEIVED = "ws_msgs_received"
ITERATIONS = "iterations"
VU_ERRORS = "vu_errors"
STATUS_CHECK = "status is 101"

SAMPLE_COLUMNS = ["metric", "value", "vu", "timestamp"]


@dataclass(frozen=True)
class LatencySample:
    metric: str
    value: float
    vu: int | None
    timestamp: float


@dataclass
class CheckTally:
    passes: int = 0
    fails: int = 0

    @property
    def total(self) -> int:
        return self.passes + self.fails

    @property
    def pass_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.passes / self.total


class MetricSink:
    """Run-wide store for trends, counters and checks shared by every VU."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: list[LatencySample] = []
        self._trends: dict[str, list[float]] = collections.defaultdict(list)
        self._counters: collections.Counter[str] = collections.Counter()
        self._checks: dict[str, CheckTally] = {}

    def record(self, name: str, value: float, vu: int | None = None) -> None:
        sample = LatencySample(metric=name, value=float(value), vu=vu, timestamp=self._clock())
        with self._lock:
            self._samples.append(sample)
            self._trends[name].append(sample.value)

    def add(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def check(self, name: str, passed: bool) -> bool:
        with self._lock:
            tally = self._checks.setdefault(name, CheckTally())
            if passed:
                tally.passes += 1
            else:
                tally.fails += 1
        return passed

    def trend(self, name: str) -> list[float]:
        with self._lock:
            return list(self._trends.get(name, ()))

    def trends(self) -> dict[str, list[float]]:
        with self._lock:
            return {name: list(values) for name, values in self._trends.items()}

    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def checks(self) -> dict[str, CheckTally]:
        with self._lock:
            return {
                name: CheckTally(tally.passes, tally.fails)
                for name, tally in self._checks.items()
            }

    def samples(self) -> list[LatencySample]:
        with self._lock:
            return list(self._samples)

    def build_dataframe(self) -> pd.DataFrame:
        rows = [
            {
                "metric": sample.metric,
                "value": sample.value,
                "vu": sample.vu,
                "timestamp": sample.timestamp,
            }
            for sample in self.samples()
        ]
        if not rows:
            return pd.DataFrame(columns=SAMPLE_COLUMNS)
        return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)


__all__ = [
    "DIAL_TIME",
    "SESSION_DURATION",
    "SESSIONS",
    "MESSAGES_SENT",
    "MESSAGES_RECEIVED",
    "ITERATIONS",
    "VU_ERRORS",
    "STATUS_CHECK",
    "CheckTally",
    "LatencySample",
    "MetricSink",
]
