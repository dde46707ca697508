from __future__ import annotations

import itertools
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class TimerHandle:
    deadline: float
    callback: Callable[[], None]
    interval: float | None = None
    seq: int = 0
    fired: int = 0
    cancelled: bool = False

    @property
    def repeating(self) -> bool:
        return self.interval is not None

    def cancel(self) -> None:
        self.cancelled = True


class SessionTimers:
    """Deadline-ordered timers driven explicitly from the owning session's loop.

    Nothing fires on a background thread: callbacks only run inside
    ``run_due``, so they are serialized with everything else the session does.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._handles: list[TimerHandle] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._arm(TimerHandle(self._clock() + delay, callback, seq=next(self._seq)))

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("repeating timer interval must be > 0")
        handle = TimerHandle(self._clock() + interval, callback, interval=interval, seq=next(self._seq))
        return self._arm(handle)

    def next_deadline(self) -> float | None:
        deadlines = [handle.deadline for handle in self._handles if not handle.cancelled]
        return min(deadlines, default=None)

    def time_until_next(self, now: float | None = None) -> float | None:
        deadline = self.next_deadline()
        if deadline is None:
            return None
        if now is None:
            now = self._clock()
        return max(deadline - now, 0.0)

    def run_due(self, now: float | None = None) -> int:
        if now is None:
            now = self._clock()
        fired = 0
        due = sorted(
            (handle for handle in self._handles if handle.deadline <= now),
            key=lambda handle: (handle.deadline, handle.seq),
        )
        for handle in due:
            # an earlier callback may have cancelled this one
            if handle.cancelled:
                continue
            handle.fired += 1
            fired += 1
            handle.callback()
            if handle.repeating and not handle.cancelled:
                while handle.deadline <= now:
                    handle.deadline += handle.interval
            else:
                handle.cancelled = True
        self._handles = [handle for handle in self._handles if not handle.cancelled]
        return fired

    def cancel_all(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

    @property
    def active(self) -> list[TimerHandle]:
        return [handle for handle in self._handles if not handle.cancelled]

    def _arm(self, handle: TimerHandle) -> TimerHandle:
        self._handles.append(handle)
        return handle


__all__ = ["SessionTimers", "TimerHandle"]
