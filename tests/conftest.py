from __future__ import annotations

import collections
import threading
import time
from typing import Any, Callable, Iterable

import pytest
from websocket import WebSocketConnectionClosedException, WebSocketTimeoutException

from phxload.config import ConnectionConfig
from phxload.metrics import MetricSink

DIAL_DELAY_S = 0.0625
WALL_EPOCH = 1_700_000_000.0


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0.0)

    def wall(self) -> float:
        return WALL_EPOCH + self.now


class RealClock:
    def __call__(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(max(seconds, 0.0))

    def wall(self) -> float:
        return time.time()


class DeadlineStop:
    """Stop signal that trips once the fake clock passes a deadline."""

    def __init__(self, clock: FakeClock, deadline: float) -> None:
        self._clock = clock
        self._deadline = deadline

    def is_set(self) -> bool:
        return self._clock() >= self._deadline


class FakeTransport:
    """Stand-in for websocket.WebSocket with scripted inbound events.

    ``events`` holds ``(at, item)`` pairs where ``item`` is either an
    ``(opcode, data)`` frame or an exception to raise from ``recv_data``.
    """

    def __init__(
        self,
        clock: FakeClock | RealClock,
        status: int = 101,
        events: Iterable[tuple[float, Any]] = (),
        on_send: Callable[[str], None] | None = None,
        fail_sends_after: int | None = None,
        on_release: Callable[["FakeTransport"], None] | None = None,
    ) -> None:
        self.clock = clock
        self.status = status
        self.events = collections.deque(sorted(events, key=lambda event: event[0]))
        self.on_send = on_send
        self.fail_sends_after = fail_sends_after
        self.on_release = on_release
        self.sent: list[str] = []
        self.timeouts: list[float] = []
        self.timeout: float | None = None
        self.close_calls = 0
        self.shutdown_calls = 0
        self.connected = True
        self._released = False

    def getstatus(self) -> int:
        return self.status

    def settimeout(self, timeout: float) -> None:
        self.timeout = timeout
        self.timeouts.append(timeout)

    def send(self, payload: str) -> int:
        if not self.connected:
            raise WebSocketConnectionClosedException("socket is already closed.")
        if self.fail_sends_after is not None and len(self.sent) >= self.fail_sends_after:
            raise WebSocketConnectionClosedException("Connection to remote host was lost.")
        self.sent.append(payload)
        if self.on_send is not None:
            self.on_send(payload)
        return len(payload)

    def recv_data(self, control_frame: bool = False) -> tuple[int, bytes]:
        now = self.clock()
        timeout = self.timeout if self.timeout is not None else 0.25
        if self.events and self.events[0][0] <= now + timeout:
            at, item = self.events.popleft()
            self.clock.sleep(at - now)
            if isinstance(item, BaseException):
                raise item
            return item
        self.clock.sleep(timeout)
        raise WebSocketTimeoutException("timed out")

    def close(self, status: int = 1000, reason: bytes = b"", timeout: float = 3) -> None:
        self.close_calls += 1
        self._release()

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        self._release()

    def _release(self) -> None:
        self.connected = False
        if not self._released:
            self._released = True
            if self.on_release is not None:
                self.on_release(self)


class FakeConnector:
    """Records dial attempts and hands out transports from a factory."""

    def __init__(
        self,
        factory: Callable[[str], FakeTransport],
        clock: FakeClock | RealClock | None = None,
        dial_delay: float = DIAL_DELAY_S,
    ) -> None:
        self._factory = factory
        self._clock = clock
        self._dial_delay = dial_delay
        self._lock = threading.Lock()
        self.urls: list[str] = []
        self.transports: list[FakeTransport] = []

    def __call__(self, url: str, timeout: float | None = None) -> FakeTransport:
        with self._lock:
            self.urls.append(url)
        if self._clock is not None:
            self._clock.sleep(self._dial_delay)
        transport = self._factory(url)
        with self._lock:
            self.transports.append(transport)
        return transport


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink(clock: FakeClock) -> MetricSink:
    return MetricSink(clock=clock.wall)


@pytest.fixture
def config() -> ConnectionConfig:
    return ConnectionConfig(message_interval_ms=500, lifetime_ms=60_000)
