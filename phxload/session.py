from __future__ import annotations

import contextlib
import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import websocket
from websocket import (
    ABNF,
    WebSocketBadStatusException,
    WebSocketConnectionClosedException,
    WebSocketException,
    WebSocketTimeoutException,
)

from .config import ConnectionConfig
from .metrics import (
    DIAL_TIME,
    MESSAGES_RECEIVED,
    MESSAGES_SENT,
    SESSION_DURATION,
    SESSIONS,
    MetricSink,
)
from .protocol import PhoenixMessage, join_message, ping_message
from .timers import SessionTimers, TimerHandle

LOGGER = logging.getLogger("phxload.session")

SWITCHING_PROTOCOLS = 101
MIN_RECEIVE_TIMEOUT_S = 0.001

Connector = Callable[..., Any]


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class CloseReason(enum.Enum):
    LIFETIME = "lifetime"
    REMOTE = "remote"
    ERROR = "error"
    SHUTDOWN = "shutdown"
    CONNECT_FAILED = "connect_failed"
    BAD_STATUS = "bad_status"


@dataclass(frozen=True)
class SessionResult:
    vu: int
    url: str
    status: int | None
    reason: CloseReason | None
    dial_time_ms: float | None
    messages_sent: int
    messages_received: int
    error: str | None = None

    @property
    def upgraded(self) -> bool:
        return self.status == SWITCHING_PROTOCOLS


class ConnectionSession:
    """One WebSocket connection driven as an explicit state machine.

    ``run`` dials, then pumps timers and inbound frames in the calling thread
    until the session reaches ``CLOSED``. Every transition checks the current
    state under the session lock, so repeated or late events are no-ops.
    """

    def __init__(
        self,
        vu_id: int,
        url: str,
        config: ConnectionConfig,
        sink: MetricSink,
        connector: Connector = websocket.create_connection,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        logger: logging.Logger = LOGGER,
    ) -> None:
        self.vu_id = vu_id
        self.url = url
        self._config = config
        self._sink = sink
        self._connector = connector
        self._clock = clock
        self._wall_clock = wall_clock
        self._logger = logger

        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._state = SessionState.CONNECTING
        self._reason: CloseReason | None = None
        self._timers = SessionTimers(clock)
        self._transport: Any = None
        self._status: int | None = None
        self._started_at: float | None = None
        self._opened_at: float | None = None
        self._dial_time_ms: float | None = None
        self._error: str | None = None

        self.messages_sent = 0
        self.messages_received = 0
        self.ping_timer: TimerHandle | None = None
        self.lifetime_timer: TimerHandle | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def reason(self) -> CloseReason | None:
        return self._reason

    @property
    def timers(self) -> SessionTimers:
        return self._timers

    def run(self, stop_event: threading.Event | None = None) -> SessionResult:
        with self._lock:
            if self._started_at is not None:
                raise RuntimeError(f"session for VU {self.vu_id} has already been run")
            self._started_at = self._clock()

        try:
            transport = self._connector(self.url, timeout=self._config.connect_timeout_s)
        except WebSocketBadStatusException as exc:
            self._status = exc.status_code
            self._connect_failed(exc)
            return self.result()
        except (WebSocketException, OSError, ValueError) as exc:
            self._connect_failed(exc)
            return self.result()

        self._transport = transport
        self._status = transport.getstatus()
        if self._status != SWITCHING_PROTOCOLS:
            self._bad_status()
            return self.result()

        if stop_event is not None and stop_event.is_set():
            self._shutdown_before_open()
            return self.result()

        try:
            self._open()
            self._pump(stop_event)
        finally:
            with self._lock:
                if self._state is not SessionState.CLOSED:
                    self._finish(CloseReason.ERROR)
        return self.result()

    def close(self, reason: CloseReason = CloseReason.LIFETIME) -> bool:
        """Start a local close. Returns False if the session is already closing."""
        with self._lock:
            if self._state in (SessionState.CLOSING, SessionState.CLOSED):
                return False
            self._state = SessionState.CLOSING
            self._timers.cancel_all()
            if self._transport is not None:
                try:
                    self._transport.close(timeout=self._config.close_timeout_s)
                except (WebSocketException, OSError) as exc:
                    self._logger.debug("VU %d close handshake failed: %s", self.vu_id, exc)
            self._finish(reason)
            return True

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    def result(self) -> SessionResult:
        with self._lock:
            return SessionResult(
                vu=self.vu_id,
                url=self.url,
                status=self._status,
                reason=self._reason,
                dial_time_ms=self._dial_time_ms,
                messages_sent=self.messages_sent,
                messages_received=self.messages_received,
                error=self._error,
            )

    # transitions

    def _connect_failed(self, exc: BaseException) -> None:
        with self._lock:
            self._error = str(exc) or type(exc).__name__
            self._logger.error("VU %d connect failed: %s", self.vu_id, self._error)
            self._finish(CloseReason.CONNECT_FAILED)

    def _bad_status(self) -> None:
        with self._lock:
            self._error = f"unexpected handshake status {self._status}"
            self._logger.error("VU %d %s", self.vu_id, self._error)
            self._finish(CloseReason.BAD_STATUS)

    def _shutdown_before_open(self) -> None:
        with self._lock:
            if self._state is SessionState.CLOSED:
                return
            self._logger.debug("VU %d handshake finished after shutdown, not joining", self.vu_id)
            self._finish(CloseReason.SHUTDOWN)

    def _open(self) -> None:
        with self._lock:
            if self._state is not SessionState.CONNECTING:
                # closed by shutdown while the handshake was in flight
                self._finish(self._reason or CloseReason.SHUTDOWN)
                return
            now = self._clock()
            self._opened_at = now
            self._dial_time_ms = max(now - self._started_at, 0.0) * 1000.0
            self._state = SessionState.OPEN
            self._sink.record(DIAL_TIME, self._dial_time_ms, vu=self.vu_id)
            self._sink.add(SESSIONS)
            self._logger.info("VU %d connected", self.vu_id)

            if not self._send(join_message(self._config.topic)):
                return
            self.ping_timer = self._timers.call_every(
                self._config.message_interval_s, self._on_ping_timer
            )
            self.lifetime_timer = self._timers.call_later(
                self._config.lifetime_s, self._on_lifetime_timer
            )

    def _on_ping_timer(self) -> None:
        with self._lock:
            if self._state is not SessionState.OPEN:
                return
            ts_ms = int(self._wall_clock() * 1000)
            self._send(ping_message(self._config.topic, self._config.ping_event, self.vu_id, ts_ms))

    def _on_lifetime_timer(self) -> None:
        self.close(CloseReason.LIFETIME)

    def _on_message(self, data: str | bytes) -> None:
        with self._lock:
            if self._state is not SessionState.OPEN:
                return
            if isinstance(data, bytes):
                data = data.decode("utf-8", errors="replace")
            self.messages_received += 1
            self._sink.add(MESSAGES_RECEIVED)
            self._logger.info("VU %d got message: %s", self.vu_id, data)

    def _on_remote_close(self) -> None:
        with self._lock:
            if self._state in (SessionState.CLOSING, SessionState.CLOSED):
                return
            self._finish(CloseReason.REMOTE)

    def _on_error(self, exc: BaseException) -> None:
        with self._lock:
            if self._state in (SessionState.CLOSING, SessionState.CLOSED):
                return
            self._error = str(exc) or type(exc).__name__
            self._logger.error("VU %d error: %s", self.vu_id, self._error)
            self._finish(CloseReason.ERROR)

    def _finish(self, reason: CloseReason) -> None:
        self._timers.cancel_all()
        if self._transport is not None:
            with contextlib.suppress(OSError):
                self._transport.shutdown()
        self._reason = reason
        self._state = SessionState.CLOSED
        if self._opened_at is not None:
            duration_ms = max(self._clock() - self._opened_at, 0.0) * 1000.0
            self._sink.record(SESSION_DURATION, duration_ms, vu=self.vu_id)
            self._logger.info("VU %d closed", self.vu_id)
        self._closed.set()

    # event pump

    def _pump(self, stop_event: threading.Event | None) -> None:
        while self._state is SessionState.OPEN:
            if stop_event is not None and stop_event.is_set():
                self.close(CloseReason.SHUTDOWN)
                break
            now = self._clock()
            self._timers.run_due(now)
            if self._state is not SessionState.OPEN:
                break
            wait = self._config.poll_interval_s
            until_next = self._timers.time_until_next(now)
            if until_next is not None:
                wait = min(wait, until_next)
            self._receive(max(wait, MIN_RECEIVE_TIMEOUT_S))

    def _receive(self, timeout: float) -> None:
        self._transport.settimeout(timeout)
        try:
            opcode, data = self._transport.recv_data(control_frame=True)
        except WebSocketTimeoutException:
            return
        except WebSocketConnectionClosedException:
            self._on_remote_close()
            return
        except (WebSocketException, OSError) as exc:
            self._on_error(exc)
            return

        if opcode == ABNF.OPCODE_CLOSE:
            self._on_remote_close()
        elif opcode in (ABNF.OPCODE_TEXT, ABNF.OPCODE_BINARY):
            self._on_message(data)

    def _send(self, message: PhoenixMessage) -> bool:
        try:
            self._transport.send(message.encode())
        except (WebSocketException, OSError) as exc:
            self._on_error(exc)
            return False
        self.messages_sent += 1
        self._sink.add(MESSAGES_SENT)
        return True


__all__ = [
    "CloseReason",
    "ConnectionSession",
    "SessionResult",
    "SessionState",
]
