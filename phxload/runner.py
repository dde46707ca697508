from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import websocket

from .config import ConnectionConfig
from .metrics import ITERATIONS, STATUS_CHECK, MetricSink
from .session import ConnectionSession, Connector, SessionResult

LOGGER = logging.getLogger("phxload.runner")


class VirtualUser:
    """A simulated client: one identity, at most one live session at a time."""

    def __init__(
        self,
        vu_id: int,
        config: ConnectionConfig,
        sink: MetricSink,
        connector: Connector = websocket.create_connection,
        pause_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.vu_id = vu_id
        self.url = config.url_for(vu_id)
        self._config = config
        self._sink = sink
        self._connector = connector
        self._pause_s = pause_s
        self._clock = clock
        self._wall_clock = wall_clock
        self._busy = threading.Lock()
        self.iterations = 0
        self.session: ConnectionSession | None = None

    def run_iteration(self, stop_event: threading.Event | None = None) -> SessionResult:
        if not self._busy.acquire(blocking=False):
            raise RuntimeError(f"VU {self.vu_id} already has an active session")
        try:
            session = ConnectionSession(
                vu_id=self.vu_id,
                url=self.url,
                config=self._config,
                sink=self._sink,
                connector=self._connector,
                clock=self._clock,
                wall_clock=self._wall_clock,
            )
            self.session = session
            result = session.run(stop_event)
        finally:
            self._busy.release()

        if not self._sink.check(STATUS_CHECK, result.upgraded):
            LOGGER.debug("VU %d check %r failed (status=%s)", self.vu_id, STATUS_CHECK, result.status)
        self._sink.add(ITERATIONS)
        self.iterations += 1

        if self._pause_s > 0:
            if stop_event is not None:
                stop_event.wait(self._pause_s)
            else:
                time.sleep(self._pause_s)
        return result


__all__ = ["VirtualUser"]
