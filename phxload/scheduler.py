from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

import websocket

from .config import ConnectionConfig, LoadOptions
from .metrics import VU_ERRORS, MetricSink
from .runner import VirtualUser
from .session import Connector

LOGGER = logging.getLogger("phxload.scheduler")


@dataclass
class RunStatistics:
    vus: int
    iterations: int
    started_at: float
    finished_at: float
    stragglers: int = 0

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)


class LoadScheduler:
    """Constant-VU executor: keeps ``vus`` users looping for the run duration."""

    def __init__(
        self,
        options: LoadOptions,
        config: ConnectionConfig,
        sink: MetricSink,
        connector: Connector = websocket.create_connection,
    ) -> None:
        self._options = options
        self._config = config
        self._sink = sink
        self._connector = connector
        self._stop_event = threading.Event()
        self.users: list[VirtualUser] = []

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def run(self) -> RunStatistics:
        self.users = [
            VirtualUser(
                vu_id=vu_id,
                config=self._config,
                sink=self._sink,
                connector=self._connector,
                pause_s=self._options.iteration_pause_s,
            )
            for vu_id in range(1, self._options.vus + 1)
        ]
        threads = [
            threading.Thread(
                target=self._vu_loop,
                args=(user,),
                name=f"phxload-vu-{user.vu_id}",
                daemon=True,
            )
            for user in self.users
        ]

        started_at = time.time()
        LOGGER.info(
            "Starting %d VU(s) for %.1fs against %s",
            self._options.vus,
            self._options.duration_s,
            self._config.base_url,
        )
        for thread in threads:
            thread.start()

        try:
            self._stop_event.wait(self._options.duration_s)
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted, stopping VUs")
        finally:
            self._stop_event.set()

        deadline = time.monotonic() + self._options.graceful_stop_s
        for thread in threads:
            thread.join(timeout=max(deadline - time.monotonic(), 0.0))
        stragglers = sum(1 for thread in threads if thread.is_alive())
        if stragglers:
            LOGGER.warning(
                "%d VU(s) did not stop within %.1fs graceful stop window",
                stragglers,
                self._options.graceful_stop_s,
            )

        finished_at = time.time()
        return RunStatistics(
            vus=self._options.vus,
            iterations=sum(user.iterations for user in self.users),
            started_at=started_at,
            finished_at=finished_at,
            stragglers=stragglers,
        )

    def stop(self) -> None:
        self._stop_event.set()

    def _vu_loop(self, user: VirtualUser) -> None:
        while not self._stop_event.is_set():
            try:
                user.run_iteration(self._stop_event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("VU %d iteration failed", user.vu_id)
                self._sink.add(VU_ERRORS)
                self._stop_event.wait(self._options.iteration_pause_s)


__all__ = ["LoadScheduler", "RunStatistics"]
