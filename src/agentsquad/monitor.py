"""Background status and diff polling on a worker pool."""

from __future__ import annotations

import logging as py_logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, TypeVar

from agentsquad.collection import InstanceCollection
from agentsquad.config import DEFAULT_POLL_WORKERS, DEFAULT_STATUS_INTERVAL_MS
from agentsquad.errors import AgentSquadError
from agentsquad.instance import Instance
from agentsquad.logging import Every

logger = py_logging.getLogger(__name__)

T = TypeVar("T")

FAILURE_LOG_INTERVAL = 60.0


@dataclass
class PollSummary:
    polled: int = 0
    updated: int = 0
    failed: int = 0


def _poll_instance(instance: Instance) -> bool:
    status_ok = instance.update_status()
    diff_ok = instance.update_diff_stats()
    return status_ok or diff_ok


class StatusMonitor:
    def __init__(
        self,
        collection: InstanceCollection,
        *,
        workers: int = DEFAULT_POLL_WORKERS,
        interval_ms: int = DEFAULT_STATUS_INTERVAL_MS,
        on_tick: Callable[[PollSummary], None] | None = None,
    ) -> None:
        self._collection = collection
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="agentsquad-poll")
        self._interval = interval_ms / 1000
        self._on_tick = on_tick
        self._stop = threading.Event()
        self._failure_log = Every(FAILURE_LOG_INTERVAL)
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        return self._executor.submit(fn, *args)

    def poll_all(self) -> PollSummary:
        """Poll every live instance once and wait for the results."""
        targets = [
            instance for instance in self._collection.instances() if instance.started and not instance.paused
        ]
        futures = {self._executor.submit(_poll_instance, instance): instance for instance in targets}
        wait(futures)
        summary = PollSummary(polled=len(targets))
        for future, instance in futures.items():
            try:
                updated = future.result()
            except AgentSquadError as exc:
                summary.failed += 1
                logger.warning("Poll failed title=%s: %s", instance.title, exc)
                continue
            if instance.last_poll_error is not None:
                summary.failed += 1
                if self._failure_log.should_log():
                    logger.warning("Poll failed title=%s: %s", instance.title, instance.last_poll_error)
            elif updated:
                summary.updated += 1
        logger.debug(
            "Poll pass polled=%s updated=%s failed=%s",
            summary.polled,
            summary.updated,
            summary.failed,
        )
        return summary

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                summary = self.poll_all()
            except RuntimeError:
                # Executor shut down underneath the loop.
                logger.debug("Poll loop stopping; executor closed")
                return
            if self._on_tick is not None:
                self._on_tick(summary)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="agentsquad-monitor", daemon=True)
        self._thread.start()
        logger.debug("Status monitor started interval=%ss", self._interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> StatusMonitor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
