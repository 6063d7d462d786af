"""Supervised background loop for recurring ledger jobs."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from loguru import logger


class PeriodicWorker:
    """Run ``task(stop_event)`` every ``interval`` seconds on a daemon thread.

    ``stop`` signals the loop and waits for the in-flight run to finish, so a
    batch that is mid-transaction commits or rolls back before the thread exits.
    """

    def __init__(
        self,
        name: str,
        task: Callable[[threading.Event], Any],
        interval: float,
        *,
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self._task = task
        self._interval = interval
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.runs = 0
        self.last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                logger.debug("Worker {} already running", self.name)
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
            self._thread.start()
        logger.info("Worker {} started (interval={}s)", self.name, self._interval)

    def stop(self, timeout: float | None = 30.0) -> bool:
        """Request shutdown; returns False when the thread is still alive after ``timeout``."""

        with self._lock:
            thread = self._thread
            self._stop_event.set()
        if thread is None:
            return True
        thread.join(timeout)
        stopped = not thread.is_alive()
        if stopped:
            logger.info("Worker {} stopped after {} runs", self.name, self.runs)
            with self._lock:
                self._thread = None
        else:
            logger.warning("Worker {} did not stop within {}s", self.name, timeout)
        return stopped

    def run_once(self) -> Any:
        try:
            return self._task(self._stop_event)
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            logger.exception("Worker {} run failed", self.name)
            return None
        finally:
            self.runs += 1

    def _loop(self) -> None:
        if not self._run_immediately and self._stop_event.wait(self._interval):
            return
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(self._interval):
                break

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.is_running,
            "runs": self.runs,
            "last_error": self.last_error,
        }


__all__ = ["PeriodicWorker"]
