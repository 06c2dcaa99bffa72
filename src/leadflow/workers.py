from __future__ import annotations

import threading
from typing import Any, Callable

from .errors import StoreUnavailableError
from .incident import IncidentEngine
from .logging_utils import JsonlLogger


class PeriodicWorker:
    """Runs ``fn`` every ``interval_seconds`` on a daemon thread until stopped.

    A failing tick is logged and registered as an incident; the next tick still runs.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], Any],
        logger: JsonlLogger,
        incidents: IncidentEngine | None = None,
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.fn = fn
        self.logger = logger
        self.incidents = incidents
        self.run_immediately = run_immediately
        self.ticks = 0
        self.failures = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"worker-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        if not self.run_immediately and self._stop.wait(self.interval_seconds):
            return
        while True:
            self.run_once()
            if self._stop.wait(self.interval_seconds):
                return

    def run_once(self) -> bool:
        self.ticks += 1
        try:
            self.fn()
        except Exception as exc:
            self.failures += 1
            self.logger.write(
                "worker_tick_failed",
                {
                    "worker": self.name,
                    "error_type": type(exc).__name__,
                    "detail": str(exc)[:220],
                    "retryable": bool(getattr(exc, "retryable", False)),
                },
            )
            if self.incidents is not None:
                try:
                    self.incidents.record_failure(f"worker:{self.name}", exc, self.logger)
                except StoreUnavailableError as incident_exc:
                    self.logger.write("incident_register_failed", {"worker": self.name, "detail": str(incident_exc)[:220]})
            return False
        return True
