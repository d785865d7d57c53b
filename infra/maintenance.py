"""
Background Maintenance
----------------------
Runs housekeeping callbacks on an independent periodic timer.

Used by API clients for rate limiter cleanup and metrics aggregation.
The loop runs on a daemon thread so it never competes with the event
loop, and callbacks only touch lock-guarded, non-awaiting structures.
"""

from typing import Callable, List, Optional
import logging
import threading


class PeriodicTask:
    """Calls each registered callback every `interval` seconds until stopped."""

    def __init__(self, name: str, interval: float, callbacks: Optional[List[Callable[[], None]]] = None):
        if interval <= 0:
            raise ValueError("maintenance interval must be positive")
        self.name = name
        self.interval = interval
        self._callbacks: List[Callable[[], None]] = list(callbacks or [])
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._logger = logging.getLogger(f"apiclient.maintenance.{name}")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def start(self) -> None:
        """Start the timer thread. No-op if already running."""
        if self.running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"apiclient-maintenance-{self.name}",
            daemon=True,
        )
        self._thread.start()
        self._logger.debug(f"Maintenance started (every {self.interval}s)")

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
            self._logger.debug("Maintenance stopped")

    def run_once(self) -> None:
        """Run every callback once; one failing callback does not stop the others."""
        for callback in self._callbacks:
            try:
                callback()
            except Exception:
                self._logger.exception(f"Maintenance callback {getattr(callback, '__name__', callback)} failed")

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.run_once()
