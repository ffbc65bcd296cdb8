"""Periodic trigger that calls a tick function on a daemon thread.

The engine itself never loops; something outside calls ``Scheduler.tick``
on a timer. ``TickLoop`` is that something for single-process deployments.
Several processes (or hosts) may each run their own loop; the Scheduler's
advisory lock keeps them from double-dispatching.

Example:
    >>> loop = TickLoop(scheduler.tick, interval_seconds=10.0)
    >>> loop.start()
    >>> # ... later ...
    >>> loop.stop()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from trickle.core.timestamps import utc_now

logger = logging.getLogger(__name__)


class TickLoop:
    """Zero-dependency threading-based periodic trigger."""

    def __init__(self, tick: Callable[[], Any], interval_seconds: float = 10.0) -> None:
        self.tick = tick
        self.interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        """Start ticking in a daemon thread."""
        if self.is_running:
            logger.warning("TickLoop already started")
            return

        self._stop_event.clear()

        def _loop() -> None:
            logger.info("TickLoop started (interval=%ss)", self.interval)
            while not self._stop_event.wait(self.interval):
                with self._lock:
                    self._tick_count += 1
                    self._last_tick = utc_now()
                try:
                    self.tick()
                except Exception:
                    logger.exception("Tick failed")
            logger.info("TickLoop stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name="trickle-ticker")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop, waiting up to *timeout* seconds for the current tick."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Ticker thread did not stop cleanly")
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick


__all__ = ["TickLoop"]
