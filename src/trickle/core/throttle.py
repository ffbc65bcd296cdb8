"""Throttle: an external health predicate re-evaluated at a bounded interval.

When the predicate says the database is under load, the Runner returns
``Throttled`` instead of processing a slice. Throttling is not a failure:
it never consumes an attempt and never changes a migration's status.

The predicate is checked at most once per ``interval`` seconds (measured on
a monotonic clock); in between, the last answer is reused.

Example:
    >>> throttle = Throttle(lambda: replica_lag_seconds() > 30, interval=5.0)
    >>> throttle.throttled()
    False
"""

from __future__ import annotations

import time
from collections.abc import Callable

from trickle.core.logging import get_logger

logger = get_logger(__name__)

ThrottlePredicate = Callable[[], bool]


def never_throttle() -> bool:
    return False


class Throttle:
    """Caches a throttle predicate for ``interval`` seconds."""

    def __init__(
        self,
        predicate: ThrottlePredicate = never_throttle,
        interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.predicate = predicate
        self.interval = interval
        self.clock = clock
        self._checked_at: float | None = None
        self._state = False

    def throttled(self) -> bool:
        """Current throttle state, re-evaluating the predicate if due.

        A predicate that raises keeps the previous state.
        """
        now = self.clock()
        if self._checked_at is not None and now - self._checked_at < self.interval:
            return self._state

        self._checked_at = now
        try:
            self._state = bool(self.predicate())
        except Exception as e:
            logger.warning("throttle.predicate_error", error=str(e), keeping=self._state)
        return self._state

    def reset(self) -> None:
        """Force re-evaluation on the next call."""
        self._checked_at = None
        self._state = False


__all__ = ["Throttle", "ThrottlePredicate", "never_throttle"]
