"""
Work descriptors: the user-supplied definition of what a migration does.

Manifesto:
    The engine owns *when* and *how far*; a work descriptor owns *what*.
    A descriptor turns a persisted cursor into a lazy sequence of
    ``(item, cursor)`` pairs and knows how to process one item. Because the
    engine delivers each item at least once, ``process`` must be safe to
    re-run: prefer set-based updates (``SET flag = true``) over
    increment-based ones (``SET n = n + 1``).

Architecture:
    ::

        WorkDescriptor (ABC)
          produce_items(cursor) -> Iterator[(item, cursor)]
          process(item)
          estimate_count() -> int | None
          cursor_key(cursor)  -> optional ordering key for monotonicity checks
          around_process / after_* lifecycle hooks
              │
              ├── SequenceWorkDescriptor   index over an in-memory collection
              └── RangeWorkDescriptor      Slice items over [start, end],
                                           processed in sub-batches

Examples:
    >>> class Touch(SequenceWorkDescriptor):
    ...     def __init__(self, ids):
    ...         self.ids = ids
    ...     def collection(self):
    ...         return self.ids
    ...     def process(self, item):
    ...         touch_user(item)
    >>> list(Touch([10, 20, 30]).produce_items("0"))
    [(20, '1'), (30, '2')]

Tags:
    work-descriptor, abc, iteration, resumable, trickle
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Sequence
from typing import TYPE_CHECKING, Any

from trickle.engine.context import ExecutionContext
from trickle.engine.cursor import Slice, iter_slices

if TYPE_CHECKING:
    from trickle.core.settings import EngineSettings


class WorkDescriptor(ABC):
    """Base class for all work definitions.

    Subclasses receive the migration's arguments as keyword arguments.
    """

    #: Set by :meth:`prepare` before any other call
    context: ExecutionContext = ExecutionContext()
    sleep: Callable[[float], None] = staticmethod(time.sleep)

    def prepare(
        self,
        context: ExecutionContext,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> WorkDescriptor:
        """Bind execution context and engine settings; returns self."""
        self.context = context
        if sleep is not None:
            self.sleep = sleep
        return self

    def validate(self) -> None:
        """Raise ValidationError for bad arguments. Called at enqueue time."""

    @abstractmethod
    def produce_items(self, cursor: str | None) -> Iterator[tuple[Any, str]]:
        """Lazy sequence of ``(item, cursor)`` starting right after *cursor*.

        Must be restartable from any cursor value it previously emitted.
        """

    @abstractmethod
    def process(self, item: Any) -> None:
        """Process one item. Must tolerate being called twice for the same item."""

    def estimate_count(self) -> int | None:
        """Total number of items, or None when unknown."""
        return None

    def cursor_key(self, cursor: str) -> Any:
        """Ordering key for *cursor*, or None when cursors are opaque.

        When a key is returned, each new cursor must compare strictly
        greater than the persisted one or the migration fails.
        """
        return None

    def around_process(self, item: Any, call: Callable[[], None]) -> None:
        """Wrap processing of one item (timing, transactions, ...)."""
        call()

    # -- Lifecycle hooks -----------------------------------------------------

    def after_start(self) -> None:
        """First slice of a fresh migration is about to run."""

    def after_resume(self) -> None:
        """Running again after a pause, release or failure, from a persisted cursor."""

    def after_stop(self) -> None:
        """Migration was paused or cancelled."""

    def after_pause(self) -> None:
        pass

    def after_cancel(self) -> None:
        pass

    def after_complete(self) -> None:
        """Migration reached ``succeeded`` or ``cancelled``."""


class SequenceWorkDescriptor(WorkDescriptor):
    """Work over an indexable collection; the cursor is the last processed index."""

    @abstractmethod
    def collection(self) -> Sequence[Any]:
        ...

    def produce_items(self, cursor: str | None) -> Iterator[tuple[Any, str]]:
        items = self.collection()
        start = 0 if cursor is None else int(cursor) + 1
        for index in range(start, len(items)):
            yield items[index], str(index)

    def estimate_count(self) -> int | None:
        return len(self.collection())

    def cursor_key(self, cursor: str) -> int:
        return int(cursor)


class RangeWorkDescriptor(WorkDescriptor):
    """
    Bounded-range work: ``Slice`` items over an integer key domain.

    Each slice is ``batch_size`` keys wide and is processed in
    ``sub_batch_size`` chunks through :meth:`process_range`, sleeping
    ``sub_batch_pause_ms`` between chunks. The cursor is the upper bound of
    the last completed slice. Unset widths fall back to ``EngineSettings``.
    """

    def __init__(
        self,
        *,
        batch_size: int | None = None,
        sub_batch_size: int | None = None,
        sub_batch_pause_ms: int | None = None,
    ) -> None:
        self.batch_size = batch_size
        self.sub_batch_size = sub_batch_size
        self.sub_batch_pause_ms = sub_batch_pause_ms

    def prepare(
        self,
        context: ExecutionContext,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> WorkDescriptor:
        super().prepare(context, settings, sleep)
        # Subclasses that skip __init__ still get defaults
        batch = getattr(self, "batch_size", None)
        sub = getattr(self, "sub_batch_size", None)
        pause = getattr(self, "sub_batch_pause_ms", None)
        if settings is not None:
            batch = batch or settings.batch_size
            sub = sub or settings.sub_batch_size
            pause = settings.sub_batch_pause_ms if pause is None else pause
        self.batch_size = batch or 1_000
        self.sub_batch_size = min(sub or self.batch_size, self.batch_size)
        self.sub_batch_pause_ms = pause or 0
        return self

    @abstractmethod
    def bounds(self) -> tuple[int, int] | None:
        """``(start, end)`` of the key domain, or None when it is empty."""

    @abstractmethod
    def process_range(self, low: int, high: int) -> None:
        """Apply the work to keys in ``[low, high]``."""

    def produce_items(self, cursor: str | None) -> Iterator[tuple[Slice, str]]:
        bounds = self.bounds()
        if bounds is None:
            return
        start, end = bounds
        resume = None if cursor is None else int(cursor)
        for low, high in iter_slices(start, end, self.batch_size, resume):
            yield Slice(low, high, self.sub_batch_size, self.sub_batch_pause_ms), str(high)

    def process(self, item: Slice) -> None:
        for index, (low, high) in enumerate(item.sub_ranges()):
            if index and item.sub_batch_pause_ms:
                self.sleep(item.sub_batch_pause_ms / 1000)
            self.process_range(low, high)

    def estimate_count(self) -> int | None:
        """Number of slices the domain splits into."""
        bounds = self.bounds()
        if bounds is None:
            return 0
        start, end = bounds
        if end < start:
            return 0
        return math.ceil((end - start + 1) / self.batch_size)

    def cursor_key(self, cursor: str) -> int:
        return int(cursor)


__all__ = ["WorkDescriptor", "SequenceWorkDescriptor", "RangeWorkDescriptor"]
