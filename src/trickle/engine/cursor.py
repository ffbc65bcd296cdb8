"""
Cursor iteration over a closed, totally ordered integer domain.

Given ``[start, end]``, a slice width ``W`` and an optional resume cursor
``c`` (the upper bound of the last slice that was persisted):

- lower = ``c + 1`` if ``c`` is present, else ``start``
- upper = ``min(lower + W - 1, end)``
- ``lower > end`` means the domain is exhausted

The computation is pure, so asking again with the same stored cursor
always yields the same slice. That is what makes resuming after a crash
safe.

Example:
    >>> list(iter_slices(1, 10, 3))
    [(1, 3), (4, 6), (7, 9), (10, 10)]
    >>> next_slice(1, 10, 3, cursor=6)
    (7, 9)
    >>> next_slice(1, 10, 3, cursor=10) is None
    True
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass


def next_slice(start: int, end: int, width: int, cursor: int | None = None) -> tuple[int, int] | None:
    """Next ``(low, high)`` after *cursor*, or None when exhausted."""
    if width < 1:
        raise ValueError(f"Slice width must be >= 1, got {width}")

    low = start if cursor is None else max(cursor + 1, start)
    if low > end:
        return None
    return low, min(low + width - 1, end)


def iter_slices(start: int, end: int, width: int, cursor: int | None = None) -> Iterator[tuple[int, int]]:
    """All remaining slices after *cursor*, contiguous and non-overlapping."""
    bounds = next_slice(start, end, width, cursor)
    while bounds is not None:
        yield bounds
        bounds = next_slice(start, end, width, bounds[1])


@dataclass(frozen=True, slots=True)
class Slice:
    """A bounded sub-range ``[low, high]`` plus how to walk it.

    ``sub_batch_size`` rows are touched per statement, with
    ``sub_batch_pause_ms`` between statements.
    """

    low: int
    high: int
    sub_batch_size: int
    sub_batch_pause_ms: int = 0

    @property
    def size(self) -> int:
        return self.high - self.low + 1

    def sub_ranges(self) -> Iterator[tuple[int, int]]:
        return iter_slices(self.low, self.high, self.sub_batch_size)


__all__ = ["Slice", "next_slice", "iter_slices"]
