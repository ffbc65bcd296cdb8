"""Result of one ``Runner.run`` call.

The Runner never signals through exceptions for expected situations; it
returns one of four values and the caller switches on it::

    match runner.run(migration):
        case Completed(finished=True):
            ...
        case Completed():
            ...  # more slices to go
        case Throttled():
            ...
        case Stopped(status=status):
            ...
        case Failed(error=error, terminal=terminal):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass

from trickle.core.errors import TrickleError
from trickle.engine.status import MigrationStatus


@dataclass(frozen=True, slots=True)
class Completed:
    """A slice was processed (or the domain was found exhausted)."""

    migration_id: int
    cursor: str | None
    finished: bool = False


@dataclass(frozen=True, slots=True)
class Stopped:
    """The migration is not runnable: paused, cancelled or otherwise settled."""

    migration_id: int
    status: MigrationStatus


@dataclass(frozen=True, slots=True)
class Throttled:
    """The throttle predicate asked the engine to back off."""

    migration_id: int


@dataclass(frozen=True, slots=True)
class Failed:
    """The slice raised; the error is already persisted."""

    migration_id: int
    error: TrickleError
    terminal: bool


Outcome = Completed | Stopped | Throttled | Failed

__all__ = ["Completed", "Stopped", "Throttled", "Failed", "Outcome"]
