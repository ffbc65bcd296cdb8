"""
Executors drive a dispatched migration through repeated Runner calls.

WHY
───
The Runner does one slice per call and the Scheduler only decides *what*
runs. Something in between keeps calling the Runner until the migration
stops making progress or has had its fair share of time. That is
``MigrationExecutor``; the dispatchers wrap it behind
:class:`~trickle.core.protocols.DispatcherProtocol`.

ARCHITECTURE
────────────
::

    Scheduler.tick()
      └── dispatcher.dispatch(migration, context)
            ├── InlineDispatcher    ─ executor.execute() in the calling thread
            └── RecordingDispatcher ─ remembers the migration, runs nothing

    MigrationExecutor.execute()
      loop runner.run()
        Completed(finished=False) → again (until slices_per_dispatch)
        Throttled                 → release back to the scheduler
        anything else             → done

Releasing puts a ``running`` migration back to ``enqueued`` with no
heartbeat, so the next tick can pick it up straight away.
"""

from __future__ import annotations

from trickle.core.logging import get_logger
from trickle.engine.context import ExecutionContext
from trickle.engine.models import Migration
from trickle.engine.outcome import Completed, Outcome, Throttled
from trickle.engine.runner import Runner

logger = get_logger(__name__)


class MigrationExecutor:
    """Runs slices of one migration until it stops, fails or yields."""

    def __init__(self, runner: Runner, slices_per_dispatch: int | None = None) -> None:
        if slices_per_dispatch is not None and slices_per_dispatch < 1:
            raise ValueError(f"slices_per_dispatch must be >= 1, got {slices_per_dispatch}")
        self.runner = runner
        self.slices_per_dispatch = slices_per_dispatch

    def execute(self, migration: Migration, context: ExecutionContext | None = None) -> Outcome:
        slices = 0
        while True:
            outcome = self.runner.run(migration.id, context)
            match outcome:
                case Completed(finished=False):
                    slices += 1
                    if self.slices_per_dispatch is not None and slices >= self.slices_per_dispatch:
                        logger.debug("executor.yielding", migration_id=migration.id, slices=slices)
                        self.runner.release(migration.id)
                        return outcome
                case Throttled():
                    self.runner.release(migration.id)
                    return outcome
                case _:
                    return outcome


class InlineDispatcher:
    """Executes dispatched migrations synchronously in the caller's thread."""

    def __init__(self, executor: MigrationExecutor) -> None:
        self.executor = executor

    def dispatch(self, migration: Migration, context: ExecutionContext) -> Outcome | None:
        return self.executor.execute(migration, context)


class RecordingDispatcher:
    """No-op dispatcher for dry runs and tests.

    Records what the Scheduler would have run; claimed migrations stay
    ``enqueued`` with a live heartbeat until they time out.

    Example:
        >>> dispatcher = RecordingDispatcher()
        >>> scheduler = Scheduler(conn, config=config, dispatcher=dispatcher)
        >>> scheduler.tick()
        >>> [m.id for m in dispatcher.dispatched]
        [1, 2]
    """

    def __init__(self) -> None:
        self.dispatched: list[Migration] = []

    def dispatch(self, migration: Migration, context: ExecutionContext) -> Outcome | None:
        self.dispatched.append(migration)
        return None

    def clear(self) -> None:
        """Forget recorded dispatches (for testing)."""
        self.dispatched.clear()


__all__ = ["MigrationExecutor", "InlineDispatcher", "RecordingDispatcher"]
