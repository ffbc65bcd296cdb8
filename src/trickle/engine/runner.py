"""
Runner: executes exactly one slice of one migration.

Manifesto:
    A slice is the unit of progress and the unit of failure. The Runner
    advances a migration by one item, makes the new cursor durable, and
    turns anything the work raises into persisted state. It returns an
    :mod:`~trickle.engine.outcome` value; it never raises for business
    failures.

Architecture:
    ::

        run(migration)
          │
          ├─ 1. status is pausing/cancelling?  → paused/cancelled, hooks → Stopped
          │     status not runnable?           →                         Stopped
          │
          ├─ 2. throttle.throttled()?          → emit throttled           → Throttled
          │
          ├─ 3. ensure running (started / resumed / retried)
          │     next (item, cursor) from produce_items(persisted cursor)
          │       none left                    → succeeded, hooks          → Completed(finished)
          │     around_process(item, process)
          │     persist cursor, processed+1, heartbeat, attempts = 0
          │     pacing sleep                                               → Completed
          │
          └─ 4. step 3 raised
                attempts + 1 < max             → errored  ┐ error fields,  → Failed
                otherwise / non-retryable      → failed   ┘ error handler

Delivery is at-least-once: a crash after ``process`` returns but before the
cursor is persisted makes the next run process the same item again.

Tags:
    runner, slice, state-machine, error-handling, trickle
"""

from __future__ import annotations

import traceback
from collections.abc import Iterator
from typing import Any

from trickle.core.dialect import Dialect
from trickle.core.errors import (
    CursorRegressionError,
    ErrorContext,
    StateTransitionError,
    TerminalExecutionError,
    TransientExecutionError,
    TrickleError,
)
from trickle.core.events import COMPLETED, ERRORED, FAILED, RAN_SLICE, RETRIED, STARTED, STOPPED, THROTTLED
from trickle.core.logging import LogContext, get_logger
from trickle.core.protocols import Connection
from trickle.engine.aggregate import refresh_parent
from trickle.engine.config import EngineConfig
from trickle.engine.context import ExecutionContext
from trickle.engine.cursor import Slice
from trickle.engine.descriptor import WorkDescriptor
from trickle.engine.models import Migration, SliceRecord
from trickle.engine.outcome import Completed, Failed, Outcome, Stopped, Throttled
from trickle.engine.repository import MigrationRepository, SliceRepository
from trickle.engine.status import STOP_INTENTS, MigrationStatus

logger = get_logger(__name__)

_RUNNABLE = frozenset({
    MigrationStatus.PENDING,
    MigrationStatus.ENQUEUED,
    MigrationStatus.RUNNING,
    MigrationStatus.ERRORED,
})

_EXHAUSTED = object()


class Runner:
    """Runs one slice per :meth:`run` call."""

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.conn = conn
        self.migrations = MigrationRepository(conn, dialect, clock=self.config.clock)
        self.slices = SliceRepository(conn, dialect, clock=self.config.clock)
        self.dialect = self.migrations.dialect

    # === Public API ===

    def run(self, migration: Migration | int, context: ExecutionContext | None = None) -> Outcome:
        """Execute one slice of *migration* and report what happened.

        The migration is re-read from storage first; the passed object only
        identifies it.

        Raises:
            StateTransitionError: a status write lost a race with another writer
        """
        migration_id = migration if isinstance(migration, int) else migration.id
        migration = self.migrations.get(migration_id)
        context = context or self.config.context_for(migration, self.conn, self.dialect)

        with LogContext(migration_id=migration.id, migration=migration.name, shard=migration.shard):
            if migration.status in STOP_INTENTS:
                return self._stop(migration, context)
            if migration.status not in _RUNNABLE or migration.composite:
                return Stopped(migration.id, migration.status)

            if self.config.throttle.throttled():
                logger.info("runner.throttled")
                self.config.notifier.emit(THROTTLED, migration)
                return Throttled(migration.id)

            return self._run_slice(migration, context)

    def release(self, migration_id: int) -> Migration:
        """Hand a dispatched migration back to the scheduler.

        ``running`` goes back to ``enqueued``; the heartbeat is cleared so the
        next tick picks it up without waiting for the stuck timeout.
        """
        migration = self.migrations.get(migration_id)
        if migration.status == MigrationStatus.RUNNING:
            return self.migrations.transition(
                migration_id, MigrationStatus.ENQUEUED, expected=MigrationStatus.RUNNING, heartbeat_at=None
            )
        if migration.status == MigrationStatus.ENQUEUED and migration.heartbeat_at is not None:
            self.migrations.clear_heartbeat(migration_id, MigrationStatus.ENQUEUED)
            return self.migrations.get(migration_id)
        return migration

    # === Step 1: stop intents ===

    def _stop(self, migration: Migration, context: ExecutionContext) -> Stopped:
        now = self.config.clock()
        descriptor = self._descriptor_or_none(migration, context)

        if migration.status == MigrationStatus.PAUSING:
            migration = self.migrations.transition(
                migration.id, MigrationStatus.PAUSED, expected=MigrationStatus.PAUSING, heartbeat_at=None
            )
            hooks = ("after_pause", "after_stop")
        else:
            migration = self.migrations.transition(
                migration.id,
                MigrationStatus.CANCELLED,
                expected=MigrationStatus.CANCELLING,
                heartbeat_at=None,
                finished_at=now,
            )
            hooks = ("after_cancel", "after_complete", "after_stop")

        self._call_hooks(descriptor, *hooks)
        logger.info("runner.stopped", status=migration.status.value, cursor=migration.cursor)
        self.config.notifier.emit(STOPPED, migration, status=migration.status.value)
        self._refresh_parent(migration)
        return Stopped(migration.id, migration.status)

    # === Step 3: one slice ===

    def _run_slice(self, migration: Migration, context: ExecutionContext) -> Outcome:
        migration, phase = self._ensure_running(migration)

        descriptor: WorkDescriptor | None = None
        record: SliceRecord | None = None
        iterator: Iterator[tuple[Any, str]] | None = None
        try:
            descriptor = self.config.build_descriptor(migration, context)
            if phase == "started":
                descriptor.after_start()
            elif phase in ("resumed", "retried"):
                descriptor.after_resume()

            iterator = iter(descriptor.produce_items(migration.cursor))
            pair = next(iterator, _EXHAUSTED)
            if pair is _EXHAUSTED:
                return self._complete(migration, descriptor)

            item, new_cursor = pair
            previous = None if migration.cursor is None else descriptor.cursor_key(migration.cursor)
            if previous is not None and not descriptor.cursor_key(new_cursor) > previous:
                raise CursorRegressionError(migration.cursor, new_cursor)

            if isinstance(item, Slice):
                record = self.slices.start(migration.id, item.low, item.high)

            descriptor.around_process(item, lambda: descriptor.process(item))
            finished = next(iterator, _EXHAUSTED) is _EXHAUSTED
        except StateTransitionError:
            raise
        except Exception as e:
            return self._fail(migration, e, record)
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

        try:
            self._persist_progress(migration, new_cursor, record)
        except StateTransitionError:
            raise
        except Exception as e:
            return self._fail(migration, e, record)
        migration = self.migrations.get(migration.id)
        logger.debug("runner.ran_slice", cursor=new_cursor, processed=migration.processed_count)
        self.config.notifier.emit(RAN_SLICE, migration, cursor=new_cursor)

        if finished:
            return self._complete(migration, descriptor)

        if migration.pacing_delay > 0:
            self.config.sleep(migration.pacing_delay)
        return Completed(migration.id, new_cursor, finished=False)

    def _ensure_running(self, migration: Migration) -> tuple[Migration, str]:
        """Move a runnable migration to ``running``; report how it got there."""
        now = self.config.clock()
        first_start = migration.started_at is None
        status = migration.status

        if status == MigrationStatus.RUNNING:
            return migration, "continued"

        if status == MigrationStatus.PENDING:
            migration = self.migrations.transition(
                migration.id, MigrationStatus.ENQUEUED, expected=MigrationStatus.PENDING
            )

        fields: dict[str, Any] = {"heartbeat_at": now}
        if first_start:
            fields["started_at"] = now
        if status == MigrationStatus.ERRORED:
            fields.update(error_kind=None, error_message=None, error_trace=None)

        migration = self.migrations.transition(
            migration.id, MigrationStatus.RUNNING, expected=migration.status, **fields
        )
        self._refresh_parent(migration)

        if status == MigrationStatus.ERRORED:
            logger.info("runner.retried", attempts=migration.attempts)
            self.config.notifier.emit(RETRIED, migration, attempts=migration.attempts)
            return migration, "retried"
        if first_start:
            logger.info("runner.started")
            self.config.notifier.emit(STARTED, migration)
            return migration, "started"
        return migration, "resumed"

    def _persist_progress(self, migration: Migration, cursor: str, record: SliceRecord | None) -> None:
        """Slice record and cursor commit together."""
        try:
            if record is not None:
                self.slices.succeed(record, commit=False)
            recorded = self.migrations.record_progress(migration.id, cursor, commit=False)
        except Exception:
            self.conn.rollback()
            raise

        if recorded:
            self.conn.commit()
        else:
            self.conn.rollback()
            current = self.migrations.get(migration.id)
            raise StateTransitionError(
                current.status, MigrationStatus.RUNNING, "MigrationStatus",
                reason="progress write rejected, migration no longer running",
            )

    def _complete(self, migration: Migration, descriptor: WorkDescriptor) -> Completed:
        current = self.migrations.get(migration.id)
        migration = self.migrations.transition(
            migration.id,
            MigrationStatus.SUCCEEDED,
            expected=current.status,
            finished_at=self.config.clock(),
            heartbeat_at=None,
        )
        self._call_hooks(descriptor, "after_complete")
        logger.info("runner.completed", processed=migration.processed_count)
        self.config.notifier.emit(COMPLETED, migration)
        self._refresh_parent(migration)
        return Completed(migration.id, migration.cursor, finished=True)

    # === Step 4: failures ===

    def _fail(self, migration: Migration, exc: Exception, record: SliceRecord | None) -> Failed:
        current = self.migrations.get(migration.id)
        attempts = current.attempts + 1
        non_retryable = isinstance(exc, TrickleError) and not exc.retryable
        terminal = non_retryable or attempts >= current.max_attempts

        kind = type(exc).__name__
        message = str(exc)
        trace = self.config.clean_trace(traceback.format_exception(exc))

        if record is not None:
            self.slices.fail(record, kind, message)

        fields: dict[str, Any] = {
            "attempts": attempts,
            "error_kind": kind,
            "error_message": message,
            "error_trace": trace,
            "heartbeat_at": None,
        }
        if terminal:
            fields["finished_at"] = self.config.clock()
        target = MigrationStatus.FAILED if terminal else MigrationStatus.ERRORED
        migration = self.migrations.transition(migration.id, target, expected=current.status, **fields)

        error_cls = TerminalExecutionError if terminal else TransientExecutionError
        error = error_cls(
            f"{kind}: {message}",
            context=ErrorContext(
                migration_id=migration.id,
                name=migration.name,
                shard=migration.shard,
                cursor=migration.cursor,
            ),
            cause=exc,
        )

        logger.warning(
            "runner.slice_failed",
            error_kind=kind,
            error=message,
            attempts=attempts,
            max_attempts=migration.max_attempts,
            terminal=terminal,
        )
        self.config.notifier.emit(FAILED if terminal else ERRORED, migration, error_kind=kind)
        self._handle_error(error, migration)
        self._refresh_parent(migration)
        return Failed(migration.id, error, terminal)

    def _handle_error(self, error: TrickleError, migration: Migration) -> None:
        handler = self.config.error_handler
        if handler is None:
            return
        try:
            handler(error, migration)
        except Exception as e:
            logger.warning("runner.error_handler_failed", error=str(e))

    # === Helpers ===

    def _descriptor_or_none(self, migration: Migration, context: ExecutionContext) -> WorkDescriptor | None:
        try:
            return self.config.build_descriptor(migration, context)
        except Exception as e:
            logger.warning("runner.descriptor_unavailable", error=str(e))
            return None

    def _call_hooks(self, descriptor: WorkDescriptor | None, *names: str) -> None:
        """Run lifecycle hooks that fire after a status is already final."""
        if descriptor is None:
            return
        for name in names:
            try:
                getattr(descriptor, name)()
            except Exception as e:
                logger.warning("runner.hook_failed", hook=name, error=str(e))

    def _refresh_parent(self, migration: Migration) -> None:
        if migration.parent_id is not None:
            refresh_parent(self.migrations, migration.parent_id)


__all__ = ["Runner"]
