"""
Storage for migrations and slice records.

All status writes are compare-and-set::

    UPDATE trickle_migrations SET status = ?, ... WHERE id = ? AND status = ?

so a writer that lost a race (another scheduler claimed the migration, an
operator cancelled it) gets a :class:`StateTransitionError` instead of
silently overwriting newer state. Every write is validated against the
transition table first; a rejected write leaves the row untouched.

Example:
    >>> repo = MigrationRepository(conn)
    >>> migration, created = repo.create(name="backfill_column", arguments={"table_name": "users"},
    ...                                  status=MigrationStatus.PENDING, max_attempts=5)
    >>> repo.transition(migration.id, MigrationStatus.ENQUEUED)
    Migration(id=1, ..., status=<MigrationStatus.ENQUEUED: 'enqueued'>, ...)

Tags:
    repository, persistence, compare-and-set, trickle
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from trickle.core.dialect import Dialect
from trickle.core.errors import MigrationNotFoundError, StateTransitionError
from trickle.core.protocols import Connection
from trickle.core.repository import BaseRepository
from trickle.core.timestamps import to_iso8601, utc_now
from trickle.engine.models import Migration, MigrationKind, SliceRecord, canonical_arguments
from trickle.engine.status import (
    STOP_INTENTS,
    MigrationStatus,
    SliceStatus,
    validate_slice_transition,
    validate_transition,
)

logger = logging.getLogger(__name__)

_INSERT_COLUMNS = [
    "name",
    "arguments",
    "shard",
    "kind",
    "parent_id",
    "composite",
    "status",
    "estimated_total",
    "max_attempts",
    "pacing_delay",
    "table_name",
    "connection_name",
    "created_at",
    "updated_at",
]

# Columns a status write may update alongside the status itself
_WRITABLE = frozenset({
    "cursor",
    "processed_count",
    "estimated_total",
    "attempts",
    "max_attempts",
    "error_kind",
    "error_message",
    "error_trace",
    "heartbeat_at",
    "started_at",
    "finished_at",
})

_PROGRESS_STATUSES = (MigrationStatus.RUNNING, *sorted(STOP_INTENTS, key=lambda s: s.value))


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso8601(value)
    return value


class MigrationRepository(BaseRepository):
    """CRUD and compare-and-set status writes for ``trickle_migrations``."""

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(conn, dialect)
        self.clock = clock

    # === Create / read ===

    def create(
        self,
        *,
        name: str,
        status: MigrationStatus,
        max_attempts: int,
        arguments: dict[str, Any] | None = None,
        shard: str | None = None,
        kind: MigrationKind = MigrationKind.DATA,
        parent_id: int | None = None,
        composite: bool = False,
        estimated_total: int | None = None,
        pacing_delay: float = 0.0,
        table_name: str | None = None,
        connection_name: str = "default",
    ) -> tuple[Migration, bool]:
        """Insert unless ``(name, arguments, shard)`` exists.

        Returns:
            ``(migration, created)``; ``created`` is False when an identical
            migration was already enqueued and is returned unchanged.
        """
        now = to_iso8601(self.clock())
        sql = self.dialect.insert_or_ignore("trickle_migrations", _INSERT_COLUMNS)
        cursor = self.execute(
            sql,
            (
                name,
                canonical_arguments(arguments),
                shard or "",
                kind.value,
                parent_id,
                1 if composite else 0,
                status.value,
                estimated_total,
                max_attempts,
                pacing_delay,
                table_name,
                connection_name,
                now,
                now,
            ),
        )
        self.commit()

        created = cursor.rowcount > 0
        migration = self.find(name, arguments, shard)
        if migration is None:  # pragma: no cover - row vanished between insert and select
            raise MigrationNotFoundError(-1)
        if created:
            logger.debug("Created migration %s (%s, shard=%s)", migration.id, name, shard)
        return migration, created

    def find(self, name: str, arguments: dict[str, Any] | None, shard: str | None) -> Migration | None:
        """Migration with this identity, if enqueued."""
        row = self.query_one(
            f"SELECT * FROM trickle_migrations WHERE name = {self.p()} "
            f"AND arguments = {self.p()} AND shard = {self.p()}",
            (name, canonical_arguments(arguments), shard or ""),
        )
        return Migration.from_row(row) if row else None

    def get(self, migration_id: int) -> Migration:
        row = self.query_one(
            f"SELECT * FROM trickle_migrations WHERE id = {self.p()}",
            (migration_id,),
        )
        if row is None:
            raise MigrationNotFoundError(migration_id)
        return Migration.from_row(row)

    def list_migrations(
        self,
        *,
        statuses: Iterable[MigrationStatus] | None = None,
        shard: str | None = None,
        include_composite: bool = True,
    ) -> list[Migration]:
        """Migrations in creation (FIFO) order."""
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({self.ph(len(values))})")
            params.extend(values)
        if shard is not None:
            clauses.append(f"shard = {self.p()}")
            params.append(shard)
        if not include_composite:
            clauses.append("composite = 0")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.query(
            f"SELECT * FROM trickle_migrations {where} ORDER BY created_at, id",
            tuple(params),
        )
        return [Migration.from_row(row) for row in rows]

    def children(self, parent_id: int) -> list[Migration]:
        rows = self.query(
            f"SELECT * FROM trickle_migrations WHERE parent_id = {self.p()} ORDER BY created_at, id",
            (parent_id,),
        )
        return [Migration.from_row(row) for row in rows]

    # === Writes ===

    def transition(
        self,
        migration_id: int,
        target: MigrationStatus,
        *,
        expected: MigrationStatus | None = None,
        **fields: Any,
    ) -> Migration:
        """Validated compare-and-set status write.

        Args:
            migration_id: Migration to update
            target: New status
            expected: Status the caller believes is stored; a mismatch is a stale write
            **fields: Extra columns to set (cursor, error fields, timestamps, ...)

        Raises:
            StateTransitionError: transition not in the table, or the stored
                status differs from ``expected`` / changed concurrently
        """
        unknown = set(fields) - _WRITABLE
        if unknown:
            raise ValueError(f"Not writable with a status change: {sorted(unknown)}")

        source = self.get(migration_id).status
        if expected is not None and source != expected:
            raise StateTransitionError(source, target, "MigrationStatus", reason=f"expected {expected.value}")
        validate_transition(source, target)

        assignments = {"status": target.value, "updated_at": to_iso8601(self.clock())}
        assignments.update({key: _encode(value) for key, value in fields.items()})
        set_clause = ", ".join(f"{column} = {self.p()}" for column in assignments)

        cursor = self.execute(
            f"UPDATE trickle_migrations SET {set_clause} WHERE id = {self.p()} AND status = {self.p()}",
            (*assignments.values(), migration_id, source.value),
        )
        self.commit()
        if cursor.rowcount == 0:
            raise StateTransitionError(source, target, "MigrationStatus", reason="status changed concurrently")

        logger.debug("Migration %s: %s -> %s", migration_id, source.value, target.value)
        return self.get(migration_id)

    def record_progress(self, migration_id: int, cursor_value: str, *, commit: bool = True) -> bool:
        """Persist a completed slice: new cursor, +1 processed, fresh heartbeat, attempts reset.

        Only applies while the migration is running (or has a stop intent).
        Returns False when the row was not in such a status.
        """
        now = to_iso8601(self.clock())
        statuses = [s.value for s in _PROGRESS_STATUSES]
        cursor = self.execute(
            f"""
            UPDATE trickle_migrations
            SET cursor = {self.p()}, processed_count = processed_count + 1, attempts = 0,
                heartbeat_at = {self.p()}, updated_at = {self.p()}
            WHERE id = {self.p()} AND status IN ({self.ph(len(statuses))})
            """,
            (cursor_value, now, now, migration_id, *statuses),
        )
        if commit:
            self.commit()
        return cursor.rowcount > 0

    def claim(self, migration: Migration, target: MigrationStatus) -> Migration | None:
        """Take *migration* for dispatch: set *target* and a fresh heartbeat.

        Compare-and-set on both status and heartbeat, so of two concurrent
        claimers only one wins. Returns the updated migration, or None if
        another writer got there first.
        """
        if target != migration.status:
            validate_transition(migration.status, target)

        now = to_iso8601(self.clock())
        if migration.heartbeat_at is None:
            heartbeat_clause = "heartbeat_at IS NULL"
            params: tuple = ()
        else:
            heartbeat_clause = f"heartbeat_at = {self.p()}"
            params = (to_iso8601(migration.heartbeat_at),)

        cursor = self.execute(
            f"""
            UPDATE trickle_migrations
            SET status = {self.p()}, heartbeat_at = {self.p()}, updated_at = {self.p()}
            WHERE id = {self.p()} AND status = {self.p()} AND {heartbeat_clause}
            """,
            (target.value, now, now, migration.id, migration.status.value, *params),
        )
        self.commit()
        if cursor.rowcount == 0:
            logger.debug("Lost claim race for migration %s", migration.id)
            return None
        return self.get(migration.id)

    def clear_heartbeat(self, migration_id: int, status: MigrationStatus) -> bool:
        """Drop the heartbeat without changing status; compare-and-set on *status*."""
        cursor = self.execute(
            f"UPDATE trickle_migrations SET heartbeat_at = NULL, updated_at = {self.p()} "
            f"WHERE id = {self.p()} AND status = {self.p()}",
            (to_iso8601(self.clock()), migration_id, status.value),
        )
        self.commit()
        return cursor.rowcount > 0


class SliceRepository(BaseRepository):
    """Durable per-slice records for bounded-range work."""

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(conn, dialect)
        self.clock = clock

    def find(self, migration_id: int, low: int, high: int) -> SliceRecord | None:
        row = self.query_one(
            f"SELECT * FROM trickle_migration_slices WHERE migration_id = {self.p()} "
            f"AND min_value = {self.p()} AND max_value = {self.p()}",
            (migration_id, low, high),
        )
        return SliceRecord.from_row(row) if row else None

    def get(self, slice_id: int) -> SliceRecord:
        row = self.query_one(
            f"SELECT * FROM trickle_migration_slices WHERE id = {self.p()}",
            (slice_id,),
        )
        if row is None:
            raise LookupError(f"Slice {slice_id} not found")
        return SliceRecord.from_row(row)

    def start(self, migration_id: int, low: int, high: int) -> SliceRecord:
        """Mark ``[low, high]`` running, creating the record on first attempt."""
        now = to_iso8601(self.clock())
        existing = self.find(migration_id, low, high)

        if existing is None:
            self.execute(
                f"""
                INSERT INTO trickle_migration_slices
                    (migration_id, min_value, max_value, status, attempts, created_at, started_at)
                VALUES ({self.ph(7)})
                """,
                (migration_id, low, high, SliceStatus.RUNNING.value, 1, now, now),
            )
            self.commit()
            record = self.find(migration_id, low, high)
            assert record is not None
            return record

        if existing.status == SliceStatus.RUNNING:
            # Left running by a crashed or abandoned executor
            logger.warning(
                "Slice [%s, %s] of migration %s re-run after an interrupted attempt",
                low, high, migration_id,
            )
        else:
            validate_slice_transition(existing.status, SliceStatus.RUNNING)

        self.execute(
            f"""
            UPDATE trickle_migration_slices
            SET status = {self.p()}, attempts = attempts + 1, started_at = {self.p()},
                finished_at = NULL, error_kind = NULL, error_message = NULL
            WHERE id = {self.p()}
            """,
            (SliceStatus.RUNNING.value, now, existing.id),
        )
        self.commit()
        return self.get(existing.id)

    def succeed(self, record: SliceRecord, *, commit: bool = True) -> None:
        self._finish(record, SliceStatus.SUCCEEDED, None, None, commit=commit)

    def fail(self, record: SliceRecord, error_kind: str, error_message: str) -> None:
        self._finish(record, SliceStatus.FAILED, error_kind, error_message)

    def _finish(
        self,
        record: SliceRecord,
        target: SliceStatus,
        error_kind: str | None,
        error_message: str | None,
        *,
        commit: bool = True,
    ) -> None:
        validate_slice_transition(record.status, target)
        cursor = self.execute(
            f"""
            UPDATE trickle_migration_slices
            SET status = {self.p()}, finished_at = {self.p()},
                error_kind = {self.p()}, error_message = {self.p()}
            WHERE id = {self.p()} AND status = {self.p()}
            """,
            (target.value, to_iso8601(self.clock()), error_kind, error_message, record.id, record.status.value),
        )
        if cursor.rowcount == 0:
            raise StateTransitionError(record.status, target, "SliceStatus", reason="status changed concurrently")
        if commit:
            self.commit()

    def for_migration(self, migration_id: int) -> list[SliceRecord]:
        rows = self.query(
            f"SELECT * FROM trickle_migration_slices WHERE migration_id = {self.p()} ORDER BY min_value",
            (migration_id,),
        )
        return [SliceRecord.from_row(row) for row in rows]


__all__ = ["MigrationRepository", "SliceRepository"]
