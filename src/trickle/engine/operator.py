"""
Operator control surface: enqueue work and steer it by id.

Every call here is a validated, compare-and-set status write. Nothing
executes work; the Scheduler and Runner pick up whatever state the
Operator leaves behind.

Stop requests on a running migration are *intents* (``pausing``,
``cancelling``) that the Runner completes at its next slice boundary. A
migration that is not running is stopped immediately.

Operations addressed to a composite parent fan out to its children and
then re-aggregate the parent.

Example:
    >>> operator = Operator(conn, config=config)
    >>> migration = operator.enqueue("backfill_column", {"table_name": "users", "updates": {"active": True}})
    >>> operator.pause(migration.id)
    True
    >>> operator.resume(migration.id)
    True
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from trickle.core.dialect import Dialect
from trickle.core.errors import StateTransitionError, ValidationError
from trickle.core.logging import get_logger
from trickle.core.protocols import Connection
from trickle.engine.aggregate import aggregate_progress, refresh_parent
from trickle.engine.config import EngineConfig
from trickle.engine.models import Migration, MigrationKind, canonical_arguments
from trickle.engine.repository import MigrationRepository, SliceRepository
from trickle.engine.status import TERMINAL, MigrationStatus

logger = get_logger(__name__)

SCHEMA_CHANGE = "schema_change"


class Operator:
    """Enqueue, approve, pause, resume, cancel, retry and inspect migrations."""

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

    # === Enqueue ===

    def enqueue(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        shard: str | None = None,
        shards: Iterable[str] | None = None,
        delay: bool = False,
        max_attempts: int | None = None,
        pacing_delay: float | None = None,
        connection_name: str = "default",
    ) -> Migration:
        """Create a migration, or return the identical one already enqueued.

        ``shards`` creates a composite parent plus one child per shard;
        ``delay`` creates it ``delayed`` so it waits for :meth:`approve`.

        Raises:
            WorkDescriptorNotFoundError: nothing registered under *name*
            ValidationError: bad arguments, shards or limits
        """
        return self._enqueue(
            name,
            arguments,
            shard=shard,
            shards=shards,
            delay=delay,
            max_attempts=max_attempts,
            pacing_delay=pacing_delay,
            connection_name=connection_name,
        )

    def enqueue_schema_change(
        self,
        label: str,
        table_name: str,
        definition: str,
        *,
        shard: str | None = None,
        connection_name: str = "default",
        delay: bool = False,
        max_attempts: int | None = None,
    ) -> Migration:
        """Enqueue one DDL statement against *table_name*.

        Two schema changes on the same ``(table, shard, connection)`` never
        run at the same time.
        """
        if not label or not label.strip():
            raise ValidationError("Schema change needs a label", field="label", value=label)
        if not table_name or not table_name.strip():
            raise ValidationError("Schema change needs a table name", field="table_name", value=table_name)

        arguments = {"label": label, "table_name": table_name, "definition": definition}
        return self._enqueue(
            SCHEMA_CHANGE,
            arguments,
            shard=shard,
            delay=delay,
            max_attempts=max_attempts,
            connection_name=connection_name,
            kind=MigrationKind.SCHEMA,
            table_name=table_name,
        )

    def _enqueue(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        *,
        shard: str | None = None,
        shards: Iterable[str] | None = None,
        delay: bool = False,
        max_attempts: int | None = None,
        pacing_delay: float | None = None,
        connection_name: str = "default",
        kind: MigrationKind = MigrationKind.DATA,
        table_name: str | None = None,
    ) -> Migration:
        settings = self.config.settings
        arguments = self._check_arguments(name, arguments)
        max_attempts = settings.max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1", field="max_attempts", value=max_attempts)
        pacing_delay = settings.pacing_delay if pacing_delay is None else pacing_delay
        if pacing_delay < 0:
            raise ValidationError("pacing_delay must be >= 0", field="pacing_delay", value=pacing_delay)

        status = MigrationStatus.DELAYED if delay else MigrationStatus.PENDING
        common = dict(
            name=name,
            arguments=arguments,
            status=status,
            max_attempts=max_attempts,
            pacing_delay=pacing_delay,
            kind=kind,
            table_name=table_name,
            connection_name=connection_name,
        )

        if shards is None:
            existing = self.migrations.find(name, arguments, shard)
            if existing is not None and existing.composite:
                raise ValidationError(
                    f"'{name}' is already enqueued as sharded migration {existing.id}",
                    field="shards",
                    value=None,
                )
            estimate = self._prepare(name, arguments, shard, connection_name, status)
            migration, created = self.migrations.create(shard=shard, estimated_total=estimate, **common)
            self._log_enqueue(migration, created)
            return migration

        shard_list = list(shards)
        if shard is not None:
            raise ValidationError("Pass either shard or shards, not both", field="shard", value=shard)
        if not shard_list or any(not s for s in shard_list) or len(set(shard_list)) != len(shard_list):
            raise ValidationError("shards must be distinct, non-empty names", field="shards", value=shard_list)

        self._check_family(name, arguments, shard_list)
        estimates = {s: self._prepare(name, arguments, s, connection_name, status) for s in shard_list}
        parent, created = self.migrations.create(composite=True, **common)
        self._log_enqueue(parent, created)
        for s in shard_list:
            child, child_created = self.migrations.create(
                shard=s, parent_id=parent.id, estimated_total=estimates[s], **common
            )
            self._log_enqueue(child, child_created)
        return self.migrations.get(parent.id)

    def _check_family(self, name: str, arguments: dict[str, Any], shard_list: list[str]) -> None:
        """Reject a sharded enqueue whose rows would collide with unrelated migrations."""
        parent = self.migrations.find(name, arguments, None)
        if parent is not None and not parent.composite:
            raise ValidationError(
                f"'{name}' is already enqueued unsharded as migration {parent.id}",
                field="shards",
                value=shard_list,
            )
        for s in shard_list:
            child = self.migrations.find(name, arguments, s)
            if child is not None and (parent is None or child.parent_id != parent.id):
                raise ValidationError(
                    f"'{name}' is already enqueued on shard '{s}' as migration {child.id}",
                    field="shards",
                    value=shard_list,
                )

    def _check_arguments(self, name: str, arguments: dict[str, Any] | None) -> dict[str, Any]:
        if arguments is None:
            return {}
        if not isinstance(arguments, dict):
            raise ValidationError(
                f"Arguments for '{name}' must be a mapping, got {type(arguments).__name__}",
                field="arguments",
                value=arguments,
            )
        try:
            canonical_arguments(arguments)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Arguments for '{name}' are not serializable: {e}", field="arguments", value=arguments, cause=e
            ) from e
        return arguments

    def _prepare(
        self,
        name: str,
        arguments: dict[str, Any],
        shard: str | None,
        connection_name: str,
        status: MigrationStatus,
    ) -> int | None:
        """Build and validate the descriptor; return its size estimate."""
        draft = Migration(id=0, name=name, status=status, arguments=arguments, shard=shard, connection_name=connection_name)
        context = self.config.context_for(draft, self.conn, self.dialect)
        descriptor = self.config.build_descriptor(draft, context)
        descriptor.validate()
        try:
            return descriptor.estimate_count()
        except Exception as e:
            logger.warning("enqueue.estimate_failed", name=name, shard=shard, error=str(e))
            return None

    @staticmethod
    def _log_enqueue(migration: Migration, created: bool) -> None:
        event = "migration.enqueued" if created else "migration.already_enqueued"
        logger.info(event, migration_id=migration.id, name=migration.name, shard=migration.shard,
                    status=migration.status.value)

    # === Status control ===

    def approve(self, migration_id: int) -> Migration:
        """Release a ``delayed`` migration to the scheduler."""
        migration = self.migrations.get(migration_id)
        if migration.composite:
            for child in self.migrations.children(migration_id):
                if child.status == MigrationStatus.DELAYED:
                    self.approve(child.id)
            return refresh_parent(self.migrations, migration_id)

        migration = self.migrations.transition(
            migration_id, MigrationStatus.PENDING, expected=MigrationStatus.DELAYED
        )
        logger.info("migration.approved", migration_id=migration_id)
        return migration

    def pause(self, migration_id: int) -> bool:
        """Pause a migration.

        ``running`` becomes ``pausing`` and the Runner finishes the pause at
        its next slice boundary; ``pending``, ``enqueued`` and ``errored``
        become ``paused`` at once. Returns False when there is nothing to
        pause (already paused or stopping, or finished).

        Raises:
            StateTransitionError: the migration is ``delayed``
        """
        migration = self.migrations.get(migration_id)
        if migration.composite:
            return self._fan_out(migration_id, self.pause)

        match migration.status:
            case MigrationStatus.RUNNING:
                self.migrations.transition(migration_id, MigrationStatus.PAUSING, expected=MigrationStatus.RUNNING)
            case MigrationStatus.PAUSED | MigrationStatus.PAUSING | MigrationStatus.CANCELLING:
                return False
            case status if status in TERMINAL:
                return False
            case status:
                self.migrations.transition(migration_id, MigrationStatus.PAUSED, expected=status, heartbeat_at=None)
        logger.info("migration.pause_requested", migration_id=migration_id, was=migration.status.value)
        self._refresh(migration)
        return True

    def resume(self, migration_id: int) -> bool:
        """Return a ``paused`` migration to ``pending``; False otherwise."""
        migration = self.migrations.get(migration_id)
        if migration.composite:
            return self._fan_out(migration_id, self.resume)
        if migration.status != MigrationStatus.PAUSED:
            return False

        self.migrations.transition(migration_id, MigrationStatus.PENDING, expected=MigrationStatus.PAUSED)
        logger.info("migration.resumed", migration_id=migration_id, cursor=migration.cursor)
        self._refresh(migration)
        return True

    def cancel(self, migration_id: int) -> bool:
        """Cancel a migration.

        ``running`` and ``pausing`` become ``cancelling``; every other
        non-terminal status becomes ``cancelled`` at once. Returns False when
        already cancelling or finished.
        """
        migration = self.migrations.get(migration_id)
        if migration.composite:
            return self._fan_out(migration_id, self.cancel)

        status = migration.status
        if status == MigrationStatus.CANCELLING or status in TERMINAL:
            return False
        if status in (MigrationStatus.RUNNING, MigrationStatus.PAUSING):
            self.migrations.transition(migration_id, MigrationStatus.CANCELLING, expected=status)
        else:
            self.migrations.transition(
                migration_id,
                MigrationStatus.CANCELLED,
                expected=status,
                heartbeat_at=None,
                finished_at=self.config.clock(),
            )
        logger.info("migration.cancel_requested", migration_id=migration_id, was=status.value)
        self._refresh(migration)
        return True

    def retry(self, migration_id: int) -> Migration:
        """Re-queue a ``failed`` migration from its persisted cursor.

        Attempts are reset and the failure fields cleared.

        Raises:
            StateTransitionError: the migration is not ``failed``
        """
        migration = self.migrations.get(migration_id)
        if migration.composite:
            for child in self.migrations.children(migration_id):
                if child.status == MigrationStatus.FAILED:
                    self.retry(child.id)
            return refresh_parent(self.migrations, migration_id)

        if migration.status != MigrationStatus.FAILED:
            raise StateTransitionError(
                migration.status, MigrationStatus.PENDING, "MigrationStatus", reason="only failed migrations can be retried"
            )
        migration = self.migrations.transition(
            migration_id,
            MigrationStatus.PENDING,
            expected=MigrationStatus.FAILED,
            attempts=0,
            error_kind=None,
            error_message=None,
            error_trace=None,
            finished_at=None,
            heartbeat_at=None,
        )
        logger.info("migration.retry_requested", migration_id=migration_id, cursor=migration.cursor)
        self._refresh(migration)
        return migration

    # === Queries ===

    def get(self, migration_id: int) -> Migration:
        return self.migrations.get(migration_id)

    def list(
        self,
        statuses: Iterable[MigrationStatus] | None = None,
        shard: str | None = None,
    ) -> list[Migration]:
        return self.migrations.list_migrations(statuses=statuses, shard=shard)

    def progress(self, migration_id: int) -> float | None:
        """Percent complete, or None when the total is unknown."""
        migration = self.migrations.get(migration_id)
        if migration.composite:
            return aggregate_progress(self.migrations.children(migration_id))
        return migration.progress

    def inspect(self, migration_id: int) -> dict[str, Any]:
        """Everything known about a migration, including slices and children."""
        migration = self.migrations.get(migration_id)
        result = migration.to_dict()
        result["progress"] = self.progress(migration_id)
        result["slices"] = [record.to_dict() for record in self.slices.for_migration(migration_id)]
        if migration.composite:
            result["children"] = [child.to_dict() for child in self.migrations.children(migration_id)]
        return result

    # === Helpers ===

    def _fan_out(self, parent_id: int, operation: Any) -> bool:
        results = [operation(child.id) for child in self.migrations.children(parent_id)]
        refresh_parent(self.migrations, parent_id)
        return any(results)

    def _refresh(self, migration: Migration) -> None:
        if migration.parent_id is not None:
            refresh_parent(self.migrations, migration.parent_id)


__all__ = ["Operator", "SCHEMA_CHANGE"]
