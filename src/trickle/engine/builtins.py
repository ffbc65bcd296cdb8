"""
Built-in work definitions.

    schema_change               one DDL statement, idempotent for CREATE INDEX
    backfill_column             SET columns to constant values
    copy_column                 copy columns into other columns
    delete_orphaned_records     delete rows whose parent row is gone
    delete_associated_records   delete rows belonging to one parent
    perform_action_on_relation  delete or update rows matching a condition
    reset_counters              recompute counter-cache columns

All but ``schema_change`` walk the integer key column in slices of
``batch_size`` keys, each processed in ``sub_batch_size`` chunks. Table and
column names are interpolated into SQL, so they are checked against a plain
identifier pattern at enqueue time; values always travel as parameters.

They are registered on the default registry when :mod:`trickle` is
imported. Custom registries pick them up with :func:`register_builtins`.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from trickle.core.errors import ValidationError
from trickle.core.logging import get_logger
from trickle.engine.context import ExecutionContext
from trickle.engine.descriptor import RangeWorkDescriptor, SequenceWorkDescriptor, WorkDescriptor
from trickle.engine.registry import WorkRegistry, default_registry

if TYPE_CHECKING:
    from trickle.core.dialect import Dialect
    from trickle.core.protocols import Connection
    from trickle.core.settings import EngineSettings

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_CREATE_INDEX = re.compile(
    r"^\s*CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?"
    r"(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s+ON\s",
    re.IGNORECASE,
)


def check_identifier(value: Any, field: str) -> str:
    """Reject anything that is not a bare or schema-qualified SQL identifier."""
    if not isinstance(value, str) or not _IDENTIFIER.match(value):
        raise ValidationError(f"Invalid SQL identifier for {field}: {value!r}", field=field, value=value)
    return value


def _table_exists(context: ExecutionContext, table_name: str) -> bool:
    conn = context.require_connection()
    bare = table_name.rsplit(".", 1)[-1]
    return conn.execute(context.sql_dialect.table_exists_query(), (bare,)).fetchone() is not None


# =============================================================================
# SCHEMA CHANGE
# =============================================================================


class SchemaChange(SequenceWorkDescriptor):
    """A single DDL statement run as a one-item migration.

    ``CREATE INDEX`` is made idempotent: a valid index with the same name is
    left alone, an invalid leftover (an interrupted concurrent build) is
    dropped and rebuilt.
    """

    def __init__(self, label: str, table_name: str, definition: str) -> None:
        self.label = label
        self.table_name = table_name
        self.definition = definition
        self.statement_timeout: float | None = None

    def prepare(
        self,
        context: ExecutionContext,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> WorkDescriptor:
        super().prepare(context, settings, sleep)
        if settings is not None:
            self.statement_timeout = settings.statement_timeout_seconds
        return self

    def validate(self) -> None:
        check_identifier(self.table_name, "table_name")
        if not self.definition or not self.definition.strip():
            raise ValidationError("Schema change definition is empty", field="definition", value=self.definition)
        if self.context.connection is not None and not _table_exists(self.context, self.table_name):
            raise ValidationError(
                f"Table '{self.table_name}' does not exist", field="table_name", value=self.table_name
            )

    def collection(self) -> Sequence[str]:
        return [self.definition]

    @property
    def index_name(self) -> str | None:
        match = _CREATE_INDEX.match(self.definition)
        return match.group("name") if match else None

    def process(self, item: str) -> None:
        conn = self.context.require_connection()
        dialect = self.context.sql_dialect

        timeout = dialect.statement_timeout(self.statement_timeout) if self.statement_timeout else None
        if timeout:
            conn.execute(timeout)
        try:
            self._apply(conn, dialect, item)
        except Exception:
            conn.rollback()
            raise
        finally:
            # The timeout is session-wide; engine bookkeeping shares this connection
            reset = dialect.reset_statement_timeout() if timeout else None
            if reset:
                conn.execute(reset)
                conn.commit()

    def _apply(self, conn: Connection, dialect: Dialect, item: str) -> None:
        index = self.index_name
        if index is not None:
            row = conn.execute(dialect.index_validity_query(), (index,)).fetchone()
            if row is not None and row[0]:
                logger.info("schema_change.index_exists", label=self.label, index=index)
                return
            if row is not None:
                logger.warning("schema_change.index_invalid", label=self.label, index=index)
                conn.execute(f"DROP INDEX {index}")

        logger.info("schema_change.executing", label=self.label, table=self.table_name)
        conn.execute(item)
        conn.commit()


# =============================================================================
# RANGE-BASED DATA MIGRATIONS
# =============================================================================


class TableRangeWork(RangeWorkDescriptor):
    """Range work over ``table_name`` keyed by an integer ``key`` column.

    The key domain defaults to ``MIN(key)..MAX(key)`` of the table;
    ``start``/``end`` pin it explicitly.
    """

    def __init__(
        self,
        table_name: str,
        *,
        key: str = "id",
        start: int | None = None,
        end: int | None = None,
        batch_size: int | None = None,
        sub_batch_size: int | None = None,
        sub_batch_pause_ms: int | None = None,
    ) -> None:
        super().__init__(batch_size=batch_size, sub_batch_size=sub_batch_size, sub_batch_pause_ms=sub_batch_pause_ms)
        self.table_name = table_name
        self.key = key
        self.start = start
        self.end = end

    def validate(self) -> None:
        check_identifier(self.table_name, "table_name")
        check_identifier(self.key, "key")
        for name in ("batch_size", "sub_batch_size"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValidationError(f"{name} must be >= 1", field=name, value=value)
        if self.context.connection is not None and not _table_exists(self.context, self.table_name):
            raise ValidationError(
                f"Table '{self.table_name}' does not exist", field="table_name", value=self.table_name
            )

    @property
    def ph(self) -> str:
        return self.context.sql_dialect.placeholder(0)

    def bounds_filter(self) -> tuple[str, tuple]:
        """Extra ``AND`` clause (and params) restricting the key domain."""
        return "", ()

    def bounds(self) -> tuple[int, int] | None:
        start, end = self.start, self.end
        if start is None or end is None:
            clause, params = self.bounds_filter()
            row = self.context.require_connection().execute(
                f"SELECT MIN({self.key}), MAX({self.key}) FROM {self.table_name} WHERE 1 = 1{clause}",
                params,
            ).fetchone()
            if row is None or row[0] is None:
                return None
            start = row[0] if start is None else start
            end = row[1] if end is None else end
        if end < start:
            return None
        return int(start), int(end)

    def execute_range(self, sql: str, params: tuple) -> int:
        conn = self.context.require_connection()
        cursor = conn.execute(sql, params)
        conn.commit()
        return cursor.rowcount


class BackfillColumn(TableRangeWork):
    """Set columns to constant values, skipping rows that already match."""

    def __init__(self, table_name: str, updates: dict[str, Any], **kwargs: Any) -> None:
        super().__init__(table_name, **kwargs)
        self.updates = updates

    def validate(self) -> None:
        super().validate()
        if not self.updates:
            raise ValidationError("backfill_column needs at least one column to update", field="updates")
        for column in self.updates:
            check_identifier(column, "updates")

    def process_range(self, low: int, high: int) -> None:
        ph = self.ph
        assignments = ", ".join(f"{column} = {ph}" for column in self.updates)
        differs: list[str] = []
        differ_params: list[Any] = []
        for column, value in self.updates.items():
            if value is None:
                differs.append(f"{column} IS NOT NULL")
            else:
                differs.append(f"({column} IS NULL OR {column} <> {ph})")
                differ_params.append(value)
        self.execute_range(
            f"UPDATE {self.table_name} SET {assignments} "
            f"WHERE {self.key} BETWEEN {ph} AND {ph} AND ({' OR '.join(differs)})",
            (*self.updates.values(), low, high, *differ_params),
        )


class CopyColumn(TableRangeWork):
    """Copy ``copy_from[i]`` into ``copy_to[i]``, optionally casting."""

    def __init__(
        self,
        table_name: str,
        copy_from: list[str],
        copy_to: list[str],
        type_cast: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(table_name, **kwargs)
        self.copy_from = list(copy_from)
        self.copy_to = list(copy_to)
        self.type_cast = type_cast or {}

    def validate(self) -> None:
        super().validate()
        if not self.copy_from or len(self.copy_from) != len(self.copy_to):
            raise ValidationError(
                "copy_from and copy_to must be non-empty and the same length",
                field="copy_to",
                value=self.copy_to,
            )
        for column in (*self.copy_from, *self.copy_to):
            check_identifier(column, "column")
        for column, type_name in self.type_cast.items():
            if column not in self.copy_to:
                raise ValidationError(f"type_cast names unknown column {column!r}", field="type_cast", value=column)
            check_identifier(type_name, "type_cast")

    def process_range(self, low: int, high: int) -> None:
        ph = self.ph
        assignments = []
        for source, target in zip(self.copy_from, self.copy_to):
            value = f"CAST({source} AS {self.type_cast[target]})" if target in self.type_cast else source
            assignments.append(f"{target} = {value}")
        self.execute_range(
            f"UPDATE {self.table_name} SET {', '.join(assignments)} WHERE {self.key} BETWEEN {ph} AND {ph}",
            (low, high),
        )


class DeleteOrphanedRecords(TableRangeWork):
    """Delete rows whose ``foreign_key`` points at a missing ``parent_table`` row."""

    def __init__(
        self,
        table_name: str,
        foreign_key: str,
        parent_table: str,
        parent_key: str = "id",
        **kwargs: Any,
    ) -> None:
        super().__init__(table_name, **kwargs)
        self.foreign_key = foreign_key
        self.parent_table = parent_table
        self.parent_key = parent_key

    def validate(self) -> None:
        super().validate()
        check_identifier(self.foreign_key, "foreign_key")
        check_identifier(self.parent_table, "parent_table")
        check_identifier(self.parent_key, "parent_key")

    def process_range(self, low: int, high: int) -> None:
        ph = self.ph
        self.execute_range(
            f"DELETE FROM {self.table_name} "
            f"WHERE {self.key} BETWEEN {ph} AND {ph} AND {self.foreign_key} IS NOT NULL "
            f"AND NOT EXISTS (SELECT 1 FROM {self.parent_table} "
            f"WHERE {self.parent_table}.{self.parent_key} = {self.table_name}.{self.foreign_key})",
            (low, high),
        )


class DeleteAssociatedRecords(TableRangeWork):
    """Delete the rows of ``table_name`` that belong to one parent."""

    def __init__(self, table_name: str, foreign_key: str, parent_id: Any, **kwargs: Any) -> None:
        super().__init__(table_name, **kwargs)
        self.foreign_key = foreign_key
        self.parent_id = parent_id

    def validate(self) -> None:
        super().validate()
        check_identifier(self.foreign_key, "foreign_key")
        if self.parent_id is None:
            raise ValidationError("parent_id is required", field="parent_id")

    def bounds_filter(self) -> tuple[str, tuple]:
        return f" AND {self.foreign_key} = {self.ph}", (self.parent_id,)

    def process_range(self, low: int, high: int) -> None:
        ph = self.ph
        self.execute_range(
            f"DELETE FROM {self.table_name} WHERE {self.key} BETWEEN {ph} AND {ph} AND {self.foreign_key} = {ph}",
            (low, high, self.parent_id),
        )


class PerformActionOnRelation(TableRangeWork):
    """Delete, or update with constant values, the rows matching ``condition``.

    ``condition`` is a trusted SQL fragment supplied by the operator.
    """

    ACTIONS = ("delete", "update")

    def __init__(
        self,
        table_name: str,
        action: str,
        condition: str | None = None,
        updates: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(table_name, **kwargs)
        self.action = action
        self.condition = condition
        self.updates = updates or {}

    def validate(self) -> None:
        super().validate()
        if self.action not in self.ACTIONS:
            raise ValidationError(
                f"action must be one of {', '.join(self.ACTIONS)}", field="action", value=self.action
            )
        if self.action == "update":
            if not self.updates:
                raise ValidationError("update action needs updates", field="updates")
            for column in self.updates:
                check_identifier(column, "updates")

    def bounds_filter(self) -> tuple[str, tuple]:
        return (f" AND ({self.condition})", ()) if self.condition else ("", ())

    def process_range(self, low: int, high: int) -> None:
        ph = self.ph
        where = f"{self.key} BETWEEN {ph} AND {ph}"
        if self.condition:
            where = f"{where} AND ({self.condition})"

        if self.action == "delete":
            self.execute_range(f"DELETE FROM {self.table_name} WHERE {where}", (low, high))
            return

        assignments = ", ".join(f"{column} = {ph}" for column in self.updates)
        self.execute_range(
            f"UPDATE {self.table_name} SET {assignments} WHERE {where}",
            (*self.updates.values(), low, high),
        )


class ResetCounters(TableRangeWork):
    """Recompute counter-cache columns from child-table row counts.

    ``counters`` is a list of ``{"column", "child_table", "foreign_key"}``.
    """

    def __init__(self, table_name: str, counters: list[dict[str, str]], **kwargs: Any) -> None:
        super().__init__(table_name, **kwargs)
        self.counters = counters

    def validate(self) -> None:
        super().validate()
        if not self.counters:
            raise ValidationError("reset_counters needs at least one counter", field="counters")
        for counter in self.counters:
            missing = {"column", "child_table", "foreign_key"} - set(counter)
            if missing:
                raise ValidationError(f"counter is missing {sorted(missing)}", field="counters", value=counter)
            for name in ("column", "child_table", "foreign_key"):
                check_identifier(counter[name], f"counters.{name}")

    def process_range(self, low: int, high: int) -> None:
        ph = self.ph
        assignments = ", ".join(
            f"{c['column']} = (SELECT COUNT(*) FROM {c['child_table']} "
            f"WHERE {c['child_table']}.{c['foreign_key']} = {self.table_name}.{self.key})"
            for c in self.counters
        )
        self.execute_range(
            f"UPDATE {self.table_name} SET {assignments} WHERE {self.key} BETWEEN {ph} AND {ph}",
            (low, high),
        )


BUILTINS: dict[str, type[WorkDescriptor]] = {
    "schema_change": SchemaChange,
    "backfill_column": BackfillColumn,
    "copy_column": CopyColumn,
    "delete_orphaned_records": DeleteOrphanedRecords,
    "delete_associated_records": DeleteAssociatedRecords,
    "perform_action_on_relation": PerformActionOnRelation,
    "reset_counters": ResetCounters,
}


def register_builtins(registry: WorkRegistry) -> None:
    """Register every built-in not already present in *registry*."""
    for name, cls in BUILTINS.items():
        if name not in registry:
            registry.register(name, cls)


register_builtins(default_registry)


__all__ = [
    "BUILTINS",
    "BackfillColumn",
    "CopyColumn",
    "DeleteAssociatedRecords",
    "DeleteOrphanedRecords",
    "PerformActionOnRelation",
    "ResetCounters",
    "SchemaChange",
    "TableRangeWork",
    "check_identifier",
    "register_builtins",
]
