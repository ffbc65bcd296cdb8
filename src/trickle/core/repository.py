"""Dialect-aware base for the engine's data-access classes.

:class:`BaseRepository` pairs a DB-API connection with a
:class:`~trickle.core.dialect.Dialect`. ``MigrationRepository`` and
``SliceRepository`` build their compare-and-set statements from its
placeholder helpers, so the same SQL runs against SQLite in tests and
PostgreSQL (psycopg) in production::

    row = self.query_one(
        f"SELECT * FROM trickle_migrations WHERE id = {self.p()}",
        (migration_id,),
    )

The base never commits on its own; subclasses decide where a
transaction ends so a slice record and its cursor can land together.
"""

from __future__ import annotations

from typing import Any

from trickle.core.dialect import Dialect, SQLiteDialect
from trickle.core.protocols import Connection


class BaseRepository:
    """Dialect-aware base class for data-access repositories.

    Parameters:
        conn: Any object satisfying the :class:`Connection` protocol.
        dialect: SQL dialect to use.  Defaults to :class:`SQLiteDialect`.
    """

    def __init__(self, conn: Connection, dialect: Dialect | None = None) -> None:
        self.conn = conn
        self.dialect: Dialect = dialect or SQLiteDialect()

    # -- Convenience shortcuts ---------------------------------------------

    def ph(self, count: int) -> str:
        """Shortcut for ``self.dialect.placeholders(count)``."""
        return self.dialect.placeholders(count)

    def p(self) -> str:
        """A single placeholder, for ``WHERE col = {self.p()}`` fragments."""
        return self.dialect.placeholder(0)

    # -- Query helpers -----------------------------------------------------

    def execute(self, sql: str, params: tuple = ()) -> Any:
        """Execute a statement and return the raw cursor/result."""
        return self.conn.execute(sql, params)

    def query(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Execute a SELECT and return rows as dicts.

        Column names come from ``cursor.description`` (DB-API 2.0) so plain
        tuple rows work as well as ``sqlite3.Row``.
        """
        cursor = self.conn.execute(sql, params)
        rows = cursor.fetchall()
        if not rows:
            return []

        columns = [desc[0] for desc in cursor.description]
        return [dict(zip(columns, tuple(row), strict=True)) for row in rows]

    def query_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        """Execute a SELECT and return the first row as a dict (or None)."""
        results = self.query(sql, params)
        return results[0] if results else None

    def commit(self) -> None:
        """Commit the current transaction."""
        self.conn.commit()


__all__ = [
    "BaseRepository",
]
