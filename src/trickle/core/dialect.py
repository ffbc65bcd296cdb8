"""SQL dialect abstraction for the engine's storage and built-in work.

Provides a ``Dialect`` protocol and the two implementations the engine
ships: SQLite (tests, single-node deployments) and PostgreSQL. Repositories
and built-in work descriptors ask the dialect for SQL fragments
(placeholders, insert-or-ignore, introspection queries) instead of
hard-coding driver syntax.

Architecture::

    Engine code:
    ┌────────────────────────────────────────────────────────────────┐
    │  sql = d.insert_or_ignore("trickle_locks", ["name", ...])      │
    │  sql = f"... WHERE id = {d.placeholder(0)}"                    │
    │  conn.execute(sql, params)                                     │
    └────────────────────────────────────────────────────────────────┘
                              │
                              ▼
              ┌──────────────┐          ┌──────────────────┐
              │ SQLite       │          │ PostgreSQL       │
              │ ?, ?, ?      │          │ %s, %s, %s       │
              │ OR IGNORE    │          │ ON CONFLICT      │
              │ sqlite_master│          │ pg_index         │
              └──────────────┘          └──────────────────┘

Examples:
    >>> d = SQLiteDialect()
    >>> d.placeholders(3)
    '?, ?, ?'
    >>> get_dialect("postgresql").placeholders(2)
    '%s, %s'

Tags:
    dialect, sql, abstraction, portability, database, trickle
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract.

    Every method returns a SQL fragment or statement valid for the target
    database.
    """

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    def placeholder(self, index: int) -> str:
        """Single positional placeholder (0-based index)."""
        ...

    def placeholders(self, count: int) -> str:
        """Comma-separated placeholder list."""
        ...

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        """``INSERT … ON CONFLICT DO NOTHING`` (or equivalent)."""
        ...

    def auto_increment(self) -> str:
        """DDL fragment for an auto-incrementing integer primary key."""
        ...

    def table_exists_query(self) -> str:
        """Query taking one table-name parameter; returns a row if it exists."""
        ...

    def index_validity_query(self) -> str:
        """Query taking one index-name parameter.

        Returns a single row whose first column is truthy when the index is
        valid, falsy when it exists but is invalid, and no row when missing.
        """
        ...

    def statement_timeout(self, seconds: float) -> str | None:
        """Statement that bounds DDL runtime, or None if unsupported."""
        ...

    def reset_statement_timeout(self) -> str | None:
        """Statement restoring the session default after :meth:`statement_timeout`."""
        ...


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect:
    """SQLite dialect: ``?`` placeholders, ``INSERT OR IGNORE``."""

    @property
    def name(self) -> str:
        return "sqlite"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "?"

    def placeholders(self, count: int) -> str:
        return ", ".join("?" for _ in range(count))

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT OR IGNORE INTO {table} ({cols}) VALUES ({ph})"

    def auto_increment(self) -> str:
        return "INTEGER PRIMARY KEY AUTOINCREMENT"

    def table_exists_query(self) -> str:
        return "SELECT name FROM sqlite_master WHERE type='table' AND name = ?"

    def index_validity_query(self) -> str:
        # SQLite has no invalid-index state
        return "SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?"

    def statement_timeout(self, seconds: float) -> str | None:  # noqa: ARG002
        return None

    def reset_statement_timeout(self) -> str | None:
        return None


class PostgreSQLDialect:
    """PostgreSQL dialect: ``%s`` placeholders (psycopg), ``ON CONFLICT``."""

    @property
    def name(self) -> str:
        return "postgresql"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "%s"

    def placeholders(self, count: int) -> str:
        return ", ".join("%s" for _ in range(count))

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT INTO {table} ({cols}) VALUES ({ph}) ON CONFLICT DO NOTHING"

    def auto_increment(self) -> str:
        return "SERIAL PRIMARY KEY"

    def table_exists_query(self) -> str:
        return (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = %s"
        )

    def index_validity_query(self) -> str:
        return (
            "SELECT i.indisvalid FROM pg_index i "
            "JOIN pg_class c ON c.oid = i.indexrelid "
            "WHERE c.relname = %s"
        )

    def statement_timeout(self, seconds: float) -> str | None:
        return f"SET statement_timeout = {int(seconds * 1000)}"

    def reset_statement_timeout(self) -> str | None:
        return "RESET statement_timeout"


# =========================================================================
# Registry
# =========================================================================

_DIALECTS: dict[str, type] = {
    "sqlite": SQLiteDialect,
    "postgresql": PostgreSQLDialect,
    "postgres": PostgreSQLDialect,
}


def get_dialect(name: str) -> Dialect:
    """Return a dialect instance by name (``sqlite``, ``postgresql``)."""
    try:
        return _DIALECTS[name.lower()]()
    except KeyError:
        available = ", ".join(sorted(_DIALECTS))
        raise KeyError(f"Unknown dialect '{name}'. Available: {available}") from None


__all__ = [
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "get_dialect",
]
