"""
Structural protocols shared across the engine.

``Connection`` is the only thing the engine knows about a database: a
synchronous DB-API style object. ``sqlite3.Connection`` satisfies it
natively; a psycopg connection does too.

Tags:
    protocol, connection, dispatcher, sync, trickle
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from trickle.engine.context import ExecutionContext
    from trickle.engine.models import Migration
    from trickle.engine.outcome import Outcome


@runtime_checkable
class Connection(Protocol):
    """
    Minimal SYNCHRONOUS connection interface for database operations.

    ``execute`` returns a cursor exposing ``fetchone()``, ``fetchall()``,
    ``rowcount`` and ``description``.

    Examples:
        >>> cursor = conn.execute("SELECT status FROM trickle_migrations WHERE id = ?", (1,))
        >>> cursor.fetchone()
        ('running',)
    """

    def execute(self, sql: str, params: tuple = ()) -> Any:
        """Execute SQL statement with optional parameters. SYNC."""
        ...

    def executemany(self, sql: str, params: list[tuple]) -> Any:
        """Execute SQL statement for multiple parameter sets. SYNC."""
        ...

    def commit(self) -> None:
        """Commit current transaction. SYNC."""
        ...

    def rollback(self) -> None:
        """Rollback current transaction. SYNC."""
        ...


@runtime_checkable
class DispatcherProtocol(Protocol):
    """Hands a claimed migration to something that runs its slices."""

    def dispatch(self, migration: Migration, context: ExecutionContext) -> Outcome | None:
        """Run the migration; return the last slice outcome, or None if it runs elsewhere."""
        ...


__all__ = ["Connection", "DispatcherProtocol"]
