"""Execution context threaded through Runner and Scheduler calls.

Carries which shard and which database connection a migration's work runs
against. Work descriptors read it through ``self.context``; nothing is
mixed into the Migration record itself.
"""

from __future__ import annotations

from dataclasses import dataclass

from trickle.core.dialect import Dialect, SQLiteDialect
from trickle.core.errors import ConfigError
from trickle.core.protocols import Connection


@dataclass(frozen=True)
class ExecutionContext:
    """Shard and connection identity for one unit of execution."""

    shard: str | None = None
    connection_name: str = "default"
    connection: Connection | None = None
    dialect: Dialect | None = None

    def require_connection(self) -> Connection:
        """The connection, or ConfigError when the context carries none."""
        if self.connection is None:
            raise ConfigError(
                f"No connection bound for '{self.connection_name}' (shard={self.shard!r})"
            )
        return self.connection

    @property
    def sql_dialect(self) -> Dialect:
        return self.dialect or SQLiteDialect()


__all__ = ["ExecutionContext"]
