"""
Engine tables.

Defines table names and DDL for the three tables the engine owns: one
durable record per migration, one per slice of bounded-range work, and the
advisory lock rows.

Architecture:
    ::

        Table Registry (ENGINE_TABLES):
        ┌────────────────────────────────────────────────────────────┐
        │ migrations → trickle_migrations                            │
        │ slices     → trickle_migration_slices                      │
        │ locks      → trickle_locks                                 │
        └────────────────────────────────────────────────────────────┘

        trickle_migrations ──< trickle_migration_slices
                 │
                 └──< trickle_migrations (parent_id, sharded fan-out)

    ``UNIQUE (name, arguments, shard)`` is what makes enqueue idempotent.
    ``shard`` is stored as ``''`` when absent so the constraint also covers
    unsharded work (NULLs never collide in a UNIQUE index).

Examples:
    >>> import sqlite3
    >>> conn = sqlite3.connect(":memory:")
    >>> create_tables(conn)
    >>> ENGINE_TABLES["migrations"]
    'trickle_migrations'

Tags:
    schema, ddl, persistence, trickle
"""

from __future__ import annotations

from trickle.core.dialect import Dialect, SQLiteDialect
from trickle.core.protocols import Connection

ENGINE_TABLES = {
    "migrations": "trickle_migrations",
    "slices": "trickle_migration_slices",
    "locks": "trickle_locks",
}


def build_ddl(dialect: Dialect | None = None) -> dict[str, list[str]]:
    """Return CREATE statements per logical table for *dialect*."""
    pk = (dialect or SQLiteDialect()).auto_increment()

    return {
        "migrations": [
            f"""
            CREATE TABLE IF NOT EXISTS trickle_migrations (
                id {pk},
                name TEXT NOT NULL,
                arguments TEXT NOT NULL DEFAULT '{{}}',
                shard TEXT NOT NULL DEFAULT '',
                kind TEXT NOT NULL DEFAULT 'data',
                parent_id INTEGER,
                composite INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                cursor TEXT,
                processed_count INTEGER NOT NULL DEFAULT 0,
                estimated_total INTEGER,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                pacing_delay REAL NOT NULL DEFAULT 0,
                table_name TEXT,
                connection_name TEXT NOT NULL DEFAULT 'default',
                error_kind TEXT,
                error_message TEXT,
                error_trace TEXT,
                heartbeat_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                UNIQUE (name, arguments, shard)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_trickle_migrations_status "
            "ON trickle_migrations (status, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_trickle_migrations_parent "
            "ON trickle_migrations (parent_id)",
        ],
        "slices": [
            f"""
            CREATE TABLE IF NOT EXISTS trickle_migration_slices (
                id {pk},
                migration_id INTEGER NOT NULL,
                min_value INTEGER NOT NULL,
                max_value INTEGER NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                error_kind TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                UNIQUE (migration_id, min_value, max_value)
            )
            """,
        ],
        "locks": [
            """
            CREATE TABLE IF NOT EXISTS trickle_locks (
                name TEXT PRIMARY KEY,
                locked_by TEXT NOT NULL,
                locked_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """,
        ],
    }


def create_tables(conn: Connection, dialect: Dialect | None = None) -> None:
    """
    Create all engine tables.

    Call this once at application startup.
    Safe to call multiple times (CREATE IF NOT EXISTS).
    """
    for statements in build_ddl(dialect).values():
        for ddl in statements:
            conn.execute(ddl)
    conn.commit()


__all__ = ["ENGINE_TABLES", "build_ddl", "create_tables"]
