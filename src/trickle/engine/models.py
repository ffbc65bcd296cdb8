"""
Persistent records of the engine: :class:`Migration` and :class:`SliceRecord`.

A ``Migration`` is one enqueued unit of work. Its identity is
``(name, arguments, shard)``; re-enqueueing identical work returns the same
record. Progress is an opaque ``cursor`` that only ever advances, plus a
processed count and an optional estimate. Failure fields are populated only
while the status is ``errored`` or ``failed``.

A ``SliceRecord`` is the durable trace of one slice of bounded-range work,
kept so a crash mid-slice leaves auditable evidence.

Tags:
    model, dataclass, migration, slice, persistence, trickle
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from trickle.core.timestamps import from_iso8601, to_iso8601
from trickle.engine.status import TERMINAL, MigrationStatus, SliceStatus


class MigrationKind(str, Enum):
    """Which variant of work a migration performs."""

    DATA = "data"
    SCHEMA = "schema"


def canonical_arguments(arguments: dict[str, Any] | None) -> str:
    """Serialize arguments so equal dicts produce equal strings."""
    return json.dumps(arguments or {}, sort_keys=True, separators=(",", ":"))


@dataclass
class Migration:
    """One enqueued unit of work and its state-machine status.

    ``shard`` is ``None`` for unsharded work (stored as ``''``).
    """

    id: int
    name: str
    status: MigrationStatus
    arguments: dict[str, Any] = field(default_factory=dict)
    shard: str | None = None
    kind: MigrationKind = MigrationKind.DATA
    parent_id: int | None = None
    composite: bool = False

    # Progress
    cursor: str | None = None
    processed_count: int = 0
    estimated_total: int | None = None
    attempts: int = 0
    max_attempts: int = 5
    pacing_delay: float = 0.0

    # Resource identity (schema-change exclusivity)
    table_name: str | None = None
    connection_name: str = "default"

    # Failure info
    error_kind: str | None = None
    error_message: str | None = None
    error_trace: str | None = None

    # Timing
    heartbeat_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    # -- Derived --------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def resource_key(self) -> tuple[str | None, str | None, str]:
        """``(table, shard, connection)``; two schema changes sharing it never run together."""
        return (self.table_name, self.shard, self.connection_name)

    @property
    def progress(self) -> float | None:
        """Percent complete in ``[0, 100]``, or None when the total is unknown."""
        if self.status == MigrationStatus.SUCCEEDED:
            return 100.0
        if self.estimated_total is None:
            return None
        if self.estimated_total <= 0:
            return 0.0
        return round(min(self.processed_count / self.estimated_total, 1.0) * 100, 2)

    # -- Serialization ----------------------------------------------------------

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Migration:
        """Build from a ``trickle_migrations`` row dict."""
        return cls(
            id=row["id"],
            name=row["name"],
            status=MigrationStatus(row["status"]),
            arguments=json.loads(row["arguments"] or "{}"),
            shard=row["shard"] or None,
            kind=MigrationKind(row["kind"]),
            parent_id=row["parent_id"],
            composite=bool(row["composite"]),
            cursor=row["cursor"],
            processed_count=row["processed_count"],
            estimated_total=row["estimated_total"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            pacing_delay=row["pacing_delay"],
            table_name=row["table_name"],
            connection_name=row["connection_name"],
            error_kind=row["error_kind"],
            error_message=row["error_message"],
            error_trace=row["error_trace"],
            heartbeat_at=from_iso8601(row["heartbeat_at"]),
            created_at=from_iso8601(row["created_at"]),
            updated_at=from_iso8601(row["updated_at"]),
            started_at=from_iso8601(row["started_at"]),
            finished_at=from_iso8601(row["finished_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "arguments": self.arguments,
            "shard": self.shard,
            "kind": self.kind.value,
            "parent_id": self.parent_id,
            "composite": self.composite,
            "cursor": self.cursor,
            "processed_count": self.processed_count,
            "estimated_total": self.estimated_total,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "table_name": self.table_name,
            "connection_name": self.connection_name,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "error_trace": self.error_trace,
            "heartbeat_at": to_iso8601(self.heartbeat_at),
            "created_at": to_iso8601(self.created_at),
            "started_at": to_iso8601(self.started_at),
            "finished_at": to_iso8601(self.finished_at),
        }


@dataclass
class SliceRecord:
    """Durable record of one ``[min_value, max_value]`` slice."""

    id: int
    migration_id: int
    min_value: int
    max_value: int
    status: SliceStatus
    attempts: int = 0
    error_kind: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SliceRecord:
        return cls(
            id=row["id"],
            migration_id=row["migration_id"],
            min_value=row["min_value"],
            max_value=row["max_value"],
            status=SliceStatus(row["status"]),
            attempts=row["attempts"],
            error_kind=row["error_kind"],
            error_message=row["error_message"],
            created_at=from_iso8601(row["created_at"]),
            started_at=from_iso8601(row["started_at"]),
            finished_at=from_iso8601(row["finished_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "status": self.status.value,
            "attempts": self.attempts,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }


__all__ = ["Migration", "MigrationKind", "SliceRecord", "canonical_arguments"]
