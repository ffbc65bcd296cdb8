"""
Advisory, non-blocking exclusivity lock backed by the ``trickle_locks`` table.

The lock only keeps two Scheduler invocations from double-dispatching the
same migrations. It is never held across a slice's execution and never used
to serialize business writes. Mutual exclusion is best-effort: rows expire
after a TTL so a crashed holder cannot block dispatch forever.

Example:
    >>> lock = ExclusivityLock(conn, owner="host-a:1234")
    >>> with lock.try_with_lock("trickle.scheduler") as acquired:
    ...     if acquired:
    ...         pass  # select and claim candidates

Tags:
    lock, advisory, mutual-exclusion, scheduler, trickle
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from uuid import uuid4

from trickle.core.dialect import Dialect, SQLiteDialect
from trickle.core.protocols import Connection
from trickle.core.timestamps import from_iso8601, to_iso8601, utc_now

logger = logging.getLogger(__name__)


class ExclusivityLock:
    """Table-backed advisory lock with TTL.

    Uses INSERT ... ON CONFLICT DO NOTHING so acquisition is a single atomic
    statement; ``rowcount`` tells whether this owner won.
    """

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        owner: str | None = None,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize lock.

        Args:
            conn: Database connection
            dialect: SQL dialect for portable queries
            owner: Identifier for this process. Auto-generated if not provided.
            ttl_seconds: Lock expiry
            clock: Source of the current UTC time
        """
        self.conn = conn
        self.dialect = dialect or SQLiteDialect()
        self.owner = owner or str(uuid4())
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def _ph(self, index: int) -> str:
        """Dialect-specific placeholder at 1-based position."""
        return self.dialect.placeholder(index - 1)

    def try_lock(self, name: str) -> bool:
        """Acquire *name* without blocking.

        Returns:
            True if acquired (or already held by this owner, whose expiry is
            refreshed), False if another owner holds a live lock.
        """
        now = self.clock()
        expires = now + self.ttl

        self.conn.execute(
            f"DELETE FROM trickle_locks WHERE name = {self._ph(1)} AND expires_at < {self._ph(2)}",
            (name, to_iso8601(now)),
        )
        insert_sql = self.dialect.insert_or_ignore(
            "trickle_locks", ["name", "locked_by", "locked_at", "expires_at"]
        )
        cursor = self.conn.execute(
            insert_sql,
            (name, self.owner, to_iso8601(now), to_iso8601(expires)),
        )
        self.conn.commit()

        if cursor.rowcount > 0:
            logger.debug("Acquired lock %s for %s", name, self.owner)
            return True

        cursor = self.conn.execute(
            f"""
            UPDATE trickle_locks SET expires_at = {self._ph(1)}
            WHERE name = {self._ph(2)} AND locked_by = {self._ph(3)}
            """,
            (to_iso8601(expires), name, self.owner),
        )
        self.conn.commit()
        if cursor.rowcount > 0:
            logger.debug("Refreshed lock %s for %s", name, self.owner)
            return True

        logger.debug("Lock %s already held by another owner", name)
        return False

    def unlock(self, name: str) -> bool:
        """Release *name* if held by this owner."""
        cursor = self.conn.execute(
            f"DELETE FROM trickle_locks WHERE name = {self._ph(1)} AND locked_by = {self._ph(2)}",
            (name, self.owner),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    @contextmanager
    def try_with_lock(self, name: str) -> Iterator[bool]:
        """Yield whether *name* was acquired; release on exit if it was."""
        acquired = self.try_lock(name)
        try:
            yield acquired
        finally:
            if acquired:
                self.unlock(name)

    def holder(self, name: str) -> str | None:
        """Owner of a live lock on *name*, if any."""
        cursor = self.conn.execute(
            f"SELECT locked_by, expires_at FROM trickle_locks WHERE name = {self._ph(1)}",
            (name,),
        )
        row = cursor.fetchone()
        if row is None or from_iso8601(row[1]) <= self.clock():
            return None
        return row[0]

    def is_locked(self, name: str) -> bool:
        """Check if *name* is locked by any owner."""
        return self.holder(name) is not None

    def cleanup_expired(self) -> int:
        """Remove expired lock rows left by crashed owners."""
        cursor = self.conn.execute(
            f"DELETE FROM trickle_locks WHERE expires_at < {self._ph(1)}",
            (to_iso8601(self.clock()),),
        )
        self.conn.commit()
        if cursor.rowcount:
            logger.info("Cleaned up %d expired lock(s)", cursor.rowcount)
        return cursor.rowcount


__all__ = ["ExclusivityLock"]
