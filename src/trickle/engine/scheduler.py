"""
Scheduler: decides which migrations run on each tick.

Manifesto:
    The Scheduler never does work itself. Each tick it takes the advisory
    lock, looks at every migration, classifies heartbeats, fills the free
    concurrency slots in FIFO order while keeping schema changes on the same
    resource apart, claims what it picked, releases the lock and only then
    hands the claimed migrations to the dispatcher.

Tags:
    trickle, scheduling, orchestrator, beat-as-poller, concurrency

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER TICK                                                               │
│                                                                               │
│   1. try_lock(scheduler_name[:shard])      held elsewhere → skip tick         │
│   2. load non-composite migrations         created_at, id order               │
│   3. classify in-flight heartbeats                                            │
│        fresh            → active                                              │
│        older than stuck timeout → stuck (StuckTimeout reported)               │
│   4. free = max_concurrency - active       ≤ 0 → nothing to do                │
│   5. candidates: pending, released, stuck, errored with attempts left         │
│        schema change on a busy (table, shard, connection) → skipped           │
│        claim (compare-and-set)             lost race → skipped                │
│   6. unlock                                                                   │
│   7. dispatcher.dispatch(migration) for each claim                            │
│                                                                               │
│  Beat-as-poller: the TickLoop (or cron, or a test) calls tick(); the         │
│  Scheduler holds no timing logic of its own.                                 │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from trickle.core.dialect import Dialect
from trickle.core.errors import StateTransitionError, StuckTimeout
from trickle.core.events import RETRIED
from trickle.core.locks import ExclusivityLock
from trickle.core.logging import get_logger
from trickle.core.protocols import Connection, DispatcherProtocol
from trickle.core.ticker import TickLoop
from trickle.engine.aggregate import refresh_parent
from trickle.engine.config import EngineConfig
from trickle.engine.context import ExecutionContext
from trickle.engine.executor import InlineDispatcher, MigrationExecutor
from trickle.engine.models import Migration, MigrationKind
from trickle.engine.outcome import Outcome
from trickle.engine.repository import MigrationRepository
from trickle.engine.runner import Runner
from trickle.engine.status import IN_FLIGHT, MigrationStatus

logger = get_logger(__name__)

# Expired lock rows are swept every this many ticks
_LOCK_CLEANUP_EVERY = 6

# Status a candidate is moved to when claimed
_CLAIM_TARGET = {
    MigrationStatus.PENDING: MigrationStatus.ENQUEUED,
    MigrationStatus.ENQUEUED: MigrationStatus.ENQUEUED,
    MigrationStatus.RUNNING: MigrationStatus.ENQUEUED,
    MigrationStatus.PAUSING: MigrationStatus.PAUSING,
    MigrationStatus.CANCELLING: MigrationStatus.CANCELLING,
}


@dataclass
class TickOptions:
    """Per-tick overrides of the configured scheduling limits."""

    max_concurrency: int | None = None
    shard_filter: str | None = None


@dataclass
class TickReport:
    """What one tick saw and did."""

    locked_out: bool = False
    active: list[int] = field(default_factory=list)
    stuck: list[StuckTimeout] = field(default_factory=list)
    dispatched: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    outcomes: dict[int, Outcome | None] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "locked_out": self.locked_out,
            "active": self.active,
            "stuck": [s.migration_id for s in self.stuck],
            "dispatched": self.dispatched,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class SchedulerStats:
    """Statistics for the scheduler."""

    tick_count: int = 0
    migrations_dispatched: int = 0
    ticks_skipped: int = 0
    dispatch_failures: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None


class Scheduler:
    """Periodic selector of runnable migrations.

    Example:
        >>> scheduler = Scheduler(conn, config=EngineConfig(settings=EngineSettings(max_concurrency=2)))
        >>> report = scheduler.tick()
        >>> report.dispatched
        [1, 2]
        >>> scheduler.start(interval_seconds=10.0)   # background TickLoop
    """

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        config: EngineConfig | None = None,
        dispatcher: DispatcherProtocol | None = None,
        lock: ExclusivityLock | None = None,
        runner: Runner | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        settings = self.config.settings
        self.conn = conn
        self.migrations = MigrationRepository(conn, dialect, clock=self.config.clock)
        self.dialect = self.migrations.dialect
        self.lock = lock or ExclusivityLock(
            conn, self.dialect, ttl_seconds=settings.lock_ttl_seconds, clock=self.config.clock
        )
        self.runner = runner or Runner(conn, self.dialect, self.config)
        self.dispatcher = dispatcher or InlineDispatcher(
            MigrationExecutor(self.runner, settings.slices_per_dispatch)
        )
        self._stats = SchedulerStats()
        self._loop: TickLoop | None = None

    # === Lifecycle ===

    def start(self, interval_seconds: float = 10.0) -> None:
        """Tick on a background thread until :meth:`stop`."""
        if self.is_running:
            logger.warning("scheduler.already_running")
            return
        self._loop = TickLoop(self.tick, interval_seconds)
        self._loop.start()
        logger.info("scheduler.started", interval=interval_seconds, name=self.config.settings.scheduler_name)

    def stop(self, timeout: float = 5.0) -> None:
        if self._loop is None:
            return
        self._loop.stop(timeout)
        self._loop = None
        logger.info("scheduler.stopped")

    @property
    def is_running(self) -> bool:
        return self._loop is not None and self._loop.is_running

    # === Tick Processing ===

    def tick(self, options: TickOptions | None = None, context: ExecutionContext | None = None) -> TickReport:
        """Run one scheduling pass.

        Args:
            options: Overrides for concurrency and shard selection
            context: Execution context for every dispatched migration;
                built per migration from the config when omitted

        Returns:
            TickReport; ``locked_out`` is True when another scheduler held
            the lock and nothing was done.
        """
        options = options or TickOptions()
        settings = self.config.settings
        max_concurrency = options.max_concurrency if options.max_concurrency is not None else settings.max_concurrency
        lock_name = settings.scheduler_name
        if options.shard_filter:
            lock_name = f"{lock_name}:{options.shard_filter}"

        self._stats.tick_count += 1
        self._stats.last_tick = self.config.clock()
        report = TickReport()

        if self._stats.tick_count % _LOCK_CLEANUP_EVERY == 0:
            self.lock.cleanup_expired()

        with self.lock.try_with_lock(lock_name) as acquired:
            if not acquired:
                logger.debug("scheduler.locked_out", lock=lock_name)
                self._stats.ticks_skipped += 1
                report.locked_out = True
                return report
            claimed = self._select(options, max_concurrency, report)

        for migration in claimed:
            self._dispatch(migration, context, report)
        return report

    def _select(self, options: TickOptions, max_concurrency: int, report: TickReport) -> list[Migration]:
        """Classify, pick and claim; runs under the scheduler lock."""
        now = self.config.clock()
        timeout = self.config.settings.stuck_timeout
        migrations = self.migrations.list_migrations(shard=options.shard_filter, include_composite=False)

        active: list[Migration] = []
        candidates: list[Migration] = []
        for migration in migrations:
            if migration.status in IN_FLIGHT:
                if migration.status == MigrationStatus.ENQUEUED and migration.heartbeat_at is None:
                    candidates.append(migration)
                elif migration.heartbeat_at is not None and now - migration.heartbeat_at <= timeout:
                    active.append(migration)
                else:
                    stuck = StuckTimeout(
                        migration.id,
                        migration.heartbeat_at or migration.updated_at or now,
                        timeout.total_seconds(),
                    )
                    logger.warning(
                        "migration.stuck",
                        migration_id=migration.id,
                        status=migration.status.value,
                        heartbeat_at=migration.heartbeat_at.isoformat() if migration.heartbeat_at else None,
                    )
                    report.stuck.append(stuck)
                    candidates.append(migration)
            elif migration.status == MigrationStatus.PENDING:
                candidates.append(migration)
            elif migration.status == MigrationStatus.ERRORED and migration.attempts < migration.max_attempts:
                candidates.append(migration)

        report.active = [m.id for m in active]
        free = max_concurrency - len(active)
        if free <= 0:
            logger.debug("scheduler.saturated", active=len(active), max_concurrency=max_concurrency)
            return []

        busy = {m.resource_key for m in active if m.kind == MigrationKind.SCHEMA}
        claimed: list[Migration] = []
        for migration in candidates:
            if len(claimed) >= free:
                break
            if migration.kind == MigrationKind.SCHEMA and migration.resource_key in busy:
                logger.debug("scheduler.resource_busy", migration_id=migration.id, table=migration.table_name)
                report.skipped.append(migration.id)
                continue

            taken = self._claim(migration, now)
            if taken is None:
                report.skipped.append(migration.id)
                continue
            if taken.kind == MigrationKind.SCHEMA:
                busy.add(taken.resource_key)
            claimed.append(taken)

        for parent_id in {m.parent_id for m in claimed if m.parent_id is not None}:
            refresh_parent(self.migrations, parent_id)

        report.dispatched = [m.id for m in claimed]
        if claimed:
            logger.info("scheduler.claimed", migration_ids=report.dispatched, active=len(active))
        return claimed

    def _claim(self, migration: Migration, now: datetime) -> Migration | None:
        if migration.status != MigrationStatus.ERRORED:
            return self.migrations.claim(migration, _CLAIM_TARGET[migration.status])

        try:
            taken = self.migrations.transition(
                migration.id,
                MigrationStatus.RUNNING,
                expected=MigrationStatus.ERRORED,
                heartbeat_at=now,
                error_kind=None,
                error_message=None,
                error_trace=None,
            )
        except StateTransitionError:
            logger.debug("scheduler.claim_lost", migration_id=migration.id)
            return None
        logger.info("migration.retrying", migration_id=taken.id, attempts=taken.attempts)
        self.config.notifier.emit(RETRIED, taken, attempts=taken.attempts)
        return taken

    def _dispatch(self, migration: Migration, context: ExecutionContext | None, report: TickReport) -> None:
        ctx = context or self.config.context_for(migration, self.conn, self.dialect)
        try:
            report.outcomes[migration.id] = self.dispatcher.dispatch(migration, ctx)
            self._stats.migrations_dispatched += 1
        except Exception as e:
            self._stats.dispatch_failures += 1
            self._stats.last_error = str(e)
            report.errors[migration.id] = str(e)
            logger.exception("scheduler.dispatch_failed", migration_id=migration.id, error=str(e))

    # === Stats ===

    def get_stats(self) -> SchedulerStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = SchedulerStats()


__all__ = ["Scheduler", "SchedulerStats", "TickOptions", "TickReport"]
