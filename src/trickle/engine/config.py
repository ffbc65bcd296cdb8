"""
Explicit engine configuration.

``EngineConfig`` is built once at startup and passed to the Runner, the
Scheduler and the Operator. Nothing in the engine reads or mutates global
configuration.

Architecture:
    ::

        EngineConfig
        ├── settings           EngineSettings (pydantic-settings, TRICKLE_* env)
        ├── registry           WorkRegistry (name -> descriptor factory)
        ├── error_handler      handle(error, migration), exceptions contained
        ├── throttle           Throttle (interval-cached predicate)
        ├── backtrace_cleaner  trims trace lines before they are persisted
        ├── notifier           NotificationBus (started, ran_slice, ...)
        ├── clock / sleep      injectable time sources
        └── context_factory    Migration -> ExecutionContext

Example:
    >>> config = EngineConfig(
    ...     settings=EngineSettings(max_attempts=3),
    ...     throttle=Throttle(replica_lagging, interval=5.0),
    ...     error_handler=lambda error, migration: sentry.capture(error),
    ... )
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from trickle.core.dialect import Dialect
from trickle.core.events import NotificationBus
from trickle.core.protocols import Connection
from trickle.core.settings import EngineSettings
from trickle.core.throttle import Throttle
from trickle.core.timestamps import utc_now
from trickle.engine.context import ExecutionContext
from trickle.engine.descriptor import WorkDescriptor
from trickle.engine.registry import WorkRegistry, default_registry

if TYPE_CHECKING:
    from trickle.core.errors import TrickleError
    from trickle.engine.models import Migration

ErrorHandler = Callable[["TrickleError", "Migration"], None]
BacktraceCleaner = Callable[[list[str]], list[str]]
ContextFactory = Callable[["Migration"], ExecutionContext]


@dataclass
class EngineConfig:
    """Everything the engine needs besides storage."""

    settings: EngineSettings = field(default_factory=EngineSettings)
    registry: WorkRegistry = field(default_factory=lambda: default_registry)
    error_handler: ErrorHandler | None = None
    throttle: Throttle | None = None
    backtrace_cleaner: BacktraceCleaner | None = None
    notifier: NotificationBus = field(default_factory=NotificationBus)
    clock: Callable[[], datetime] = utc_now
    sleep: Callable[[float], None] = time.sleep
    context_factory: ContextFactory | None = None

    def __post_init__(self) -> None:
        if self.throttle is None:
            self.throttle = Throttle(interval=self.settings.throttle_interval)

    def context_for(
        self,
        migration: Migration,
        connection: Connection | None = None,
        dialect: Dialect | None = None,
    ) -> ExecutionContext:
        """Execution context for *migration*.

        Uses ``context_factory`` when set; otherwise runs on the engine's
        own connection.
        """
        if self.context_factory is not None:
            return self.context_factory(migration)
        return ExecutionContext(
            shard=migration.shard,
            connection_name=migration.connection_name,
            connection=connection,
            dialect=dialect,
        )

    def build_descriptor(self, migration: Migration, context: ExecutionContext) -> WorkDescriptor:
        """Instantiate and prepare the descriptor registered for *migration*."""
        descriptor = self.registry.build(migration.name, migration.arguments)
        descriptor.prepare(context, self.settings, self.sleep)
        return descriptor

    def clean_trace(self, lines: list[str]) -> str:
        """Apply the backtrace cleaner and keep the last ``trace_limit`` lines."""
        if self.backtrace_cleaner is not None:
            lines = self.backtrace_cleaner(lines)
        limit = self.settings.trace_limit
        kept = lines[-limit:] if limit else []
        return "".join(kept)


__all__ = ["EngineConfig", "ErrorHandler", "BacktraceCleaner", "ContextFactory"]
