"""Trickle Engine -- resumable, throttled batch migrations.

Architecture::

    Layer 1 -- State
        status.py        MigrationStatus / SliceStatus and their transition tables
        models.py        Migration and SliceRecord records
        outcome.py       Completed / Stopped / Throttled / Failed
        repository.py    Compare-and-set storage for migrations and slices
        aggregate.py     Composite parent status from child statuses

    Layer 2 -- Work
        cursor.py        Bounded-range slicing (next_slice, Slice)
        descriptor.py    WorkDescriptor, SequenceWorkDescriptor, RangeWorkDescriptor
        registry.py      name -> descriptor factory
        builtins.py      schema_change, backfill_column, copy_column, ...
        context.py       ExecutionContext (shard + connection)
        config.py        EngineConfig

    Layer 3 -- Execution
        runner.py        One slice per call
        executor.py      Repeated runs per dispatch; dispatchers
        scheduler.py     Tick-driven selection and claiming
        operator.py      enqueue / approve / pause / resume / cancel / retry
"""

from trickle.engine.aggregate import aggregate_progress, aggregate_status, refresh_parent
from trickle.engine.builtins import BUILTINS, register_builtins
from trickle.engine.config import EngineConfig
from trickle.engine.context import ExecutionContext
from trickle.engine.cursor import Slice, iter_slices, next_slice
from trickle.engine.descriptor import RangeWorkDescriptor, SequenceWorkDescriptor, WorkDescriptor
from trickle.engine.executor import InlineDispatcher, MigrationExecutor, RecordingDispatcher
from trickle.engine.models import Migration, MigrationKind, SliceRecord
from trickle.engine.operator import Operator
from trickle.engine.outcome import Completed, Failed, Outcome, Stopped, Throttled
from trickle.engine.registry import WorkRegistry, default_registry, register_work
from trickle.engine.repository import MigrationRepository, SliceRepository
from trickle.engine.runner import Runner
from trickle.engine.scheduler import Scheduler, SchedulerStats, TickOptions, TickReport
from trickle.engine.status import (
    IN_FLIGHT,
    TERMINAL,
    MigrationStatus,
    SliceStatus,
    is_valid_transition,
    transition_path,
    validate_transition,
)

__all__ = [
    # State
    "MigrationStatus",
    "SliceStatus",
    "TERMINAL",
    "IN_FLIGHT",
    "is_valid_transition",
    "validate_transition",
    "transition_path",
    "Migration",
    "MigrationKind",
    "SliceRecord",
    "Outcome",
    "Completed",
    "Stopped",
    "Throttled",
    "Failed",
    "MigrationRepository",
    "SliceRepository",
    "aggregate_status",
    "aggregate_progress",
    "refresh_parent",
    # Work
    "Slice",
    "next_slice",
    "iter_slices",
    "WorkDescriptor",
    "SequenceWorkDescriptor",
    "RangeWorkDescriptor",
    "WorkRegistry",
    "default_registry",
    "register_work",
    "BUILTINS",
    "register_builtins",
    "ExecutionContext",
    "EngineConfig",
    # Execution
    "Runner",
    "MigrationExecutor",
    "InlineDispatcher",
    "RecordingDispatcher",
    "Scheduler",
    "SchedulerStats",
    "TickOptions",
    "TickReport",
    "Operator",
]
