"""
Migration and slice status enums with their transition tables.

Every status write in the engine goes through :func:`validate_transition`
(or :func:`validate_slice_transition`). A pair missing from the table is a
programming error and raises :class:`~trickle.core.errors.StateTransitionError`;
the stored status is left unchanged.

Valid migration transition graph::

    pending    → enqueued | paused | cancelled
    enqueued   → running | paused | cancelled | failed
    running    → enqueued | succeeded | pausing | cancelling | errored | failed
    pausing    → paused | cancelling | succeeded | errored | failed
    paused     → pending | cancelled
    errored    → running | failed | cancelled | paused
    failed     → pending (retry)
    cancelling → cancelled | succeeded | errored | failed
    delayed    → pending | cancelled
    succeeded  → (terminal)
    cancelled  → (terminal)

``pausing`` and ``cancelling`` are intents: an operator asked a running
migration to stop, and the Runner completes the request at the next slice
boundary.

Tags:
    state-machine, status, transitions, validation, trickle
"""

from __future__ import annotations

from collections import deque
from enum import Enum

from trickle.core.errors import StateTransitionError


class MigrationStatus(str, Enum):
    """Lifecycle status of a migration."""

    PENDING = "pending"  # Waiting for the scheduler
    ENQUEUED = "enqueued"  # Claimed by a scheduler, or released between dispatches
    RUNNING = "running"  # Slices being processed
    PAUSING = "pausing"  # Pause requested while running
    PAUSED = "paused"  # Stopped by an operator, resumable
    ERRORED = "errored"  # Last slice failed, attempts remain
    FAILED = "failed"  # Attempts exhausted, needs an operator retry
    SUCCEEDED = "succeeded"  # Domain exhausted
    CANCELLING = "cancelling"  # Cancel requested while running
    CANCELLED = "cancelled"  # Stopped for good by an operator
    DELAYED = "delayed"  # Enqueued with delay, waiting for approval


# --- MigrationStatus transition rules ---

TRANSITIONS: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    MigrationStatus.PENDING: frozenset({
        MigrationStatus.ENQUEUED,
        MigrationStatus.PAUSED,
        MigrationStatus.CANCELLED,
    }),
    MigrationStatus.ENQUEUED: frozenset({
        MigrationStatus.RUNNING,
        MigrationStatus.PAUSED,
        MigrationStatus.CANCELLED,
        MigrationStatus.FAILED,
    }),
    MigrationStatus.RUNNING: frozenset({
        MigrationStatus.ENQUEUED,  # released after throttling or a dispatch budget
        MigrationStatus.SUCCEEDED,
        MigrationStatus.PAUSING,
        MigrationStatus.CANCELLING,
        MigrationStatus.ERRORED,
        MigrationStatus.FAILED,
    }),
    MigrationStatus.PAUSING: frozenset({
        MigrationStatus.PAUSED,
        MigrationStatus.CANCELLING,
        MigrationStatus.SUCCEEDED,
        MigrationStatus.ERRORED,
        MigrationStatus.FAILED,
    }),
    MigrationStatus.PAUSED: frozenset({
        MigrationStatus.PENDING,
        MigrationStatus.CANCELLED,
    }),
    MigrationStatus.ERRORED: frozenset({
        MigrationStatus.RUNNING,
        MigrationStatus.FAILED,
        MigrationStatus.CANCELLED,
        MigrationStatus.PAUSED,
    }),
    MigrationStatus.FAILED: frozenset({
        MigrationStatus.PENDING,  # retry
    }),
    MigrationStatus.CANCELLING: frozenset({
        MigrationStatus.CANCELLED,
        MigrationStatus.SUCCEEDED,
        MigrationStatus.ERRORED,
        MigrationStatus.FAILED,
    }),
    MigrationStatus.DELAYED: frozenset({
        MigrationStatus.PENDING,
        MigrationStatus.CANCELLED,
    }),
    MigrationStatus.SUCCEEDED: frozenset(),  # terminal
    MigrationStatus.CANCELLED: frozenset(),  # terminal
}

TERMINAL: frozenset[MigrationStatus] = frozenset({
    MigrationStatus.SUCCEEDED,
    MigrationStatus.FAILED,
    MigrationStatus.CANCELLED,
})

# Statuses whose heartbeat the scheduler watches
IN_FLIGHT: frozenset[MigrationStatus] = frozenset({
    MigrationStatus.ENQUEUED,
    MigrationStatus.RUNNING,
    MigrationStatus.PAUSING,
    MigrationStatus.CANCELLING,
})

STOP_INTENTS: frozenset[MigrationStatus] = frozenset({
    MigrationStatus.PAUSING,
    MigrationStatus.CANCELLING,
})


def is_valid_transition(current: MigrationStatus, target: MigrationStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def validate_transition(current: MigrationStatus, target: MigrationStatus) -> None:
    """Raise :class:`StateTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_transition(MigrationStatus.RUNNING, MigrationStatus.SUCCEEDED)
        >>> validate_transition(MigrationStatus.SUCCEEDED, MigrationStatus.RUNNING)
        Traceback (most recent call last):
        ...
        StateTransitionError: Invalid MigrationStatus transition: succeeded → running
    """
    if not is_valid_transition(current, target):
        raise StateTransitionError(current, target, "MigrationStatus")


def transition_path(
    current: MigrationStatus, target: MigrationStatus
) -> list[MigrationStatus] | None:
    """Shortest sequence of legal writes leading from *current* to *target*.

    Returns ``[]`` when they are equal and ``None`` when *target* is
    unreachable. Used to move composite parents to their aggregated status
    without bypassing the validator.
    """
    if current == target:
        return []

    previous: dict[MigrationStatus, MigrationStatus] = {}
    queue = deque([current])
    seen = {current}
    while queue:
        node = queue.popleft()
        # Sorted for a deterministic path
        for nxt in sorted(TRANSITIONS[node], key=lambda s: s.value):
            if nxt in seen:
                continue
            seen.add(nxt)
            previous[nxt] = node
            if nxt == target:
                path = [nxt]
                while previous[path[-1]] != current:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            queue.append(nxt)
    return None


class SliceStatus(str, Enum):
    """Status of one durable slice record (bounded-range work)."""

    ENQUEUED = "enqueued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


SLICE_TRANSITIONS: dict[SliceStatus, frozenset[SliceStatus]] = {
    SliceStatus.ENQUEUED: frozenset({SliceStatus.RUNNING, SliceStatus.FAILED}),
    SliceStatus.RUNNING: frozenset({
        SliceStatus.SUCCEEDED,
        SliceStatus.FAILED,
        SliceStatus.ENQUEUED,
    }),
    SliceStatus.FAILED: frozenset({SliceStatus.ENQUEUED, SliceStatus.RUNNING}),
    SliceStatus.SUCCEEDED: frozenset(),  # terminal
}


def validate_slice_transition(current: SliceStatus, target: SliceStatus) -> None:
    """Raise :class:`StateTransitionError` if the slice write is illegal."""
    if target not in SLICE_TRANSITIONS.get(current, frozenset()):
        raise StateTransitionError(current, target, "SliceStatus")


__all__ = [
    "MigrationStatus",
    "TRANSITIONS",
    "TERMINAL",
    "IN_FLIGHT",
    "STOP_INTENTS",
    "is_valid_transition",
    "validate_transition",
    "transition_path",
    "SliceStatus",
    "SLICE_TRANSITIONS",
    "validate_slice_transition",
]
