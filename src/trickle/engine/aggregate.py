"""
Status aggregation for composite (sharded) migrations.

A migration enqueued for several shards becomes one composite parent plus
one child per shard. Only children are scheduled; the parent's status is
derived from theirs by :func:`aggregate_status`, the single place this
rule lives:

    1. every child succeeded                → succeeded
    2. any child in flight or errored, or
       some succeeded while others wait     → running
    3. any child failed                     → failed
    4. every child settled, some cancelled  → cancelled
    5. any child paused                     → paused
    6. every child delayed                  → delayed
    7. otherwise (children waiting)         → pending

In-flight children take precedence over failed ones so a parent never
reports ``failed`` while shards are still making progress.

:func:`refresh_parent` writes the aggregated status through the normal
validated transitions, walking a legal path when the target is not a
direct successor.
"""

from __future__ import annotations

from collections.abc import Iterable

from trickle.core.logging import get_logger
from trickle.engine.models import Migration
from trickle.engine.repository import MigrationRepository
from trickle.engine.status import TERMINAL, MigrationStatus, transition_path

logger = get_logger(__name__)

_ACTIVE = frozenset({
    MigrationStatus.ENQUEUED,
    MigrationStatus.RUNNING,
    MigrationStatus.PAUSING,
    MigrationStatus.CANCELLING,
    MigrationStatus.ERRORED,
})

_WAITING = frozenset({MigrationStatus.PENDING, MigrationStatus.DELAYED})


def aggregate_status(statuses: Iterable[MigrationStatus]) -> MigrationStatus:
    """Parent status for a set of child statuses."""
    values = list(statuses)
    if not values:
        raise ValueError("Cannot aggregate an empty set of child statuses")

    present = set(values)
    if present == {MigrationStatus.SUCCEEDED}:
        return MigrationStatus.SUCCEEDED
    if present & _ACTIVE or (MigrationStatus.SUCCEEDED in present and present & _WAITING):
        return MigrationStatus.RUNNING
    if MigrationStatus.FAILED in present:
        return MigrationStatus.FAILED
    if present <= TERMINAL:
        return MigrationStatus.CANCELLED
    if MigrationStatus.PAUSED in present:
        return MigrationStatus.PAUSED
    if present == {MigrationStatus.DELAYED}:
        return MigrationStatus.DELAYED
    return MigrationStatus.PENDING


def aggregate_progress(children: Iterable[Migration]) -> float | None:
    """Mean child progress; None if any child's total is unknown."""
    values = [child.progress for child in children]
    if not values or any(value is None for value in values):
        return None
    return round(sum(values) / len(values), 2)


def refresh_parent(repository: MigrationRepository, parent_id: int) -> Migration:
    """Bring a composite parent's stored status in line with its children."""
    parent = repository.get(parent_id)
    children = repository.children(parent_id)
    if not children:
        return parent

    target = aggregate_status(child.status for child in children)
    path = transition_path(parent.status, target)
    if path is None:
        logger.warning(
            "aggregate.unreachable",
            parent_id=parent_id,
            current=parent.status.value,
            target=target.value,
        )
        return parent

    processed = sum(child.processed_count for child in children)
    now = repository.clock()
    for step in path:
        fields: dict[str, object] = {"processed_count": processed}
        if step == MigrationStatus.RUNNING and parent.started_at is None:
            fields["started_at"] = now
        if step in TERMINAL:
            fields["finished_at"] = now
        elif parent.status in TERMINAL:
            fields["finished_at"] = None
        parent = repository.transition(parent_id, step, expected=parent.status, **fields)
    return parent


__all__ = ["aggregate_status", "aggregate_progress", "refresh_parent"]
