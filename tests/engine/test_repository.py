"""Tests for trickle.engine.repository: compare-and-set storage."""

import pytest

from trickle.core.errors import MigrationNotFoundError, StateTransitionError
from trickle.engine.models import Migration, MigrationKind, canonical_arguments
from trickle.engine.repository import MigrationRepository, SliceRepository
from trickle.engine.status import MigrationStatus, SliceStatus


@pytest.fixture()
def repo(db, clock):
    return MigrationRepository(db, clock=clock)


@pytest.fixture()
def slices(db, clock):
    return SliceRepository(db, clock=clock)


def _create(repo, **kwargs):
    defaults = dict(name="items", arguments={"items": [1, 2]}, status=MigrationStatus.PENDING, max_attempts=3)
    defaults.update(kwargs)
    migration, _ = repo.create(**defaults)
    return migration


class TestCreate:
    def test_create_and_read_back(self, repo, clock):
        migration, created = repo.create(
            name="items",
            arguments={"items": [1, 2]},
            status=MigrationStatus.PENDING,
            max_attempts=3,
            shard="eu",
            estimated_total=2,
        )
        assert created is True
        assert migration.id == 1
        assert migration.shard == "eu"
        assert migration.arguments == {"items": [1, 2]}
        assert migration.kind == MigrationKind.DATA
        assert migration.created_at == clock.now
        assert migration.cursor is None
        assert migration.processed_count == 0

    def test_identity_is_idempotent(self, repo):
        first, created = repo.create(name="items", arguments={"b": 1, "a": 2}, status=MigrationStatus.PENDING, max_attempts=3)
        second, created_again = repo.create(
            name="items", arguments={"a": 2, "b": 1}, status=MigrationStatus.PENDING, max_attempts=3
        )
        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert len(repo.list_migrations()) == 1

    def test_shard_is_part_of_identity(self, repo):
        _create(repo, shard="eu")
        _create(repo, shard="us")
        _create(repo)
        assert len(repo.list_migrations()) == 3
        assert [m.shard for m in repo.list_migrations(shard="eu")] == ["eu"]

    def test_get_missing(self, repo):
        with pytest.raises(MigrationNotFoundError):
            repo.get(99)

    def test_canonical_arguments_sorted(self):
        assert canonical_arguments({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
        assert canonical_arguments(None) == "{}"


class TestListing:
    def test_fifo_order_and_status_filter(self, repo, clock):
        a = _create(repo, arguments={"n": 1})
        clock.advance(1)
        b = _create(repo, arguments={"n": 2})
        repo.transition(a.id, MigrationStatus.PAUSED)

        assert [m.id for m in repo.list_migrations()] == [a.id, b.id]
        assert [m.id for m in repo.list_migrations(statuses=[MigrationStatus.PENDING])] == [b.id]
        assert repo.list_migrations(statuses=[]) == []

    def test_exclude_composite(self, repo):
        parent = _create(repo, composite=True)
        _create(repo, shard="eu", parent_id=parent.id)
        listed = repo.list_migrations(include_composite=False)
        assert [m.shard for m in listed] == ["eu"]
        assert [c.shard for c in repo.children(parent.id)] == ["eu"]


class TestTransition:
    def test_legal_write(self, repo):
        migration = _create(repo)
        updated = repo.transition(migration.id, MigrationStatus.ENQUEUED, expected=MigrationStatus.PENDING)
        assert updated.status == MigrationStatus.ENQUEUED

    def test_illegal_write_leaves_row_untouched(self, repo):
        migration = _create(repo)
        with pytest.raises(StateTransitionError):
            repo.transition(migration.id, MigrationStatus.SUCCEEDED)
        assert repo.get(migration.id).status == MigrationStatus.PENDING

    def test_stale_expected_rejected(self, repo):
        migration = _create(repo)
        repo.transition(migration.id, MigrationStatus.ENQUEUED)
        with pytest.raises(StateTransitionError, match="expected pending"):
            repo.transition(migration.id, MigrationStatus.PAUSED, expected=MigrationStatus.PENDING)
        assert repo.get(migration.id).status == MigrationStatus.ENQUEUED

    def test_extra_fields_written(self, repo, clock):
        migration = _create(repo)
        repo.transition(migration.id, MigrationStatus.ENQUEUED)
        updated = repo.transition(migration.id, MigrationStatus.RUNNING, started_at=clock.now, heartbeat_at=clock.now)
        assert updated.started_at == clock.now
        assert updated.heartbeat_at == clock.now

    def test_unknown_field_rejected(self, repo):
        migration = _create(repo)
        with pytest.raises(ValueError, match="Not writable"):
            repo.transition(migration.id, MigrationStatus.ENQUEUED, name="other")


class TestProgressAndClaim:
    def _running(self, repo):
        migration = _create(repo)
        repo.transition(migration.id, MigrationStatus.ENQUEUED)
        return repo.transition(migration.id, MigrationStatus.RUNNING, attempts=2)

    def test_record_progress(self, repo, clock):
        migration = self._running(repo)
        assert repo.record_progress(migration.id, "0") is True
        updated = repo.get(migration.id)
        assert updated.cursor == "0"
        assert updated.processed_count == 1
        assert updated.attempts == 0
        assert updated.heartbeat_at == clock.now

    def test_record_progress_requires_running(self, repo):
        migration = _create(repo)
        assert repo.record_progress(migration.id, "0") is False
        assert repo.get(migration.id).cursor is None

    def test_only_one_claim_wins(self, repo, clock):
        migration = _create(repo)
        snapshot_a = repo.get(migration.id)
        snapshot_b = repo.get(migration.id)

        assert repo.claim(snapshot_a, MigrationStatus.ENQUEUED) is not None
        assert repo.claim(snapshot_b, MigrationStatus.ENQUEUED) is None

    def test_claim_refreshes_heartbeat(self, repo, clock):
        migration = _create(repo)
        claimed = repo.claim(migration, MigrationStatus.ENQUEUED)
        assert claimed.heartbeat_at == clock.now

        clock.advance(30)
        reclaimed = repo.claim(claimed, MigrationStatus.ENQUEUED)
        assert reclaimed.heartbeat_at == clock.now

    def test_clear_heartbeat(self, repo):
        migration = repo.claim(_create(repo), MigrationStatus.ENQUEUED)
        assert repo.clear_heartbeat(migration.id, MigrationStatus.ENQUEUED) is True
        assert repo.get(migration.id).heartbeat_at is None
        assert repo.clear_heartbeat(migration.id, MigrationStatus.RUNNING) is False


class TestSliceRepository:
    def test_start_and_succeed(self, repo, slices):
        migration = _create(repo)
        record = slices.start(migration.id, 1, 3)
        assert record.status == SliceStatus.RUNNING
        assert record.attempts == 1

        slices.succeed(record)
        assert slices.get(record.id).status == SliceStatus.SUCCEEDED

    def test_failed_slice_restarts(self, repo, slices):
        migration = _create(repo)
        record = slices.start(migration.id, 1, 3)
        slices.fail(record, "RuntimeError", "boom")
        failed = slices.get(record.id)
        assert failed.error_kind == "RuntimeError"

        again = slices.start(migration.id, 1, 3)
        assert again.id == record.id
        assert again.attempts == 2
        assert again.error_kind is None

    def test_interrupted_slice_restarts(self, repo, slices):
        """A slice left running by a crash is re-run."""
        migration = _create(repo)
        slices.start(migration.id, 1, 3)
        again = slices.start(migration.id, 1, 3)
        assert again.status == SliceStatus.RUNNING
        assert again.attempts == 2

    def test_succeeded_slice_cannot_restart(self, repo, slices):
        migration = _create(repo)
        record = slices.start(migration.id, 1, 3)
        slices.succeed(record)
        with pytest.raises(StateTransitionError):
            slices.start(migration.id, 1, 3)

    def test_for_migration_ordered(self, repo, slices):
        migration = _create(repo)
        slices.start(migration.id, 4, 6)
        slices.start(migration.id, 1, 3)
        assert [s.min_value for s in slices.for_migration(migration.id)] == [1, 4]


class TestMigrationModel:
    @pytest.mark.parametrize(
        "status, processed, total, expected",
        [
            (MigrationStatus.RUNNING, 1, 4, 25.0),
            (MigrationStatus.RUNNING, 5, 4, 100.0),
            (MigrationStatus.RUNNING, 0, 0, 0.0),
            (MigrationStatus.RUNNING, 3, None, None),
            (MigrationStatus.SUCCEEDED, 0, None, 100.0),
        ],
    )
    def test_progress(self, status, processed, total, expected):
        migration = Migration(id=1, name="x", status=status, processed_count=processed, estimated_total=total)
        assert migration.progress == expected

    def test_resource_key(self):
        migration = Migration(id=1, name="schema_change", status=MigrationStatus.PENDING, table_name="users", shard="eu")
        assert migration.resource_key == ("users", "eu", "default")
