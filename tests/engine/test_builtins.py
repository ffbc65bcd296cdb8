"""Tests for trickle.engine.builtins against real SQLite tables."""

import pytest
from structlog.testing import capture_logs

from trickle.core.dialect import PostgreSQLDialect
from trickle.core.errors import ValidationError
from trickle.core.settings import EngineSettings
from trickle.engine.builtins import BUILTINS, SchemaChange, check_identifier, register_builtins
from trickle.engine.context import ExecutionContext
from trickle.engine.outcome import Completed, Failed
from trickle.engine.registry import WorkRegistry, default_registry
from trickle.engine.status import MigrationStatus


@pytest.fixture()
def shop(db):
    """users 1..7 and a handful of posts, some orphaned."""
    db.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY,
            name TEXT,
            name_copy TEXT,
            age_text TEXT,
            age INTEGER,
            active INTEGER,
            nickname TEXT,
            posts_count INTEGER DEFAULT 0
        );
        CREATE TABLE posts (
            id INTEGER PRIMARY KEY,
            user_id INTEGER,
            title TEXT,
            published INTEGER DEFAULT 0
        );
        """
    )
    db.executemany(
        "INSERT INTO users (id, name, age_text, active, nickname) VALUES (?, ?, ?, ?, ?)",
        [(n, f"user{n}", str(20 + n), 1 if n % 2 else None, f"nick{n}") for n in range(1, 8)],
    )
    db.executemany(
        "INSERT INTO posts (id, user_id, title, published) VALUES (?, ?, ?, ?)",
        [
            (1, 1, "hello", 1),
            (2, 1, "draft one", 0),
            (3, 2, "draft two", 0),
            (4, 2, "final", 1),
            (5, 99, "orphan", 1),
            (6, None, "anonymous", 0),
            (7, 98, "orphan draft", 0),
        ],
    )
    db.commit()
    return db


def run_builtin(operator, runner, name, arguments):
    migration = operator.enqueue(name, arguments)
    for _ in range(50):
        outcome = runner.run(migration)
        if isinstance(outcome, Failed):
            raise AssertionError(f"{name} failed: {outcome.error}")
        if isinstance(outcome, Completed) and outcome.finished:
            return operator.get(migration.id)
    raise AssertionError(f"{name} did not finish")


def column(db, sql):
    return [row[0] for row in db.execute(sql).fetchall()]


class TestBackfillColumn:
    def test_sets_every_row(self, shop, operator, runner):
        migration = run_builtin(operator, runner, "backfill_column", {"table_name": "users", "updates": {"active": 1}})

        assert migration.status == MigrationStatus.SUCCEEDED
        assert migration.estimated_total == 3
        assert migration.processed_count == 3
        assert column(shop, "SELECT active FROM users ORDER BY id") == [1] * 7

    def test_null_value(self, shop, operator, runner):
        run_builtin(operator, runner, "backfill_column", {"table_name": "users", "updates": {"nickname": None}})
        assert column(shop, "SELECT nickname FROM users") == [None] * 7

    def test_explicit_range(self, shop, operator, runner):
        run_builtin(
            operator, runner, "backfill_column",
            {"table_name": "users", "updates": {"active": 0}, "start": 2, "end": 3},
        )
        assert column(shop, "SELECT active FROM users ORDER BY id") == [1, 0, 0, None, 1, None, 1]

    def test_empty_table_succeeds(self, shop, operator, runner):
        shop.execute("DELETE FROM users")
        shop.commit()

        migration = run_builtin(operator, runner, "backfill_column", {"table_name": "users", "updates": {"active": 1}})

        assert migration.processed_count == 0
        assert migration.estimated_total == 0

    def test_needs_updates(self, shop, operator):
        with pytest.raises(ValidationError, match="at least one column"):
            operator.enqueue("backfill_column", {"table_name": "users", "updates": {}})


class TestCopyColumn:
    def test_copy_and_cast(self, shop, operator, runner):
        run_builtin(
            operator, runner, "copy_column",
            {
                "table_name": "users",
                "copy_from": ["name", "age_text"],
                "copy_to": ["name_copy", "age"],
                "type_cast": {"age": "INTEGER"},
            },
        )

        assert column(shop, "SELECT name_copy FROM users ORDER BY id") == [f"user{n}" for n in range(1, 8)]
        assert column(shop, "SELECT age FROM users ORDER BY id") == list(range(21, 28))

    def test_mismatched_columns(self, shop, operator):
        with pytest.raises(ValidationError, match="same length"):
            operator.enqueue("copy_column", {"table_name": "users", "copy_from": ["name"], "copy_to": []})

    def test_cast_must_name_a_target(self, shop, operator):
        with pytest.raises(ValidationError, match="type_cast"):
            operator.enqueue(
                "copy_column",
                {"table_name": "users", "copy_from": ["name"], "copy_to": ["name_copy"], "type_cast": {"age": "INT"}},
            )


class TestDeleteRecords:
    def test_orphaned(self, shop, operator, runner):
        run_builtin(
            operator, runner, "delete_orphaned_records",
            {"table_name": "posts", "foreign_key": "user_id", "parent_table": "users"},
        )
        assert column(shop, "SELECT id FROM posts ORDER BY id") == [1, 2, 3, 4, 6]

    def test_associated(self, shop, operator, runner):
        migration = run_builtin(
            operator, runner, "delete_associated_records",
            {"table_name": "posts", "foreign_key": "user_id", "parent_id": 2},
        )

        assert column(shop, "SELECT id FROM posts ORDER BY id") == [1, 2, 5, 6, 7]
        # Key domain narrowed to the parent's rows: ids 3..4
        assert migration.estimated_total == 1

    def test_associated_needs_parent(self, shop, operator):
        with pytest.raises(ValidationError, match="parent_id"):
            operator.enqueue(
                "delete_associated_records", {"table_name": "posts", "foreign_key": "user_id", "parent_id": None}
            )


class TestPerformActionOnRelation:
    def test_delete_matching(self, shop, operator, runner):
        run_builtin(
            operator, runner, "perform_action_on_relation",
            {"table_name": "posts", "action": "delete", "condition": "published = 0"},
        )
        assert column(shop, "SELECT id FROM posts ORDER BY id") == [1, 4, 5]

    def test_update_matching(self, shop, operator, runner):
        run_builtin(
            operator, runner, "perform_action_on_relation",
            {
                "table_name": "posts",
                "action": "update",
                "condition": "title LIKE 'draft%'",
                "updates": {"published": 1},
            },
        )
        assert column(shop, "SELECT id FROM posts WHERE published = 0 ORDER BY id") == [6, 7]

    def test_unknown_action(self, shop, operator):
        with pytest.raises(ValidationError, match="action must be one of"):
            operator.enqueue("perform_action_on_relation", {"table_name": "posts", "action": "truncate"})

    def test_update_needs_values(self, shop, operator):
        with pytest.raises(ValidationError, match="updates"):
            operator.enqueue("perform_action_on_relation", {"table_name": "posts", "action": "update"})


class TestResetCounters:
    def test_recomputes(self, shop, operator, runner):
        shop.execute("UPDATE users SET posts_count = 42")
        shop.commit()

        run_builtin(
            operator, runner, "reset_counters",
            {
                "table_name": "users",
                "counters": [{"column": "posts_count", "child_table": "posts", "foreign_key": "user_id"}],
            },
        )

        assert column(shop, "SELECT posts_count FROM users ORDER BY id") == [2, 2, 0, 0, 0, 0, 0]

    def test_counter_shape_checked(self, shop, operator):
        with pytest.raises(ValidationError, match="missing"):
            operator.enqueue("reset_counters", {"table_name": "users", "counters": [{"column": "posts_count"}]})


class TestSchemaChange:
    DEFINITION = "CREATE INDEX idx_posts_user ON posts (user_id)"

    def _indexes(self, db):
        return column(db, "SELECT name FROM sqlite_master WHERE type = 'index' AND name = 'idx_posts_user'")

    def test_creates_index(self, shop, operator, runner):
        migration = operator.enqueue_schema_change("posts_user", "posts", self.DEFINITION)

        outcome = runner.run(migration)

        assert outcome == Completed(migration.id, "0", finished=True)
        assert self._indexes(shop) == ["idx_posts_user"]

    def test_existing_index_skipped(self, shop, operator, runner):
        shop.execute(self.DEFINITION)
        shop.commit()
        migration = operator.enqueue_schema_change("posts_user", "posts", self.DEFINITION)

        with capture_logs() as logs:
            outcome = runner.run(migration)

        assert outcome == Completed(migration.id, "0", finished=True)
        assert any(entry["event"] == "schema_change.index_exists" for entry in logs)

    def test_plain_ddl(self, shop, operator, runner):
        migration = operator.enqueue_schema_change("posts_slug", "posts", "ALTER TABLE posts ADD COLUMN slug TEXT")

        runner.run(migration)

        assert "slug" in [row[1] for row in shop.execute("PRAGMA table_info(posts)").fetchall()]

    def test_failing_ddl_is_recorded(self, shop, operator, runner):
        migration = operator.enqueue_schema_change("bad", "posts", "ALTER TABLE posts ADD COLUMN title TEXT")

        outcome = runner.run(migration)

        assert isinstance(outcome, Failed)
        assert operator.get(migration.id).error_kind == "OperationalError"


class ScriptedConnection:
    """Records every statement; raises for the ones listed in *failing*."""

    def __init__(self, failing=()):
        self.log = []
        self.failing = set(failing)

    def execute(self, sql, params=()):
        self.log.append(sql)
        if sql in self.failing:
            raise RuntimeError("canceling statement due to statement timeout")
        return self

    def executemany(self, sql, params):
        self.log.append(sql)
        return self

    def fetchone(self):
        return None

    def commit(self):
        self.log.append("COMMIT")

    def rollback(self):
        self.log.append("ROLLBACK")


class TestStatementTimeout:
    DEFINITION = "CREATE INDEX CONCURRENTLY idx_posts_user ON posts (user_id)"

    def _work(self, conn):
        work = SchemaChange("posts_user", "posts", self.DEFINITION)
        context = ExecutionContext(connection=conn, dialect=PostgreSQLDialect())
        return work.prepare(context, EngineSettings(_env_file=None, statement_timeout_seconds=5))

    def test_timeout_reset_after_ddl(self):
        conn = ScriptedConnection()

        self._work(conn).process(self.DEFINITION)

        assert conn.log == [
            "SET statement_timeout = 5000",
            PostgreSQLDialect().index_validity_query(),
            self.DEFINITION,
            "COMMIT",
            "RESET statement_timeout",
            "COMMIT",
        ]

    def test_timeout_reset_after_failed_ddl(self):
        conn = ScriptedConnection(failing=[self.DEFINITION])

        with pytest.raises(RuntimeError, match="statement timeout"):
            self._work(conn).process(self.DEFINITION)

        assert conn.log[-4:] == [self.DEFINITION, "ROLLBACK", "RESET statement_timeout", "COMMIT"]

    def test_no_timeout_configured(self):
        conn = ScriptedConnection()
        work = SchemaChange("posts_user", "posts", self.DEFINITION)
        work.prepare(ExecutionContext(connection=conn, dialect=PostgreSQLDialect()), EngineSettings(_env_file=None))

        work.process(self.DEFINITION)

        assert not any("statement_timeout" in sql for sql in conn.log)


class TestIdentifiers:
    @pytest.mark.parametrize("value", ["users", "_tmp", "public.users", "Users2"])
    def test_accepted(self, value):
        assert check_identifier(value, "table_name") == value

    @pytest.mark.parametrize("value", ["", "1users", "users; DROP TABLE users", "a.b.c", "user-s", None, 7])
    def test_rejected(self, value):
        with pytest.raises(ValidationError, match="Invalid SQL identifier"):
            check_identifier(value, "table_name")

    def test_missing_table_rejected_at_enqueue(self, shop, operator):
        with pytest.raises(ValidationError, match="does not exist"):
            operator.enqueue("backfill_column", {"table_name": "ghosts", "updates": {"x": 1}})

    def test_bad_column_rejected_at_enqueue(self, shop, operator):
        with pytest.raises(ValidationError, match="Invalid SQL identifier"):
            operator.enqueue("backfill_column", {"table_name": "users", "updates": {"active = 1 --": 1}})


class TestRegistration:
    def test_default_registry_has_builtins(self):
        for name in BUILTINS:
            assert name in default_registry

    def test_existing_names_kept(self):
        registry = WorkRegistry()
        custom = object()
        registry.register("backfill_column", lambda **kwargs: custom)

        register_builtins(registry)

        assert "reset_counters" in registry
        assert registry.get("backfill_column")() is custom
