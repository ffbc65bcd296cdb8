"""Tests for trickle.core.errors module."""

import pytest

from trickle.core.errors import (
    ConfigError,
    CursorRegressionError,
    ErrorCategory,
    ErrorContext,
    MigrationNotFoundError,
    StateTransitionError,
    StuckTimeout,
    TerminalExecutionError,
    TransientExecutionError,
    TrickleError,
    ValidationError,
    WorkDescriptorNotFoundError,
    is_retryable,
)
from trickle.engine.status import MigrationStatus


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_create_empty_context(self):
        ctx = ErrorContext()
        assert ctx.migration_id is None
        assert ctx.metadata == {}
        assert ctx.to_dict() == {}

    def test_to_dict_includes_set_fields(self):
        """to_dict includes only non-None fields plus metadata."""
        ctx = ErrorContext(migration_id=7, name="backfill_column", metadata={"batch": 3})
        d = ctx.to_dict()
        assert d == {"migration_id": 7, "name": "backfill_column", "batch": 3}
        assert "shard" not in d


class TestTrickleError:
    """Test the base error."""

    def test_defaults(self):
        error = TrickleError("boom")
        assert error.message == "boom"
        assert error.category == ErrorCategory.INTERNAL
        assert error.retryable is False
        assert error.cause is None

    def test_cause_is_chained(self):
        original = RuntimeError("disk full")
        error = TrickleError("write failed", cause=original)
        assert error.cause is original
        assert error.__cause__ is original

    def test_with_context_sets_known_fields_and_metadata(self):
        error = TrickleError("x").with_context(migration_id=3, table="users")
        assert error.context.migration_id == 3
        assert error.context.metadata == {"table": "users"}

    def test_to_dict(self):
        error = TransientExecutionError(
            "slice failed",
            context=ErrorContext(migration_id=1),
            cause=ValueError("bad row"),
        )
        d = error.to_dict()
        assert d["error_type"] == "TransientExecutionError"
        assert d["category"] == "EXECUTION"
        assert d["retryable"] is True
        assert d["context"] == {"migration_id": 1}
        assert d["cause"] == "ValueError: bad row"


class TestErrorTypes:
    """Test the concrete error types."""

    def test_validation_error_fields(self):
        error = ValidationError("bad", field="batch_size", value=0)
        assert error.field == "batch_size"
        assert error.to_dict()["value"] == "0"
        assert error.retryable is False

    def test_descriptor_not_found_lists_available(self):
        error = WorkDescriptorNotFoundError("nope", ["a", "b"])
        assert "nope" in str(error)
        assert "a, b" in str(error)
        assert error.category == ErrorCategory.NOT_FOUND
        assert isinstance(error, ValidationError)

    def test_state_transition_message(self):
        error = StateTransitionError(MigrationStatus.SUCCEEDED, MigrationStatus.RUNNING, "MigrationStatus")
        assert str(error) == "Invalid MigrationStatus transition: succeeded → running"
        assert isinstance(error, ValueError)
        assert error.current == MigrationStatus.SUCCEEDED

    def test_state_transition_reason(self):
        error = StateTransitionError("a", "b", reason="stale")
        assert str(error).endswith("(stale)")

    def test_migration_not_found_is_lookup_error(self):
        with pytest.raises(LookupError):
            raise MigrationNotFoundError(42)

    def test_terminal_and_cursor_errors_not_retryable(self):
        assert TerminalExecutionError("x").retryable is False
        assert CursorRegressionError("5", "3").retryable is False
        assert ConfigError("x").category == ErrorCategory.CONFIG

    def test_stuck_timeout(self):
        from datetime import UTC, datetime

        error = StuckTimeout(9, datetime(2024, 1, 1, tzinfo=UTC), 900)
        assert error.retryable is True
        assert error.context.migration_id == 9
        assert "900s" in str(error)


class TestIsRetryable:
    def test_trickle_errors_use_flag(self):
        assert is_retryable(TransientExecutionError("x")) is True
        assert is_retryable(ValidationError("x")) is False

    def test_plain_exceptions_are_retryable(self):
        assert is_retryable(RuntimeError("x")) is True
