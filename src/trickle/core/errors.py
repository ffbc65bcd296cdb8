"""
Structured error types for the trickle migration engine.

Every failure the engine knows how to classify is a ``TrickleError``. Errors
carry a category, an explicit retry flag and structured context so the
Runner can decide between ``errored`` and ``failed`` without string matching,
and so log sinks get the same fields every time.

Manifesto:
    - **Typed hierarchy:** Configuration problems and slice failures are different types
    - **Explicit retry semantics:** Each error knows if re-running can help
    - **Rich context:** migration id, name, shard and cursor travel with the error
    - **Error chaining:** The original exception is preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        TrickleError                              │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError          StateTransitionError   ConfigError     │
        │  (VALIDATION)             (STATE)                (CONFIG)        │
        │       │                                                          │
        │  WorkDescriptorNotFound   MigrationNotFoundError                 │
        │                                                                  │
        │  TransientExecutionError  TerminalExecutionError  StuckTimeout   │
        │  (retryable=True)         (retryable=False)       (EXECUTION)    │
        │                                                                  │
        │  CursorRegressionError                                           │
        └─────────────────────────────────────────────────────────────────┘

Propagation:
    ``ValidationError`` and ``StateTransitionError`` are programming or
    configuration errors. They are raised synchronously to whoever triggered
    them and are never absorbed. Everything raised while a slice is being
    processed is caught at the Runner boundary and converted into persisted
    state, wrapped in ``TransientExecutionError`` or ``TerminalExecutionError``.

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, trickle

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"     # Bad arguments or configuration at enqueue time
    STATE = "STATE"               # Illegal or stale status write
    CONFIG = "CONFIG"             # Engine wiring problems
    NOT_FOUND = "NOT_FOUND"       # Missing migration or work definition
    EXECUTION = "EXECUTION"       # Failures raised while processing a slice
    DATABASE = "DATABASE"         # Storage errors
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Typed fields cover what the engine always knows about a failing
    migration; anything else goes into ``metadata``. ``to_dict()`` drops
    unset fields so log lines stay short.

    Examples:
        >>> ctx = ErrorContext(migration_id=7, name="backfill_column", shard="eu")
        >>> ctx.to_dict()
        {'migration_id': 7, 'name': 'backfill_column', 'shard': 'eu'}
    """

    migration_id: int | None = None
    name: str | None = None
    shard: str | None = None
    cursor: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["migration_id", "name", "shard", "cursor"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class TrickleError(Exception):
    """
    Base exception for all engine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites rarely pass them explicitly.

    Examples:
        >>> error = TrickleError("Something went wrong")
        >>> error.retryable
        False
        >>> error.with_context(migration_id=3).context.migration_id
        3
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TrickleError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ValidationError("bad batch size").with_context(
                name="backfill_column", batch_size=0
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION AND PROGRAMMING ERRORS (never retried, always propagated)
# =============================================================================


class ValidationError(TrickleError):
    """
    Bad arguments or configuration supplied at enqueue time.

    Never retryable; the caller must fix the request.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class WorkDescriptorNotFoundError(ValidationError):
    """No work definition is registered under the requested name."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, name: str, available: list[str] | None = None):
        listing = ", ".join(available or []) or "<none>"
        super().__init__(
            f"Work descriptor '{name}' not found. Available: {listing}",
            field="name",
            value=name,
        )
        self.name = name


class StateTransitionError(TrickleError, ValueError):
    """
    Illegal or stale status write.

    Raised when a write asks for a transition that is not in the table, or
    when the stored status changed underneath the writer. The stored status
    is left untouched in both cases.
    """

    default_category = ErrorCategory.STATE
    default_retryable = False

    def __init__(self, current: Enum | str, target: Enum | str, enum_name: str = "status", *, reason: str | None = None):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        message = f"Invalid {enum_name} transition: {current_value} → {target_value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.current = current
        self.target = target


class MigrationNotFoundError(TrickleError, LookupError):
    """No migration record exists with the given id."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, migration_id: int):
        super().__init__(f"Migration {migration_id} not found")
        self.migration_id = migration_id


class ConfigError(TrickleError):
    """Engine wiring error (missing connection, bad dialect, ...)."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# EXECUTION ERRORS (recorded on the migration, never propagated to the Scheduler)
# =============================================================================


class TransientExecutionError(TrickleError):
    """A slice failed while attempts remain; recorded as ``errored``."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = True


class TerminalExecutionError(TrickleError):
    """A slice failed and no attempts remain; recorded as ``failed``."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = False


class CursorRegressionError(TrickleError):
    """A work descriptor produced a cursor that does not advance."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = False

    def __init__(self, previous: str, current: str):
        super().__init__(f"Cursor did not advance: {previous!r} -> {current!r}")
        self.previous = previous
        self.current = current


class StuckTimeout(TrickleError):
    """
    Heartbeat not refreshed within the configured window.

    The migration is treated as abandoned and becomes eligible for
    re-dispatch. Nothing is killed.
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = True

    def __init__(self, migration_id: int, heartbeat_at: datetime, timeout_seconds: float):
        super().__init__(
            f"Migration {migration_id} heartbeat stale since {heartbeat_at.isoformat()} "
            f"(timeout {timeout_seconds:g}s)",
            context=ErrorContext(migration_id=migration_id),
        )
        self.migration_id = migration_id
        self.heartbeat_at = heartbeat_at
        self.timeout_seconds = timeout_seconds


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable.

    Plain exceptions raised by work descriptors are assumed retryable; the
    attempt budget bounds them.
    """
    if isinstance(error, TrickleError):
        return error.retryable
    return isinstance(error, Exception)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "TrickleError",
    # Configuration / programming
    "ValidationError",
    "WorkDescriptorNotFoundError",
    "StateTransitionError",
    "MigrationNotFoundError",
    "ConfigError",
    # Execution
    "TransientExecutionError",
    "TerminalExecutionError",
    "CursorRegressionError",
    "StuckTimeout",
    # Utilities
    "is_retryable",
]
