"""Engine settings loaded from the environment.

``EngineSettings`` holds every tunable the engine reads: attempt budget,
pacing, batch widths, stuck detection and scheduler identity. Values come
from ``TRICKLE_*`` environment variables or a ``.env`` file, and can be
overridden with keyword arguments.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Settings are constructed once and handed to ``EngineConfig``; no engine
    component reads the environment on its own.

    - **Pydantic validation:** Type-checked at startup, not mid-migration
    - **Environment-driven:** ``TRICKLE_MAX_ATTEMPTS=3`` and friends
    - **Sensible defaults:** Works out of the box for development

Examples:
    >>> from trickle.core.settings import EngineSettings
    >>> settings = EngineSettings(max_attempts=3, batch_size=500, sub_batch_size=100)
    >>> settings.stuck_timeout.total_seconds()
    900.0

Tags:
    settings, configuration, pydantic, environment, trickle
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Tunables for the migration engine.

    Fields
    ──────
    max_attempts          : Consecutive slice failures before ``failed``
    pacing_delay          : Seconds to sleep after each successful slice
    throttle_interval     : Minimum seconds between throttle predicate checks
    batch_size            : Slice width for range-based work
    sub_batch_size        : Rows touched per statement inside a slice
    sub_batch_pause_ms    : Pause between sub-batches
    max_slice_seconds     : Expected upper bound for one slice
    stuck_margin_seconds  : Safety margin added to the slice bound
    statement_timeout_seconds : PostgreSQL statement_timeout for schema changes
    scheduler_name        : Logical name used for the scheduler lock
    lock_ttl_seconds      : Expiry for the scheduler lock row
    max_concurrency       : Migrations allowed in flight at once
    slices_per_dispatch   : Slices run per dispatch before yielding (None = until done)
    trace_limit           : Trace lines kept on a failed migration
    """

    model_config = SettingsConfigDict(
        env_prefix="TRICKLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Attempts & pacing ───────────────────────────────────────
    max_attempts: int = Field(default=5, ge=1)
    pacing_delay: float = Field(default=0.0, ge=0)
    throttle_interval: float = Field(default=5.0, ge=0)

    # ── Range work ──────────────────────────────────────────────
    batch_size: int = Field(default=20_000, ge=1)
    sub_batch_size: int = Field(default=1_000, ge=1)
    sub_batch_pause_ms: int = Field(default=100, ge=0)

    # ── Stuck detection ─────────────────────────────────────────
    max_slice_seconds: float = Field(default=300.0, gt=0)
    stuck_margin_seconds: float = Field(default=600.0, ge=0)
    statement_timeout_seconds: float | None = Field(default=None, gt=0)

    # ── Scheduler ───────────────────────────────────────────────
    scheduler_name: str = "trickle.scheduler"
    lock_ttl_seconds: int = Field(default=300, ge=1)
    max_concurrency: int = Field(default=1, ge=0)
    slices_per_dispatch: int | None = Field(default=None, ge=1)

    # ── Observability ───────────────────────────────────────────
    trace_limit: int = Field(default=20, ge=0)
    log_level: str = "INFO"
    json_logs: bool | None = None

    @model_validator(mode="after")
    def check_batch_sizes(self) -> EngineSettings:
        if self.sub_batch_size > self.batch_size:
            raise ValueError(
                f"sub_batch_size ({self.sub_batch_size}) must not exceed "
                f"batch_size ({self.batch_size})"
            )
        return self

    @property
    def stuck_timeout(self) -> timedelta:
        """Heartbeat age after which an in-flight migration counts as stuck."""
        bound = max(self.max_slice_seconds, self.statement_timeout_seconds or 0)
        return timedelta(seconds=bound + self.stuck_margin_seconds)
