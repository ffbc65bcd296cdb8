"""
Shared pytest fixtures for trickle tests.

This module provides:
- An in-memory SQLite database with the engine tables
- A controllable clock and a recording sleep
- Small work descriptors driven by a ``Journal`` so tests can plan
  failures and inspect what was processed across Runner calls
- A fresh ``WorkRegistry`` and ``EngineConfig`` per test

Usage:
    def test_something(runner, operator, journal):
        migration = operator.enqueue("items", {"items": ["a", "b"]})
        runner.run(migration)
        assert journal.processed == ["a"]
"""

import sqlite3
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

# Ensure trickle package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trickle.core.events import NotificationBus
from trickle.core.schema import create_tables
from trickle.core.settings import EngineSettings
from trickle.engine.builtins import register_builtins
from trickle.engine.config import EngineConfig
from trickle.engine.descriptor import RangeWorkDescriptor, SequenceWorkDescriptor
from trickle.engine.operator import Operator
from trickle.engine.registry import WorkRegistry
from trickle.engine.runner import Runner


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordedSleep:
    """Stand-in for ``time.sleep`` that remembers every call."""

    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# =============================================================================
# Test work
# =============================================================================


class Journal:
    """Shared record of what test descriptors did, across rebuilds."""

    def __init__(self):
        self.processed: list[Any] = []
        self.ranges: list[tuple[int, int]] = []
        self.hooks: list[str] = []
        self._failures: dict[Any, list[BaseException]] = {}

    def fail(self, item: Any, *errors: BaseException) -> None:
        """Raise *errors* (one per attempt) the next times *item* is processed."""
        self._failures.setdefault(item, []).extend(errors)

    def check(self, item: Any) -> None:
        planned = self._failures.get(item)
        if planned:
            raise planned.pop(0)


class ItemsWork(SequenceWorkDescriptor):
    """Processes a list of items, recording each in the journal."""

    def __init__(self, journal: Journal, items: list[Any]):
        self.journal = journal
        self.items = items

    def collection(self):
        return self.items

    def process(self, item):
        self.journal.check(item)
        self.journal.processed.append(item)

    def after_start(self):
        self.journal.hooks.append("after_start")

    def after_resume(self):
        self.journal.hooks.append("after_resume")

    def after_stop(self):
        self.journal.hooks.append("after_stop")

    def after_pause(self):
        self.journal.hooks.append("after_pause")

    def after_cancel(self):
        self.journal.hooks.append("after_cancel")

    def after_complete(self):
        self.journal.hooks.append("after_complete")


class NumbersWork(RangeWorkDescriptor):
    """Range work over ``[start, end]`` recording each processed sub-range."""

    def __init__(self, journal: Journal, start: int, end: int, **kwargs: Any):
        super().__init__(**kwargs)
        self.journal = journal
        self.start = start
        self.end = end

    def bounds(self):
        if self.end < self.start:
            return None
        return self.start, self.end

    def process_range(self, low, high):
        self.journal.check((low, high))
        self.journal.ranges.append((low, high))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture()
def db():
    """In-memory SQLite with the engine tables."""
    conn = sqlite3.connect(":memory:")
    create_tables(conn)
    yield conn
    conn.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def sleep():
    return RecordedSleep()


@pytest.fixture()
def journal():
    return Journal()


@pytest.fixture()
def registry(journal):
    reg = WorkRegistry()
    register_builtins(reg)
    reg.register("items", lambda **kwargs: ItemsWork(journal, **kwargs))
    reg.register("numbers", lambda **kwargs: NumbersWork(journal, **kwargs))
    return reg


@pytest.fixture()
def settings():
    return EngineSettings(
        _env_file=None,
        max_attempts=3,
        batch_size=3,
        sub_batch_size=3,
        sub_batch_pause_ms=0,
        throttle_interval=0,
        max_slice_seconds=60,
        stuck_margin_seconds=60,
    )


@pytest.fixture()
def notifier():
    return NotificationBus()


@pytest.fixture()
def events(notifier):
    """Every emitted event, in order."""
    received = []
    notifier.subscribe("*", received.append)
    return received


@pytest.fixture()
def config(settings, registry, clock, sleep, notifier):
    return EngineConfig(
        settings=settings,
        registry=registry,
        notifier=notifier,
        clock=clock,
        sleep=sleep,
    )


@pytest.fixture()
def runner(db, config):
    return Runner(db, config=config)


@pytest.fixture()
def operator(db, config):
    return Operator(db, config=config)
