"""
Tests for the logging module.

Tests verify:
- LogContext binds and unbinds structlog context variables
- configure_logging installs a structlog configuration
"""

import pytest
import structlog

from trickle.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_from_settings,
    configure_logging,
    get_logger,
    unbind_context,
)
from trickle.core.settings import EngineSettings


@pytest.fixture(autouse=True)
def _clean_context():
    clear_context()
    yield
    clear_context()


class TestContextManagement:
    def test_bind_and_unbind(self):
        bind_context(migration_id=1, shard="eu")
        assert structlog.contextvars.get_contextvars() == {"migration_id": 1, "shard": "eu"}
        unbind_context("shard")
        assert structlog.contextvars.get_contextvars() == {"migration_id": 1}

    def test_log_context_scoped(self):
        bind_context(scheduler="trickle.scheduler")
        with LogContext(migration_id=5):
            assert structlog.contextvars.get_contextvars()["migration_id"] == 5
        assert structlog.contextvars.get_contextvars() == {"scheduler": "trickle.scheduler"}

    def test_log_context_included_in_events(self):
        capture = structlog.testing.LogCapture()
        structlog.configure(processors=[structlog.contextvars.merge_contextvars, capture])
        try:
            with LogContext(migration_id=5):
                get_logger("test").info("runner.ran_slice")
        finally:
            structlog.reset_defaults()
        assert capture.entries[0]["event"] == "runner.ran_slice"
        assert capture.entries[0]["migration_id"] == 5


class TestConfigureLogging:
    def test_configures_structlog(self):
        try:
            configure_logging(level="DEBUG", json_format=True)
            assert structlog.is_configured()
        finally:
            structlog.reset_defaults()

    def test_configure_from_settings(self):
        settings = EngineSettings(_env_file=None, log_level="WARNING", json_logs=False)
        try:
            configure_from_settings(settings)
            assert structlog.is_configured()
        finally:
            structlog.reset_defaults()
