"""
Trickle - resumable batch migrations for large tables.

Layout:
- trickle.core: errors, logging, settings, SQL dialects, locks, throttle, events
- trickle.engine: state machine, runner, scheduler, operator, built-in work
"""

__version__ = "0.1.0"

from trickle.core.errors import (  # noqa: E402
    ConfigError,
    MigrationNotFoundError,
    StateTransitionError,
    TrickleError,
    ValidationError,
    WorkDescriptorNotFoundError,
)
from trickle.core.events import NotificationBus  # noqa: E402
from trickle.core.schema import create_tables  # noqa: E402
from trickle.core.settings import EngineSettings  # noqa: E402
from trickle.core.throttle import Throttle  # noqa: E402
from trickle.engine import *  # noqa: E402,F403
