"""
Ambient layer of the trickle engine.

Everything here is independent of migrations: errors, logging, settings,
SQL dialects and storage helpers, notifications, the advisory lock, the
throttle and the periodic trigger. ``trickle.engine`` builds on it.

Layering::

    trickle.engine   (state machine, runner, scheduler, operator)
          │
          ▼
    trickle.core     (errors, logging, settings, dialect, locks, throttle, events)
"""
