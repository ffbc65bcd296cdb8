"""
Typed registry of work definitions: ``name -> factory(**arguments) -> WorkDescriptor``.

Populated at startup, usually through the :func:`register_work` decorator
on the process-wide :data:`default_registry`. Lookups of unknown names fail
explicitly with :class:`~trickle.core.errors.WorkDescriptorNotFoundError`,
which lists what is registered.

Example:
    >>> @register_work("touch_users")
    ... class TouchUsers(SequenceWorkDescriptor):
    ...     ...
    >>> default_registry.build("touch_users", {"ids": [1, 2]})
    <TouchUsers ...>

Tests build their own ``WorkRegistry()`` instead of mutating the default.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from trickle.core.errors import ValidationError, WorkDescriptorNotFoundError
from trickle.core.logging import get_logger
from trickle.engine.descriptor import WorkDescriptor

logger = get_logger(__name__)

WorkFactory = Callable[..., WorkDescriptor]


class WorkRegistry:
    """Maps logical names to work-descriptor factories."""

    def __init__(self) -> None:
        self._factories: dict[str, WorkFactory] = {}

    def register(self, name: str, factory: WorkFactory | None = None) -> Any:
        """Register *factory* under *name*.

        Usable directly (``registry.register("x", Cls)``) or as a class
        decorator (``@registry.register("x")``).
        """

        def decorator(target: WorkFactory) -> WorkFactory:
            if name in self._factories:
                raise ValueError(f"Work descriptor '{name}' is already registered")
            self._factories[name] = target
            logger.debug("work_registered", name=name, factory=getattr(target, "__name__", repr(target)))
            return target

        if factory is not None:
            return decorator(factory)
        return decorator

    def get(self, name: str) -> WorkFactory:
        """Factory registered under *name*."""
        if name not in self._factories:
            raise WorkDescriptorNotFoundError(name, self.names())
        return self._factories[name]

    def build(self, name: str, arguments: dict[str, Any] | None = None) -> WorkDescriptor:
        """Instantiate the descriptor for *name* with *arguments*.

        Raises:
            WorkDescriptorNotFoundError: unknown name
            ValidationError: arguments rejected by the factory signature
        """
        factory = self.get(name)
        try:
            descriptor = factory(**(arguments or {}))
        except TypeError as e:
            raise ValidationError(
                f"Invalid arguments for '{name}': {e}", field="arguments", value=arguments, cause=e
            ) from e
        if not isinstance(descriptor, WorkDescriptor):
            raise ValidationError(
                f"Factory for '{name}' returned {type(descriptor).__name__}, not a WorkDescriptor",
                field="name",
                value=name,
            )
        return descriptor

    def names(self) -> list[str]:
        """All registered names, sorted."""
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def clear(self) -> None:
        """Clear registry (for testing)."""
        self._factories.clear()


default_registry = WorkRegistry()


def register_work(name: str) -> Callable[[WorkFactory], WorkFactory]:
    """Decorator registering a descriptor class on :data:`default_registry`."""
    return default_registry.register(name)


__all__ = ["WorkFactory", "WorkRegistry", "default_registry", "register_work"]
