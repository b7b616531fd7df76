"""Lifecycle hooks for entity types.

Hooks live in a :class:`HookRegistry` that is handed to a session, never on
the entity classes themselves.

Example:
    >>> hooks = HookRegistry()
    >>> @hooks.on(User, HookEvent.BEFORE_SAVE)
    ... def stamp(user):
    ...     user.created_at = datetime.now(UTC)
    >>> session = Session(connection, hooks=hooks)
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Any

Hook = Callable[[Any], None]


class HookEvent(StrEnum):
    BEFORE_SAVE = "before_save"
    AFTER_SAVE = "after_save"
    BEFORE_UPDATE = "before_update"
    AFTER_UPDATE = "after_update"
    BEFORE_DELETE = "before_delete"
    AFTER_DELETE = "after_delete"
    AFTER_LOAD = "after_load"


class HookRegistry:
    """Callbacks keyed by entity type and event."""

    def __init__(self) -> None:
        self._hooks: dict[tuple[type, HookEvent], list[Hook]] = {}

    def register(self, entity: type, event: HookEvent | str, fn: Hook) -> None:
        """Register ``fn`` to run for ``event`` on instances of ``entity``.

        Raises:
            ValueError: If the event name is unknown
        """
        try:
            event = HookEvent(event)
        except ValueError:
            raise ValueError(
                f"Unknown hook event: '{event}'. Valid events: {', '.join(e.value for e in HookEvent)}"
            ) from None
        self._hooks.setdefault((entity, event), []).append(fn)

    def on(self, entity: type, event: HookEvent | str) -> Callable[[Hook], Hook]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Hook) -> Hook:
            self.register(entity, event, fn)
            return fn

        return decorator

    def remove(self, entity: type, event: HookEvent | str, fn: Hook) -> None:
        listeners = self._hooks.get((entity, HookEvent(event)), [])
        if fn in listeners:
            listeners.remove(fn)

    def has_hooks(self, entity: type, event: HookEvent) -> bool:
        return any(self._hooks.get((klass, event)) for klass in entity.__mro__)

    def run(self, event: HookEvent, instance: Any) -> None:
        """Run the hooks for ``event``, base-class hooks first."""
        for klass in reversed(type(instance).__mro__):
            for fn in list(self._hooks.get((klass, event), ())):
                fn(instance)
