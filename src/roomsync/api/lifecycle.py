"""LifecycleManager + LifecycleEvent enum for session lifecycle hooks."""

from __future__ import annotations

import inspect
import logging
from enum import Enum, auto
from typing import Any, Callable

logger = logging.getLogger(__name__)


class LifecycleEvent(Enum):
    BEFORE_JOIN = auto()
    AFTER_JOIN = auto()
    BEFORE_LEAVE = auto()
    AFTER_LEAVE = auto()
    ON_LEADER_CHANGE = auto()
    ON_ROOM_EMPTY = auto()
    ON_SUBSCRIPTION_LOST = auto()
    ON_ERROR = auto()


LifecycleHook = Callable[..., Any]


class LifecycleManager:
    """Manages registration and firing of session lifecycle hooks."""

    def __init__(self) -> None:
        self._hooks: dict[LifecycleEvent, list[LifecycleHook]] = {}

    def on(self, event: LifecycleEvent, hook: LifecycleHook) -> None:
        self._hooks.setdefault(event, []).append(hook)

    def off(self, event: LifecycleEvent, hook: LifecycleHook) -> None:
        hooks = self._hooks.get(event, [])
        if hook in hooks:
            hooks.remove(hook)

    def fire(self, event: LifecycleEvent, *args: Any, **kwargs: Any) -> list[Any]:
        """Call hooks synchronously; awaitables they return are handed back to the caller."""
        pending = []
        for hook in self._hooks.get(event, []):
            try:
                result = hook(*args, **kwargs)
            except Exception:
                logger.exception("lifecycle hook for %s failed", event.name)
                continue
            if inspect.isawaitable(result):
                pending.append(result)
        return pending

    async def fire_async(self, event: LifecycleEvent, *args: Any, **kwargs: Any) -> None:
        for hook in self._hooks.get(event, []):
            result = hook(*args, **kwargs)
            if inspect.isawaitable(result):
                await result

    def hook(self, event: LifecycleEvent) -> Callable[[LifecycleHook], LifecycleHook]:
        """Decorator to register a lifecycle hook."""
        def decorator(fn: LifecycleHook) -> LifecycleHook:
            self.on(event, fn)
            return fn
        return decorator
