# uasession/events.py
"""
Observer registry used for every event the session layer raises.

One EventHook per event kind. Observers are plain callables or coroutine
functions, invoked in registration order. An observer that raises is logged
and skipped; delivery to the remaining observers continues.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any

from uasession.security.logging_system import get_logger

__all__ = ["EventHook"]

logger = get_logger(__name__)


class EventHook:
    """
    Ordered list of observers for one event kind.

    Example:
        >>> hook = EventHook("session_lost")
        >>> hook.add(lambda manager: print("lost"))
        >>> await hook.fire(manager)
    """

    def __init__(self, name: str):
        self.name = name
        self._observers: list[Callable[..., Any]] = []

    def add(self, observer: Callable[..., Any]) -> None:
        """Register an observer. Registering the same observer twice is a no-op.

        Raises:
            TypeError: If observer is not callable
        """
        if not callable(observer):
            raise TypeError(f"observer for '{self.name}' must be callable")
        if observer not in self._observers:
            self._observers.append(observer)

    def remove(self, observer: Callable[..., Any]) -> bool:
        """Unregister an observer.

        Returns:
            True if it was registered, False otherwise
        """
        try:
            self._observers.remove(observer)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._observers.clear()

    def __len__(self) -> int:
        return len(self._observers)

    def __contains__(self, observer: object) -> bool:
        return observer in self._observers

    async def fire(self, *args: Any, **kwargs: Any) -> int:
        """Invoke every observer with the given arguments.

        Returns:
            Number of observers that completed without raising
        """
        delivered = 0
        # Snapshot so observers may add/remove themselves while being called.
        for observer in list(self._observers):
            try:
                result = observer(*args, **kwargs)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Observer {observer!r} of '{self.name}' failed")
                continue
            delivered += 1
        return delivered
