"""Synchronous in-process event bus."""

from __future__ import annotations

import logging

from collections.abc import Callable
from typing import Any, Generic, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Any]


class EventBus(Generic[T]):
    """Ordered fan-out of values to subscribed listeners.

    Listeners run synchronously in subscription order. ``emit`` iterates
    over a snapshot, so a listener subscribed during an emit only sees
    later values. A raising listener is logged and the remaining
    listeners still run.
    """

    def __init__(self, name: str = "event") -> None:
        self._name = name
        self._listeners: list[Listener[T]] = []

    def subscribe(self, listener: Listener[T]) -> Callable[[], None]:
        """Add a listener.

        Returns
        -------
        Callable[[], None]
            Removes the listener when called. Safe to call more than once.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, value: T) -> None:
        """Deliver ``value`` to every current listener."""
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Error in %s listener", self._name)

    def clear(self) -> None:
        """Remove all listeners."""
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        """Number of subscribed listeners."""
        return len(self._listeners)
