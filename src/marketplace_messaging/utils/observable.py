"""A value that notifies listeners when it changes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class Observable(Generic[T]):
    """
    Holds a value and calls registered listeners on every ``set``.

    Listeners run synchronously on the caller's thread (the event loop).
    A failing listener is logged and does not stop the others.
    """

    def __init__(self, value: T) -> None:
        self._value = value
        self._listeners: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Observable listener failed")

    def subscribe(self, listener: Callable[[T], None], immediate: bool = False) -> Callable[[], None]:
        """
        Register a listener.

        Args:
            listener: Called with the new value
            immediate: Also call it right away with the current value

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)
        if immediate:
            listener(self._value)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
