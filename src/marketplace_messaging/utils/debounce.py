"""Debounce utility for coalescing rapid refresh requests on the event loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class CallDebouncer:
    """
    Debounces rapid calls to a function, only executing once after settling.

    Each ``call()`` restarts the timer; the callback runs once ``delay_ms``
    milliseconds after the last call. A callback returning an awaitable is
    scheduled as a task on the running loop.
    """

    def __init__(
        self,
        callback: Callable[[], Any],
        delay_ms: int = 100,
        scheduler: Callable[[float, Callable[[], None]], Any] | None = None,
        cancel_scheduler: Callable[[Any], None] | None = None,
    ) -> None:
        """
        Initialize the call debouncer.

        Args:
            callback: Function to call when debounce fires.
            delay_ms: Milliseconds to wait after last call before firing.
            scheduler: Function scheduling ``fn`` after ``delay`` seconds and
                       returning a cancellable handle. Defaults to the running
                       loop's ``call_later``.
            cancel_scheduler: Function to cancel a scheduled handle. Defaults
                              to ``handle.cancel()``.
        """
        self._callback = callback
        self._delay_ms = delay_ms
        self._scheduler = scheduler
        self._cancel_scheduler = cancel_scheduler

        self._timer: Any = None
        self._pending = False
        self._tasks: set[asyncio.Task[Any]] = set()

    def call(self) -> None:
        """Request a call to the callback (debounced)."""
        self._pending = True
        self._reset_timer()

    def _cancel_timer(self) -> None:
        if self._timer is None:
            return
        if self._cancel_scheduler:
            self._cancel_scheduler(self._timer)
        else:
            self._timer.cancel()
        self._timer = None

    def _reset_timer(self) -> None:
        """Cancel existing timer and start a new one."""
        self._cancel_timer()
        delay = self._delay_ms / 1000.0
        if self._scheduler:
            self._timer = self._scheduler(delay, self._fire)
        else:
            self._timer = asyncio.get_running_loop().call_later(delay, self._fire)

    def _fire(self) -> None:
        """Fire the callback."""
        if not self._pending:
            return
        self._pending = False
        self._timer = None

        result = self._callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Debounced callback failed: %s", task.exception())

    def flush(self) -> None:
        """Immediately fire if pending."""
        self._cancel_timer()
        self._fire()

    def cancel(self) -> None:
        """Cancel without firing; running tasks are cancelled too."""
        self._cancel_timer()
        self._pending = False
        for task in list(self._tasks):
            task.cancel()

    @property
    def is_pending(self) -> bool:
        """Check if a call is pending."""
        return self._pending
