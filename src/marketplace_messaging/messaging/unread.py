"""Process-wide unread notification counter."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..api.models import AlertCue, Notification
from ..errors import BackendError, TransientFetchError
from ..utils.observable import Observable
from .conversation import ConversationKey, conversation_link, link_pattern
from .store import MessageStore
from .subscriptions import Scope, Subscription, SubscriptionManager

logger = logging.getLogger(__name__)

# Badge shows "9+" above this
MAX_BADGE_COUNT = 9


@dataclass(frozen=True)
class ReadScope:
    """Notifications about one counterparty, optionally on one listing."""

    counterparty_id: str
    listing_id: int | None = None

    @classmethod
    def for_conversation(cls, key: ConversationKey, user_id: str) -> ReadScope:
        return cls(key.counterparty_of(user_id), key.listing_id)

    @property
    def pattern(self) -> str:
        return link_pattern(self.counterparty_id, self.listing_id)


@dataclass(frozen=True)
class Alert:
    """Transient heads-up shown for a new notification."""

    content: str
    link: str | None
    cue: AlertCue


class UnreadCounter:
    """
    Unread notification count for the signed-in user, kept live.

    The count is fetched once on ``start`` and then incremented by one per
    notification insert delivered by the feed. ``mark_read`` decrements by
    the number of rows the backend actually flipped, so the count never goes
    below zero. Notifications about the conversation currently in focus are
    marked read on arrival instead of being counted.
    """

    def __init__(
        self,
        store: MessageStore,
        subscriptions: SubscriptionManager,
        cue: AlertCue = AlertCue.SOUND,
    ) -> None:
        self.store = store
        self.subscriptions = subscriptions
        self.cue = cue
        self.count: Observable[int] = Observable(0)
        self.last_error: BackendError | None = None
        self._user_id: str | None = None
        self._subscription: Subscription | None = None
        self._focused: ConversationKey | None = None
        self._alert_listeners: list[Callable[[Alert], None]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def is_running(self) -> bool:
        return self._user_id is not None

    @property
    def badge_text(self) -> str | None:
        """What the badge shows; None means render nothing."""
        count = self.count.value
        if count <= 0:
            return None
        if count > MAX_BADGE_COUNT:
            return f"{MAX_BADGE_COUNT}+"
        return str(count)

    def on_alert(self, callback: Callable[[Alert], None]) -> Callable[[], None]:
        """Register an alert listener. Returns a function removing it."""
        self._alert_listeners.append(callback)

        def remove() -> None:
            if callback in self._alert_listeners:
                self._alert_listeners.remove(callback)

        return remove

    async def start(self, user_id: str) -> None:
        """Fetch the initial count and start listening for new notifications."""
        if self._user_id == user_id and self._subscription is not None:
            return
        if self._user_id is not None:
            self.stop()

        self._user_id = user_id
        await self.refresh()
        self._subscription = await self.subscriptions.open(
            Scope.user_notifications(user_id), self._on_notification
        )

    def stop(self) -> None:
        """Tear down on logout."""
        if self._subscription is not None:
            self.subscriptions.close(self._subscription)
            self._subscription = None
        for task in list(self._tasks):
            task.cancel()
        self._user_id = None
        self._focused = None
        self.count.set(0)

    async def refresh(self) -> int:
        """Re-derive the count from the backend."""
        if self._user_id is None:
            return 0
        try:
            count = await self.store.count_unread(self._user_id)
        except TransientFetchError as e:
            logger.warning("Could not fetch unread count: %s", e)
            self.last_error = e
            return self.count.value
        self.last_error = None
        self.count.set(max(0, count))
        return count

    async def mark_read(self, scope: ReadScope | None = None) -> int:
        """
        Mark unread notifications as read.

        Args:
            scope: Only notifications about this counterparty (and listing)

        Returns:
            Number of notifications that were marked read.
        """
        if self._user_id is None:
            return 0
        affected = await self.store.mark_notifications_read(
            self._user_id, scope.pattern if scope else None
        )
        if affected:
            self.count.set(max(0, self.count.value - affected))
        return affected

    def focus(self, key: ConversationKey | None) -> None:
        """Set the conversation on screen; its notifications are not counted."""
        self._focused = key

    def _focused_link(self) -> str | None:
        if self._focused is None or self._user_id is None:
            return None
        if not self._focused.includes(self._user_id):
            return None
        return conversation_link(
            self._focused.listing_id, self._focused.counterparty_of(self._user_id)
        )

    def _on_notification(self, notification: Notification) -> None:
        if notification.is_read:
            return

        if notification.link is not None and notification.link == self._focused_link():
            self._spawn(self._mark_one_read(notification))
            return

        self.count.set(self.count.value + 1)
        self._schedule_alert(Alert(notification.content, notification.link, self.cue))

    async def _mark_one_read(self, notification: Notification) -> None:
        try:
            await self.store.mark_notification_read(notification.user_id, notification.id)
        except BackendError as e:
            # Row stays unread server-side; refresh() will count it later
            logger.warning("Failed to mark notification %s read: %s", notification.id, e)

    def _schedule_alert(self, alert: Alert) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dispatch_alert(alert)
            return
        loop.call_soon(self._dispatch_alert, alert)

    def _dispatch_alert(self, alert: Alert) -> None:
        for listener in list(self._alert_listeners):
            try:
                listener(alert)
            except Exception:
                logger.exception("Alert listener failed")

    def _spawn(self, coro: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop; notification left unread")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
