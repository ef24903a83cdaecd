"""Realtime subscription manager.

Keeps at most one live change-feed subscription per scope, re-checks every
event against the scope client-side, and delivers each row id at most once
for the lifetime of a handle. Closing a handle is synchronous: once ``close`` returns the
callback is never invoked again.

Ordering: events are delivered in the order the feed hands them over. The
feed does not guarantee a global order across network partitions, so two
messages may arrive out of ``created_at`` order; consumers that need order
re-sort.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel

from ..api.filters import Filter, eq
from ..api.models import Message, Notification
from ..errors import SubscriptionLost
from ..utils.observable import Observable
from .conversation import ConversationKey
from .store import MESSAGES_TABLE, NOTIFICATIONS_TABLE, MessageStore, messages_involving

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Health of the realtime transport as seen by the UI."""
    CONNECTED = "connected"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class Scope:
    """What a subscription listens to."""

    name: str
    table: str
    server_filter: Filter | None
    model: type[BaseModel]
    match: Callable[[Any], bool] | None = field(default=None, compare=False)

    @classmethod
    def conversation(cls, key: ConversationKey) -> Scope:
        """Messages of one conversation; the server filters by listing only."""
        return cls(
            name=f"conversation:{key}",
            table=MESSAGES_TABLE,
            server_filter=eq("property_id", key.listing_id),
            model=Message,
            match=key.matches,
        )

    @classmethod
    def user_notifications(cls, user_id: str) -> Scope:
        return cls(
            name=f"notifications:{user_id}",
            table=NOTIFICATIONS_TABLE,
            server_filter=eq("user_id", user_id),
            model=Notification,
            match=lambda n: n.user_id == user_id,
        )

    @classmethod
    def user_messages(cls, user_id: str) -> Scope:
        """Every message the user sends or receives."""
        return cls(
            name=f"messages:{user_id}",
            table=MESSAGES_TABLE,
            server_filter=messages_involving(user_id),
            model=Message,
            match=lambda m: user_id in m.participants,
        )

    def accepts(self, item: Any) -> bool:
        return self.match is None or self.match(item)


class Subscription:
    """Handle for one open scope."""

    def __init__(
        self,
        manager: SubscriptionManager,
        scope: Scope,
        on_insert: Callable[[Any], None],
    ) -> None:
        self._manager = manager
        self.scope = scope
        self._on_insert = on_insert
        self._channel: Any = None
        self._closed = False
        self._seen: set[str] = set()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_live(self) -> bool:
        """Attached to the feed and still open."""
        return not self._closed and self._channel is not None

    def close(self) -> None:
        self._manager.close(self)

    def _deliver(self, row: dict[str, Any]) -> None:
        """Feed callback: parse, re-filter, de-duplicate, hand over."""
        if self._closed:
            return
        row_id = str(row.get("id"))
        if row_id in self._seen:
            logger.debug("Duplicate delivery of %s on %s ignored", row_id, self.scope.name)
            return
        try:
            item = self.scope.model(**row)
        except ValueError as e:
            logger.warning("Malformed %s row on %s: %s", self.scope.table, self.scope.name, e)
            return
        if not self.scope.accepts(item):
            return

        self._seen.add(row_id)

        try:
            self._on_insert(item)
        except Exception:
            logger.exception("Insert handler for %s failed", self.scope.name)

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("live" if self._channel is not None else "inert")
        return f"<Subscription {self.scope.name} {state}>"


class SubscriptionManager:
    """Opens and closes scoped subscriptions on the change feed."""

    def __init__(self, store: MessageStore) -> None:
        self.store = store
        self._active: dict[str, Subscription] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        initial = ConnectionState.CONNECTED if store.is_realtime_connected else ConnectionState.DEGRADED
        self.connection_state: Observable[ConnectionState] = Observable(initial)
        store.on_connection_change(self._on_connection_change)

    @property
    def is_degraded(self) -> bool:
        return self.connection_state.value is ConnectionState.DEGRADED

    def active(self, scope: Scope | str) -> Subscription | None:
        name = scope if isinstance(scope, str) else scope.name
        return self._active.get(name)

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def open(self, scope: Scope, on_insert: Callable[[Any], None]) -> Subscription:
        """
        Start delivering inserts for a scope.

        An already-open subscription for the same scope is closed first, so
        there is never more than one live callback per scope. If the
        transport is down the returned handle is inert and the connection
        state becomes degraded; it is re-attached when the transport returns.
        """
        existing = self._active.get(scope.name)
        if existing is not None:
            logger.debug("Replacing subscription %s", scope.name)
            self.close(existing)

        subscription = Subscription(self, scope, on_insert)
        self._active[scope.name] = subscription
        await self._attach(subscription)
        return subscription

    def close(self, subscription: Subscription) -> None:
        """Release a subscription. Idempotent."""
        if subscription._closed:
            return
        subscription._closed = True
        if self._active.get(subscription.scope.name) is subscription:
            del self._active[subscription.scope.name]
        channel, subscription._channel = subscription._channel, None
        if channel is not None:
            self.store.unsubscribe(channel)
        logger.debug("Closed subscription %s", subscription.scope.name)

    def close_all(self) -> None:
        for subscription in list(self._active.values()):
            self.close(subscription)
        for task in list(self._tasks):
            task.cancel()

    async def _attach(self, subscription: Subscription) -> None:
        scope = subscription.scope
        try:
            channel = await self.store.subscribe_inserts(
                scope.table, scope.server_filter, subscription._deliver
            )
        except SubscriptionLost as e:
            logger.warning("Realtime unavailable for %s, updates paused: %s", scope.name, e)
            self.connection_state.set(ConnectionState.DEGRADED)
            return

        if subscription._closed or subscription._channel is not None:
            # Closed, or attached by a concurrent reconnect, while we waited
            self.store.unsubscribe(channel)
            return
        subscription._channel = channel

    def _on_connection_change(self, connected: bool) -> None:
        if not connected:
            logger.warning("Realtime transport lost; showing last fetched state")
            self.connection_state.set(ConnectionState.DEGRADED)
            return

        self.connection_state.set(ConnectionState.CONNECTED)
        inert = [s for s in self._active.values() if s._channel is None]
        if not inert:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for subscription in inert:
            task = loop.create_task(self._attach(subscription))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
