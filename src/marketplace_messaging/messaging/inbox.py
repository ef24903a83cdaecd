"""Conversation list: the grouped navigation structure of the inbox."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..api.models import AuthUser, ConversationSummary, Message
from ..errors import TransientFetchError
from ..utils.debounce import CallDebouncer
from ..utils.observable import Observable
from .conversation import ListingGroup, group_summaries
from .store import MessageStore
from .subscriptions import Scope, Subscription, SubscriptionManager

if TYPE_CHECKING:
    from ..state.cache import Cache

logger = logging.getLogger(__name__)


class ConversationList:
    """Summaries of the user's conversations, grouped by listing."""

    def __init__(
        self,
        store: MessageStore,
        subscriptions: SubscriptionManager,
        user: AuthUser,
        cache: Cache | None = None,
        refresh_delay_ms: int = 300,
    ) -> None:
        self.store = store
        self.subscriptions = subscriptions
        self.user = user
        self.cache = cache
        self.groups: Observable[dict[int, ListingGroup]] = Observable({})
        self.last_error: TransientFetchError | None = None
        self._subscription: Subscription | None = None
        self._debouncer = CallDebouncer(self.refresh, delay_ms=refresh_delay_ms)

    @property
    def is_watching(self) -> bool:
        return self._subscription is not None

    @property
    def _sync_key(self) -> str:
        return f"summaries_synced_at:{self.user.id}"

    @property
    def synced_at(self) -> datetime | None:
        """When the summaries were last fetched from the backend, if cached."""
        if self.cache is None:
            return None
        value = self.cache.get_sync_state(self._sync_key)
        return datetime.fromisoformat(value) if value else None

    async def load(self) -> dict[int, ListingGroup]:
        """Fetch summaries and rebuild the groups, falling back to the cache."""
        try:
            summaries = await self.store.fetch_summaries(self.user.id)
        except TransientFetchError as e:
            logger.warning("Could not load conversations, using cache: %s", e)
            self.last_error = e
            summaries = self._cached()
        else:
            self.last_error = None
            if self.cache is not None:
                self.cache.save_summaries(self.user.id, summaries)
                self.cache.set_sync_state(
                    self._sync_key, datetime.now(timezone.utc).isoformat()
                )

        groups = group_summaries(self.user.id, summaries)
        self.groups.set(groups)
        return groups

    async def refresh(self) -> dict[int, ListingGroup]:
        return await self.load()

    async def watch(self) -> None:
        """Reload (debounced) whenever a message involving the user arrives."""
        if self._subscription is not None:
            return
        self._subscription = await self.subscriptions.open(
            Scope.user_messages(self.user.id), self._on_message
        )

    def close(self) -> None:
        self._debouncer.cancel()
        if self._subscription is not None:
            self.subscriptions.close(self._subscription)
            self._subscription = None
        self.groups.set({})

    def _on_message(self, message: Message) -> None:
        logger.debug("Message %s on listing %s, scheduling reload", message.id, message.listing_id)
        self._debouncer.call()

    def _cached(self) -> list[ConversationSummary]:
        if self.cache is None:
            return []
        return self.cache.get_summaries(self.user.id)
