"""Chat session controller for one open conversation."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from ..api.models import (
    TEMP_ID_PREFIX,
    AuthUser,
    DeliveryState,
    ListingRef,
    Message,
    OutgoingAttachment,
    UserProfile,
)
from ..errors import BackendError, EmptyMessage, MessagingError, TransientFetchError, UploadFailed
from ..utils.observable import Observable
from .conversation import ConversationKey
from .store import MessageStore
from .subscriptions import ConnectionState, Scope, Subscription, SubscriptionManager
from .unread import ReadScope

if TYPE_CHECKING:
    from ..state.cache import Cache
    from .unread import UnreadCounter

logger = logging.getLogger(__name__)

# How far apart an optimistic entry and its canonical row may be stamped
RECONCILE_WINDOW = timedelta(seconds=60)


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    CLOSING = "closing"


@dataclass(frozen=True)
class ChatLog:
    """Snapshot of the chat log as rendered."""

    messages: tuple[Message, ...] = ()
    scrolled_to_end: bool = False

    def __len__(self) -> int:
        return len(self.messages)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession:
    """
    One conversation on screen: history, live inserts and optimistic sends.

    The log is published through ``log``; every emission that made it longer
    carries ``scrolled_to_end=True``. Optimistic entries carry a ``temp-`` id
    until the canonical row replaces them. Each canonical arrival re-sorts the
    log by ``created_at`` (stable), so the reconciled log is non-decreasing.
    """

    def __init__(
        self,
        store: MessageStore,
        subscriptions: SubscriptionManager,
        user: AuthUser,
        cache: Cache | None = None,
        unread: UnreadCounter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.subscriptions = subscriptions
        self.user = user
        self.cache = cache
        self.unread = unread
        self._clock = clock or _utcnow

        self.log: Observable[ChatLog] = Observable(ChatLog())
        self.counterparty: UserProfile | None = None
        self.listing: ListingRef | None = None
        self.last_error: BackendError | None = None

        self._state = SessionState.IDLE
        self._key: ConversationKey | None = None
        self._subscription: Subscription | None = None
        self._messages: list[Message] = []
        self._early: list[Message] = []
        self._attachments: dict[str, OutgoingAttachment] = {}
        self._generation = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def key(self) -> ConversationKey | None:
        return self._key

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def connection_state(self) -> Observable[ConnectionState]:
        return self.subscriptions.connection_state

    @property
    def counterparty_id(self) -> str | None:
        return self._key.counterparty_of(self.user.id) if self._key else None

    # Lifecycle

    async def open(self, listing_id: int, counterparty_id: str) -> None:
        """
        Open a conversation: subscribe, load history, then become ready.

        The new subscription is opened before the previous one is closed, so
        there is no window without a listener. If another ``open`` starts
        while this one is waiting, this one's results are discarded.

        Raises:
            ValueError: counterparty is the current user
            NotAuthorized: the backend refused the history
        """
        if counterparty_id == self.user.id:
            raise ValueError("Cannot open a conversation with yourself")

        key = ConversationKey.between(listing_id, self.user.id, counterparty_id)
        self._generation += 1
        generation = self._generation
        previous = self._subscription
        self._state = SessionState.LOADING
        self._early = []
        logger.debug("Opening conversation %s", key)

        subscription = await self.subscriptions.open(
            Scope.conversation(key),
            lambda message: self._on_insert(generation, message),
        )
        if generation != self._generation:
            self.subscriptions.close(subscription)
            return

        self._subscription = subscription
        if previous is not None and previous is not subscription:
            self.subscriptions.close(previous)

        # Old conversation state goes only once the new listener is in place
        self._key = key
        self._messages = []
        self._attachments = {}
        self.counterparty = None
        self.listing = None
        self.last_error = None
        self._emit(grew=False)
        if self.unread is not None:
            self.unread.focus(key)

        try:
            history = await self.load_history(listing_id, counterparty_id)
        except TransientFetchError as e:
            logger.warning("Could not load conversation %s, using cache: %s", key, e)
            self.last_error = e
            history = self._cached_history(key)
        except BackendError:
            if generation == self._generation:
                self.close()
            raise

        if generation != self._generation:
            return

        # Keep entries sent while loading, pending and failed alike
        fetched = {m.id for m in history}
        local = [m for m in self._messages if m.id not in fetched]
        self._messages = self._merge(history, self._early + local)
        self._early = []
        self._state = SessionState.READY
        self._emit(grew=bool(self._messages))

        await self._load_header(key, generation)
        await self._mark_conversation_read(key, generation)

    def close(self) -> None:
        """Tear down synchronously; no delivery reaches this session afterwards."""
        self._generation += 1
        if self._state is SessionState.IDLE and self._subscription is None:
            return

        self._state = SessionState.CLOSING
        if self._subscription is not None:
            self.subscriptions.close(self._subscription)
            self._subscription = None
        if self.unread is not None:
            self.unread.focus(None)

        self._key = None
        self._messages = []
        self._early = []
        self._attachments = {}
        self.counterparty = None
        self.listing = None
        self._emit(grew=False)
        self._state = SessionState.IDLE
        logger.debug("Chat session closed")

    async def load_history(self, listing_id: int, counterparty_id: str) -> list[Message]:
        """Messages between the current user and ``counterparty_id``, oldest first."""
        key = ConversationKey.between(listing_id, self.user.id, counterparty_id)
        history = await self.store.fetch_conversation(self.user.id, key)
        if self.cache is not None:
            self.cache.save_messages(history)
        return history

    async def refresh(self) -> None:
        """Re-fetch history and merge it with the live log."""
        key = self._key
        if key is None:
            return
        generation = self._generation
        history = await self.load_history(key.listing_id, key.counterparty_of(self.user.id))
        if generation != self._generation:
            return

        self.last_error = None
        before = len(self._messages)
        fetched = {m.id for m in history}
        local = [m for m in self._messages if m.id not in fetched]
        self._messages = self._merge(history, local)
        self._emit(grew=len(self._messages) > before)

    # Sending

    async def send(
        self, content: str | None, attachment: OutgoingAttachment | None = None
    ) -> Message:
        """
        Send a message, showing it immediately as pending.

        Returns:
            The stored message.

        Raises:
            EmptyMessage: nothing to send
            UploadFailed: the attachment could not be uploaded
            BackendError: the insert failed
        """
        key = self._key
        if key is None:
            raise MessagingError("No conversation is open")

        text = (content or "").strip()
        if not text and attachment is None:
            raise EmptyMessage("Message has no text and no attachment")

        optimistic = Message(
            id=f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}",
            listing_id=key.listing_id,
            sender_id=self.user.id,
            receiver_id=key.counterparty_of(self.user.id),
            content=text,
            created_at=self._clock(),
            delivery=DeliveryState.PENDING,
        )
        if attachment is not None:
            self._attachments[optimistic.id] = attachment
        self._messages.append(optimistic)
        self._emit(grew=True)

        return await self._deliver(optimistic.id)

    async def retry(self, message_id: str) -> Message:
        """Re-send an entry that failed."""
        entry = self._find(message_id)
        if entry is None or entry.delivery is not DeliveryState.FAILED:
            raise ValueError(f"No failed message {message_id} to retry")
        self._replace(message_id, entry.model_copy(update={"delivery": DeliveryState.PENDING}))
        self._emit(grew=False)
        return await self._deliver(message_id)

    async def _deliver(self, temp_id: str) -> Message:
        generation = self._generation
        entry = self._find(temp_id)
        if entry is None:
            raise MessagingError(f"Message {temp_id} is no longer in the chat log")

        attachment = self._attachments.get(temp_id)
        if attachment is not None and entry.attachment_url is None:
            try:
                url = await self.store.upload_attachment(self.user.id, attachment)
            except UploadFailed as e:
                logger.warning("Attachment upload failed: %s", e)
                self._mark_failed(temp_id, generation)
                raise
            entry = entry.model_copy(update={"attachment_url": url})
            if generation == self._generation:
                self._replace(temp_id, entry)

        try:
            stored = await self.store.insert_message(self.user.id, entry)
        except BackendError as e:
            logger.warning("Sending message failed: %s", e)
            self._mark_failed(temp_id, generation)
            raise

        if generation == self._generation:
            self._reconcile(stored, temp_id=temp_id)
        return stored

    def _mark_failed(self, temp_id: str, generation: int) -> None:
        if generation != self._generation:
            return
        entry = self._find(temp_id)
        if entry is None:
            return
        self._replace(temp_id, entry.model_copy(update={"delivery": DeliveryState.FAILED}))
        self._emit(grew=False)

    # Live inserts

    def _on_insert(self, generation: int, message: Message) -> None:
        if generation != self._generation:
            return
        if self._state is SessionState.LOADING:
            self._early.append(message)
        elif self._state is SessionState.READY:
            self._reconcile(message)

    def _reconcile(self, message: Message, temp_id: str | None = None) -> None:
        """Fold a canonical row into the log."""
        if any(m.id == message.id for m in self._messages):
            # The echo got here first without matching; drop the stale entry
            if temp_id is not None and self._find(temp_id) is not None:
                self._attachments.pop(temp_id, None)
                del self._messages[self._index(temp_id)]
                self._emit(grew=False)
            return

        before = len(self._messages)
        index = None
        if temp_id is not None and self._find(temp_id) is not None:
            index = self._index(temp_id)
        elif message.sender_id == self.user.id:
            index = self._match_optimistic(message)

        if index is not None:
            self._attachments.pop(self._messages[index].id, None)
            self._messages[index] = message
        else:
            self._messages.append(message)
        self._messages.sort(key=lambda m: m.created_at)

        if self.cache is not None:
            self.cache.save_messages([message])
        self._emit(grew=len(self._messages) > before)

    def _match_optimistic(self, message: Message) -> int | None:
        """Index of the newest optimistic entry the canonical row confirms."""
        for index in range(len(self._messages) - 1, -1, -1):
            entry = self._messages[index]
            if not entry.is_optimistic or entry.delivery is DeliveryState.SENT:
                continue
            has_attachment = entry.has_attachment or entry.id in self._attachments
            if (
                entry.sender_id == message.sender_id
                and (entry.content or "") == (message.content or "")
                and has_attachment == message.has_attachment
                and abs(message.created_at - entry.created_at) <= RECONCILE_WINDOW
            ):
                return index
        return None

    # Helpers

    def _cached_history(self, key: ConversationKey) -> list[Message]:
        if self.cache is None:
            return []
        a, b = key.members
        return self.cache.get_conversation_messages(key.listing_id, a, b)

    async def _load_header(self, key: ConversationKey, generation: int) -> None:
        try:
            profile = await self.store.fetch_profile(key.counterparty_of(self.user.id))
            listing = await self.store.fetch_listing(key.listing_id)
        except BackendError as e:
            logger.warning("Could not load chat header for %s: %s", key, e)
            return
        if generation == self._generation:
            self.counterparty = profile
            self.listing = listing

    async def _mark_conversation_read(self, key: ConversationKey, generation: int) -> None:
        if self.unread is None or generation != self._generation:
            return
        try:
            await self.unread.mark_read(ReadScope.for_conversation(key, self.user.id))
        except BackendError as e:
            logger.warning("Could not mark notifications for %s read: %s", key, e)

    @staticmethod
    def _merge(canonical: list[Message], extra: list[Message]) -> list[Message]:
        merged = list(canonical)
        ids = {m.id for m in merged}
        for message in extra:
            if message.id not in ids:
                merged.append(message)
                ids.add(message.id)
        merged.sort(key=lambda m: m.created_at)
        return merged

    def _index(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        raise KeyError(message_id)

    def _find(self, message_id: str) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def _replace(self, message_id: str, message: Message) -> None:
        self._messages[self._index(message_id)] = message

    def _emit(self, grew: bool) -> None:
        self.log.set(ChatLog(tuple(self._messages), scrolled_to_end=grew))
