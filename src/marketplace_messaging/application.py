"""Application facade wiring auth, backend and the messaging components."""

from __future__ import annotations

import logging

from .api import HostedBackend, MarketplaceClient, RealtimeSocket
from .api.backend import Backend
from .api.models import AuthUser
from .auth import AuthEvent, AuthService, SessionContext
from .errors import NotAuthorized, SubscriptionLost
from .messaging import (
    ChatSession,
    ConversationList,
    MessageStore,
    SubscriptionManager,
    UnreadCounter,
)
from .state.cache import Cache
from .utils.config import Config

logger = logging.getLogger(__name__)


class MessagingApp:
    """Main application object: one per signed-in process."""

    def __init__(
        self,
        config: Config | None = None,
        backend: Backend | None = None,
        auth: AuthService | None = None,
        cache: Cache | None = None,
    ) -> None:
        self.config = config or Config()
        if backend is None:
            if not self.config.is_configured:
                raise ValueError("Server URL and API key are not configured")
            client = MarketplaceClient(self.config.server_url, self.config.api_key)  # type: ignore[arg-type]
            socket = RealtimeSocket(self.config.realtime_url, self.config.api_key)  # type: ignore[arg-type]
            backend = HostedBackend(client, socket)
            auth = auth or client
        if auth is None:
            raise ValueError("An auth service is required with a custom backend")

        self.backend = backend
        self.cache = cache
        self.store = MessageStore(backend, bucket=self.config.attachment_bucket)
        self.subscriptions = SubscriptionManager(self.store)
        self.unread = UnreadCounter(self.store, self.subscriptions, cue=self.config.alert_cue)
        self.session = SessionContext(auth, self.config)
        self.session.on_change(self._on_auth_change)

        self.chat: ChatSession | None = None
        self._inbox: ConversationList | None = None

    @property
    def user(self) -> AuthUser | None:
        return self.session.user

    def _require_user(self) -> AuthUser:
        if self.session.user is None:
            raise NotAuthorized("Not signed in")
        return self.session.user

    async def start(self) -> AuthUser | None:
        """Restore the stored session, if any."""
        return await self.session.init()

    async def sign_in(self, email: str, password: str) -> AuthUser:
        return await self.session.sign_in(email, password)

    async def sign_out(self) -> None:
        await self.session.sign_out()

    async def _on_auth_change(self, event: AuthEvent, user: AuthUser | None) -> None:
        if event is AuthEvent.SIGNED_IN and user is not None:
            try:
                await self.backend.connect_realtime(self.session.access_token)
            except SubscriptionLost as e:
                logger.warning("Realtime unavailable, live updates paused: %s", e)
            await self.unread.start(user.id)
        elif event is AuthEvent.SIGNED_OUT:
            self._teardown()
            if self.cache is not None:
                self.cache.clear_all()
            await self.backend.aclose()

    def _teardown(self) -> None:
        if self.chat is not None:
            self.chat.close()
            self.chat = None
        if self._inbox is not None:
            self._inbox.close()
            self._inbox = None
        self.unread.stop()
        self.subscriptions.close_all()

    async def open_chat(self, listing_id: int, counterparty_id: str) -> ChatSession:
        """Open (or switch the open chat to) a conversation."""
        user = self._require_user()
        if self.chat is None:
            self.chat = ChatSession(
                self.store,
                self.subscriptions,
                user,
                cache=self.cache,
                unread=self.unread,
            )
        await self.chat.open(listing_id, counterparty_id)
        return self.chat

    async def start_conversation(self, listing_id: int) -> ChatSession:
        """
        Open a chat with the owner of a listing.

        Raises:
            ValueError: the listing does not exist or belongs to the user
        """
        user = self._require_user()
        listing = await self.store.fetch_listing(listing_id)
        if listing is None:
            raise ValueError(f"Listing {listing_id} not found")
        if listing.user_id == user.id:
            raise ValueError("You cannot message yourself about your own listing")
        return await self.open_chat(listing.id, listing.user_id)

    async def conversation_list(self) -> ConversationList:
        """The user's grouped conversations, loaded and kept fresh."""
        user = self._require_user()
        if self._inbox is None:
            self._inbox = ConversationList(
                self.store, self.subscriptions, user, cache=self.cache
            )
            await self._inbox.load()
            await self._inbox.watch()
        return self._inbox

    async def shutdown(self) -> None:
        self._teardown()
        await self.backend.aclose()
        if self.cache is not None:
            self.cache.close()
