"""Authenticated session of the current user."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from .api.models import AuthTokens, AuthUser
from .errors import BackendError, NotAuthorized
from .utils.config import Config

logger = logging.getLogger(__name__)


class AuthEvent(str, Enum):
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"


class AuthService(Protocol):
    """The auth endpoints SessionContext needs; MarketplaceClient provides them."""

    @property
    def access_token(self) -> str | None: ...

    def set_access_token(self, token: str | None) -> None: ...

    async def sign_in_with_password(self, email: str, password: str) -> AuthTokens: ...

    async def refresh_session(self, refresh_token: str) -> AuthTokens: ...

    async def sign_out(self) -> None: ...


AuthListener = Callable[[AuthEvent, "AuthUser | None"], Any]


class SessionContext:
    """Owns the signed-in user and persists the refresh token."""

    def __init__(self, auth: AuthService, config: Config) -> None:
        self.auth = auth
        self.config = config
        self._user: AuthUser | None = None
        self._listeners: list[AuthListener] = []

    @property
    def user(self) -> AuthUser | None:
        return self._user

    @property
    def is_signed_in(self) -> bool:
        return self._user is not None

    @property
    def access_token(self) -> str | None:
        return self.auth.access_token

    def on_change(self, callback: AuthListener) -> None:
        """Register a listener called with (event, user) on sign-in and sign-out."""
        self._listeners.append(callback)

    async def init(self) -> AuthUser | None:
        """
        Restore the previous session from the stored refresh token.

        Returns the restored user, or None when there is nothing to restore
        or the token was rejected.
        """
        token = self.config.refresh_token
        if not token:
            return None
        try:
            tokens = await self.auth.refresh_session(token)
        except NotAuthorized as e:
            logger.info("Stored session expired: %s", e)
            self.config.delete_refresh_token()
            return None
        return await self._establish(tokens)

    async def sign_in(self, email: str, password: str) -> AuthUser:
        """
        Sign in with e-mail and password.

        Raises:
            NotAuthorized: wrong credentials
            TransientFetchError: auth service unreachable
        """
        tokens = await self.auth.sign_in_with_password(email, password)
        return await self._establish(tokens)

    async def sign_out(self) -> None:
        """Sign out locally; revoking the session server-side is best effort."""
        if self._user is None:
            return
        try:
            await self.auth.sign_out()
        except BackendError as e:
            logger.warning("Server-side sign out failed: %s", e)
        self.auth.set_access_token(None)
        self.config.delete_refresh_token()
        self._user = None
        await self._notify(AuthEvent.SIGNED_OUT, None)

    async def _establish(self, tokens: AuthTokens) -> AuthUser:
        self.auth.set_access_token(tokens.access_token)
        self.config.refresh_token = tokens.refresh_token
        self._user = AuthUser.from_auth_payload(tokens.user)
        logger.info("Signed in as %s", self._user.username)
        await self._notify(AuthEvent.SIGNED_IN, self._user)
        return self._user

    async def _notify(self, event: AuthEvent, user: AuthUser | None) -> None:
        for listener in list(self._listeners):
            result = listener(event, user)
            if inspect.isawaitable(result):
                await result
