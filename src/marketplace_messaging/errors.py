"""Exception taxonomy shared by the backend adapter and the messaging core."""

from __future__ import annotations


class MessagingError(Exception):
    """Base exception for messaging errors."""


class BackendError(MessagingError):
    """The hosted backend rejected a request or returned garbage."""

    def __init__(self, message: str, status: int = 0, error_type: str | None = None):
        super().__init__(message)
        self.status = status
        self.error_type = error_type


class TransientFetchError(BackendError):
    """Network failure or backend unavailable. Safe to retry."""
    pass


class NotAuthorized(BackendError):
    """The current user may not read or write the requested rows."""
    pass


class EmptyMessage(MessagingError):
    """A message needs non-blank content or an attachment."""
    pass


class UploadFailed(MessagingError):
    """The attachment could not be stored; no message was inserted."""
    pass


class SubscriptionLost(MessagingError):
    """The realtime transport is unavailable or dropped."""
    pass
