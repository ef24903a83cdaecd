"""Hosted backend access: REST client, realtime feed and wire models."""

from .backend import Backend, HostedBackend
from .client import MarketplaceClient
from .models import ConversationSummary, Message, Notification
from .realtime import RealtimeSocket

__all__ = [
    "Backend",
    "HostedBackend",
    "MarketplaceClient",
    "ConversationSummary",
    "Message",
    "Notification",
    "RealtimeSocket",
]
