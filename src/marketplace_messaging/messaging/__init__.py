"""Messaging core: conversations, live subscriptions, chat and unread count."""

from .conversation import ConversationKey, ListingGroup, conversation_link, group_summaries
from .inbox import ConversationList
from .session import ChatLog, ChatSession, SessionState
from .store import MessageStore
from .subscriptions import ConnectionState, Scope, Subscription, SubscriptionManager
from .unread import Alert, ReadScope, UnreadCounter

__all__ = [
    "Alert",
    "ChatLog",
    "ChatSession",
    "ConnectionState",
    "ConversationKey",
    "ConversationList",
    "ListingGroup",
    "MessageStore",
    "ReadScope",
    "Scope",
    "SessionState",
    "Subscription",
    "SubscriptionManager",
    "UnreadCounter",
    "conversation_link",
    "group_summaries",
]
