"""Message store adapter: the only place the messaging core touches tables."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Callable

from ..api.backend import Backend
from ..api.filters import and_, eq, like, or_
from ..api.models import (
    ConversationSummary,
    ListingRef,
    Message,
    OutgoingAttachment,
    UserProfile,
)
from ..errors import BackendError, NotAuthorized, UploadFailed
from .conversation import ConversationKey

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
SUMMARIES_VIEW = "conversation_summaries"
NOTIFICATIONS_TABLE = "notifications"
PROFILES_TABLE = "user_profiles"
LISTINGS_TABLE = "houses"

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


def attachment_path(user_id: str, filename: str) -> str:
    """Storage path for an attachment, scoped to the uploading user."""
    safe = _UNSAFE_FILENAME.sub("_", filename).strip("._") or "file"
    return f"{user_id}/{uuid.uuid4().hex}-{safe}"


class MessageStore:
    """Typed queries, inserts and subscriptions over a Backend."""

    def __init__(self, backend: Backend, bucket: str = "chat-attachments") -> None:
        self.backend = backend
        self.bucket = bucket

    # Messages

    async def fetch_conversation(self, user_id: str, key: ConversationKey) -> list[Message]:
        """
        Load every message of a conversation, oldest first.

        Raises:
            NotAuthorized: ``user_id`` is not one of the participants
            TransientFetchError: the backend could not be reached
        """
        if not key.includes(user_id):
            raise NotAuthorized(f"User {user_id} is not a participant of conversation {key}")

        rows = await self.backend.query(
            MESSAGES_TABLE, key.message_filter(), order="created_at.asc"
        )
        messages = []
        for row in rows:
            try:
                message = Message(**row)
            except ValueError as e:
                logger.warning("Skipping malformed message row %s: %s", row.get("id"), e)
                continue
            # Server-side filtering is trusted but verified
            if key.matches(message):
                messages.append(message)
        messages.sort(key=lambda m: m.created_at)
        return messages

    async def insert_message(self, user_id: str, message: Message) -> Message:
        """Insert a message authored by ``user_id`` and return the stored row."""
        if message.sender_id != user_id:
            raise NotAuthorized(f"User {user_id} cannot send as {message.sender_id}")
        row: dict[str, Any] = {
            "property_id": message.listing_id,
            "sender_id": message.sender_id,
            "receiver_id": message.receiver_id,
            "content": message.content,
        }
        if message.attachment_url:
            row["image_url"] = message.attachment_url
        stored = await self.backend.insert(MESSAGES_TABLE, row)
        return Message(**stored)

    async def upload_attachment(self, user_id: str, attachment: OutgoingAttachment) -> str:
        """Upload a chat attachment and return its public URL."""
        path = attachment_path(user_id, attachment.filename)
        try:
            return await self.backend.upload_object(
                self.bucket, path, attachment.data, attachment.content_type
            )
        except BackendError as e:
            raise UploadFailed(f"Failed to upload {attachment.filename}: {e}") from e

    # Conversation list

    async def fetch_summaries(self, user_id: str) -> list[ConversationSummary]:
        """Summaries of every conversation the user takes part in, newest first."""
        rows = await self.backend.query(
            SUMMARIES_VIEW, eq("owner_id", user_id), order="last_message_at.desc"
        )
        summaries = []
        for row in rows:
            try:
                summaries.append(ConversationSummary(**row))
            except ValueError as e:
                logger.warning("Skipping malformed summary row: %s", e)
        return summaries

    # Notifications

    async def count_unread(self, user_id: str) -> int:
        return await self.backend.count(
            NOTIFICATIONS_TABLE, and_(eq("user_id", user_id), eq("is_read", False))
        )

    async def mark_notifications_read(self, user_id: str, link: str | None = None) -> int:
        """
        Mark unread notifications as read.

        Args:
            user_id: Owner of the notifications
            link: Optional LIKE pattern on the notification link

        Returns:
            Number of rows that flipped from unread to read.
        """
        conditions = [eq("user_id", user_id), eq("is_read", False)]
        if link is not None:
            conditions.append(like("link", link))
        rows = await self.backend.update(
            NOTIFICATIONS_TABLE, and_(*conditions), {"is_read": True}
        )
        return len(rows)

    async def mark_notification_read(self, user_id: str, notification_id: str) -> int:
        rows = await self.backend.update(
            NOTIFICATIONS_TABLE,
            and_(eq("id", notification_id), eq("user_id", user_id), eq("is_read", False)),
            {"is_read": True},
        )
        return len(rows)

    # Chat header details

    async def fetch_profile(self, user_id: str) -> UserProfile | None:
        rows = await self.backend.query(
            PROFILES_TABLE, eq("id", user_id), select="id,username,avatar_url", limit=1
        )
        return UserProfile(**rows[0]) if rows else None

    async def fetch_listing(self, listing_id: int) -> ListingRef | None:
        rows = await self.backend.query(
            LISTINGS_TABLE, eq("id", listing_id), select="id,title,user_id,photos", limit=1
        )
        return ListingRef(**rows[0]) if rows else None

    # Realtime

    async def subscribe_inserts(
        self, table: str, filter: Any, callback: Callable[[dict[str, Any]], None]
    ) -> Any:
        return await self.backend.subscribe_inserts(table, filter, callback)

    def unsubscribe(self, handle: Any) -> None:
        self.backend.unsubscribe(handle)

    @property
    def is_realtime_connected(self) -> bool:
        return self.backend.is_realtime_connected

    def on_connection_change(self, callback: Callable[[bool], None]) -> None:
        self.backend.on_connection_change(callback)


def messages_involving(user_id: str):
    """Filter for messages sent or received by a user."""
    return or_(eq("sender_id", user_id), eq("receiver_id", user_id))
