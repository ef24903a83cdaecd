"""Pydantic models for marketplace backend rows."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TEMP_ID_PREFIX = "temp-"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DeliveryState(str, Enum):
    """Local-only delivery state of a message in the chat log."""
    SENT = "sent"
    PENDING = "pending"
    FAILED = "failed"


class AlertCue(str, Enum):
    """Cue played alongside a transient notification alert."""
    NONE = "none"
    SOUND = "sound"
    VIBRATE = "vibrate"


class Message(BaseModel):
    """A chat message between two users about one listing."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    listing_id: int = Field(alias="property_id")
    sender_id: str
    receiver_id: str
    content: str | None = None
    attachment_url: str | None = Field(default=None, alias="image_url")
    created_at: datetime
    is_read: bool = False
    delivery: DeliveryState = Field(default=DeliveryState.SENT, exclude=True)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        """Backends may hand out integer or UUID ids."""
        return str(v)

    @field_validator("created_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def check_participants(self) -> Message:
        if self.sender_id == self.receiver_id:
            raise ValueError("sender and receiver must be different users")
        return self

    @property
    def is_optimistic(self) -> bool:
        """True for locally synthesized entries not yet confirmed by the server."""
        return self.id.startswith(TEMP_ID_PREFIX)

    @property
    def participants(self) -> frozenset[str]:
        return frozenset((self.sender_id, self.receiver_id))

    @property
    def has_attachment(self) -> bool:
        return bool(self.attachment_url)


class ConversationSummary(BaseModel):
    """Latest state of one conversation, as seen by its owner."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    owner_id: str | None = None
    listing_id: int | None = None
    listing_title: str | None = None
    listing_image: str | None = None
    counterparty_id: str
    counterparty_name: str | None = None
    counterparty_avatar: str | None = None
    last_message: str | None = None
    last_message_at: datetime

    @field_validator("last_message_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @property
    def listing_deleted(self) -> bool:
        """The referenced listing no longer resolves."""
        return self.listing_id is None or self.listing_title is None

    @property
    def display_name(self) -> str:
        return self.counterparty_name or self.counterparty_id


class Notification(BaseModel):
    """Something that needs the recipient's attention."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    user_id: str
    is_read: bool = False
    content: str = ""
    link: str | None = None
    created_at: datetime

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("created_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)


class UserProfile(BaseModel):
    """Public profile of a marketplace user."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    username: str | None = None
    avatar_url: str | None = None

    @property
    def initial(self) -> str:
        """Avatar fallback letter."""
        return (self.username or "?")[0].upper()


class ListingRef(BaseModel):
    """The few listing columns the chat needs."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    title: str
    user_id: str
    photos: list[str] = Field(default_factory=list)

    @property
    def cover_image(self) -> str | None:
        return self.photos[0] if self.photos else None


class AuthUser(BaseModel):
    """The authenticated user."""

    id: str
    email: str
    username: str
    avatar: str | None = None
    role: str = "user"

    @classmethod
    def from_auth_payload(cls, user: dict[str, Any]) -> AuthUser:
        """Map an auth service user object, filling defaults from the e-mail."""
        metadata = user.get("user_metadata") or {}
        email = user.get("email") or ""
        return cls(
            id=str(user["id"]),
            email=email,
            username=metadata.get("username") or email.split("@")[0],
            avatar=metadata.get("avatar_url"),
            role=metadata.get("role") or "user",
        )


class AuthTokens(BaseModel):
    """Token grant returned by the auth service."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    expires_in: int | None = None
    user: dict[str, Any]


class OutgoingAttachment(BaseModel):
    """A file picked by the user to send with a message."""

    filename: str
    data: bytes
    content_type: str | None = None

    @property
    def is_image(self) -> bool:
        if self.content_type:
            return self.content_type.startswith("image/")
        return self.filename.lower().endswith((".jpg", ".jpeg", ".png", ".gif", ".webp"))
