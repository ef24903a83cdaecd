"""Conversation addressing and the grouped conversation list."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..api.filters import Filter, and_, eq, or_
from ..api.models import ConversationSummary, Message

LINK_PREFIX = "/messages"


def conversation_link(listing_id: int, counterparty_id: str) -> str:
    """Link a notification uses to point its recipient at a conversation."""
    return f"{LINK_PREFIX}/{listing_id}/{counterparty_id}"


def link_pattern(counterparty_id: str, listing_id: int | None = None) -> str:
    """LIKE pattern matching notification links for a counterparty."""
    listing = "%" if listing_id is None else str(listing_id)
    return f"{LINK_PREFIX}/{listing}/{counterparty_id}"


@dataclass(frozen=True)
class ConversationKey:
    """A listing plus an unordered pair of participants."""

    listing_id: int
    participants: frozenset[str]

    def __post_init__(self) -> None:
        if len(self.participants) != 2:
            raise ValueError("A conversation needs two distinct participants")

    @classmethod
    def between(cls, listing_id: int, user_a: str, user_b: str) -> ConversationKey:
        return cls(listing_id, frozenset((user_a, user_b)))

    @classmethod
    def of(cls, message: Message) -> ConversationKey:
        return cls(message.listing_id, message.participants)

    @property
    def members(self) -> tuple[str, str]:
        """Participants in a stable order."""
        a, b = sorted(self.participants)
        return a, b

    def includes(self, user_id: str) -> bool:
        return user_id in self.participants

    def counterparty_of(self, user_id: str) -> str:
        if user_id not in self.participants:
            raise ValueError(f"{user_id} is not part of this conversation")
        (other,) = self.participants - {user_id}
        return other

    def matches(self, message: Message) -> bool:
        """True when the message belongs to exactly this conversation."""
        return message.listing_id == self.listing_id and message.participants == self.participants

    def participant_filter(self) -> Filter:
        """Rows sent in either direction between the two participants."""
        a, b = self.members
        return or_(
            and_(eq("sender_id", a), eq("receiver_id", b)),
            and_(eq("sender_id", b), eq("receiver_id", a)),
        )

    def message_filter(self) -> Filter:
        return and_(eq("property_id", self.listing_id), self.participant_filter())

    def __str__(self) -> str:
        a, b = self.members
        return f"{self.listing_id}:{a}:{b}"


@dataclass
class ListingGroup:
    """Conversations about one listing, most recent first."""

    listing_id: int
    listing_title: str
    listing_image: str | None
    conversations: list[ConversationSummary] = field(default_factory=list)

    @property
    def by_counterparty(self) -> dict[str, ConversationSummary]:
        return {c.counterparty_id: c for c in self.conversations}

    @property
    def last_message_at(self):
        return self.conversations[0].last_message_at if self.conversations else None


def group_summaries(
    user_id: str, summaries: list[ConversationSummary]
) -> dict[int, ListingGroup]:
    """
    Group a flat summary list by listing, then by counterparty.

    Listings keep the order in which they first appear. Within a listing,
    conversations are sorted by ``last_message_at`` descending; equal
    timestamps keep their input order. Rows pointing at a deleted listing,
    or at the user themselves, are dropped. When a counterparty appears twice
    under one listing, the most recent row wins.
    """
    groups: dict[int, ListingGroup] = {}
    seen: dict[int, dict[str, ConversationSummary]] = {}

    for summary in summaries:
        listing_id, title = summary.listing_id, summary.listing_title
        if listing_id is None or title is None or summary.counterparty_id == user_id:
            continue

        if listing_id not in groups:
            groups[listing_id] = ListingGroup(
                listing_id=listing_id,
                listing_title=title,
                listing_image=summary.listing_image,
            )
            seen[listing_id] = {}

        by_counterparty = seen[listing_id]
        previous = by_counterparty.get(summary.counterparty_id)
        if previous is None or summary.last_message_at > previous.last_message_at:
            by_counterparty[summary.counterparty_id] = summary

    for listing_id, group in groups.items():
        group.conversations = sorted(
            seen[listing_id].values(),
            key=lambda s: s.last_message_at,
            reverse=True,
        )

    return groups
