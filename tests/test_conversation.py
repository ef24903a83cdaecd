"""Tests for conversation identity and summary grouping."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from marketplace_messaging.api.models import ConversationSummary, Message
from marketplace_messaging.messaging.conversation import (
    ConversationKey,
    conversation_link,
    group_summaries,
    link_pattern,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def summary(listing: int | None, counterparty: str, minutes: int, title: str | None = "Listing") -> ConversationSummary:
    return ConversationSummary(
        owner_id="me",
        listing_id=listing,
        listing_title=title if listing is not None else None,
        counterparty_id=counterparty,
        last_message_at=T0 + timedelta(minutes=minutes),
    )


def shape(groups: dict) -> dict[int, list[tuple[str, datetime]]]:
    return {
        listing_id: [(c.counterparty_id, c.last_message_at) for c in group.conversations]
        for listing_id, group in groups.items()
    }


class TestConversationKey:
    """Test conversation addressing."""

    def test_participants_are_unordered(self) -> None:
        assert ConversationKey.between(1, "a", "b") == ConversationKey.between(1, "b", "a")
        assert ConversationKey.between(1, "a", "b") != ConversationKey.between(2, "a", "b")

    def test_requires_two_distinct_participants(self) -> None:
        with pytest.raises(ValueError):
            ConversationKey.between(1, "a", "a")

    def test_counterparty_of(self) -> None:
        key = ConversationKey.between(1, "a", "b")
        assert key.counterparty_of("a") == "b"
        assert key.counterparty_of("b") == "a"
        with pytest.raises(ValueError):
            key.counterparty_of("c")

    def test_matches_exact_pair_and_listing(self) -> None:
        key = ConversationKey.between(1, "a", "b")

        def msg(listing: int, sender: str, receiver: str) -> Message:
            return Message(
                id="1", listing_id=listing, sender_id=sender, receiver_id=receiver, created_at=T0
            )

        assert key.matches(msg(1, "a", "b"))
        assert key.matches(msg(1, "b", "a"))
        assert not key.matches(msg(2, "a", "b"))
        assert not key.matches(msg(1, "a", "c"))

    def test_message_filter_evaluates_rows(self) -> None:
        f = ConversationKey.between(1, "a", "b").message_filter()
        assert f.matches({"property_id": 1, "sender_id": "b", "receiver_id": "a"})
        assert not f.matches({"property_id": 1, "sender_id": "b", "receiver_id": "c"})

    def test_str_is_stable(self) -> None:
        assert str(ConversationKey.between(7, "zed", "amy")) == "7:amy:zed"

    def test_links(self) -> None:
        assert conversation_link(7, "u2") == "/messages/7/u2"
        assert link_pattern("u2") == "/messages/%/u2"
        assert link_pattern("u2", 7) == "/messages/7/u2"


class TestGroupSummaries:
    """Test grouping of the flat summary list."""

    def test_groups_by_listing_newest_first(self) -> None:
        t0, t1, t2 = T0, T0 + timedelta(minutes=1), T0 + timedelta(minutes=2)
        groups = group_summaries("me", [
            summary(1, "u2", 1),
            summary(1, "u3", 2),
            summary(2, "u2", 0),
        ])

        assert shape(groups) == {1: [("u3", t2), ("u2", t1)], 2: [("u2", t0)]}

    def test_listing_order_follows_first_occurrence(self) -> None:
        groups = group_summaries("me", [summary(5, "u2", 0), summary(3, "u2", 9), summary(5, "u4", 1)])
        assert list(groups) == [5, 3]

    def test_empty_input(self) -> None:
        assert group_summaries("me", []) == {}

    def test_deleted_listing_dropped(self) -> None:
        groups = group_summaries("me", [
            summary(None, "u2", 0),
            summary(4, "u3", 0, title=None),
            summary(1, "u2", 0),
        ])
        assert list(groups) == [1]

    def test_self_rows_dropped(self) -> None:
        groups = group_summaries("me", [summary(1, "me", 0), summary(1, "u2", 0)])
        assert [c.counterparty_id for c in groups[1].conversations] == ["u2"]

    def test_duplicate_counterparty_latest_wins(self) -> None:
        groups = group_summaries("me", [summary(1, "u2", 1), summary(1, "u2", 5)])
        assert shape(groups) == {1: [("u2", T0 + timedelta(minutes=5))]}

    def test_equal_timestamps_keep_input_order(self) -> None:
        groups = group_summaries("me", [summary(1, "u3", 0), summary(1, "u2", 0), summary(1, "u4", 0)])
        assert [c.counterparty_id for c in groups[1].conversations] == ["u3", "u2", "u4"]

    def test_grouping_is_idempotent(self) -> None:
        """Flattening the groups and regrouping gives the same structure."""
        rows = [summary(1, "u2", 1), summary(1, "u3", 2), summary(2, "u2", 0), summary(2, "u5", 3)]
        once = group_summaries("me", rows)
        flattened = [c for group in once.values() for c in group.conversations]
        twice = group_summaries("me", flattened)
        assert shape(twice) == shape(once)

    def test_group_helpers(self) -> None:
        groups = group_summaries("me", [summary(1, "u2", 1), summary(1, "u3", 2)])
        group = groups[1]
        assert group.listing_title == "Listing"
        assert set(group.by_counterparty) == {"u2", "u3"}
        assert group.last_message_at == T0 + timedelta(minutes=2)
