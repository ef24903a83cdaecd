"""Tests for the conversation list aggregator."""

from __future__ import annotations

import asyncio

import pytest

from conftest import EPOCH, FakeBackend, make_user
from marketplace_messaging.errors import TransientFetchError
from marketplace_messaging.messaging.inbox import ConversationList
from marketplace_messaging.messaging.store import MessageStore
from marketplace_messaging.messaging.subscriptions import SubscriptionManager
from marketplace_messaging.state.cache import Cache

ME = make_user("a")


def add_summary(backend: FakeBackend, listing: int, counterparty: str, minute: int, owner: str = "a") -> None:
    backend.add_row(
        "conversation_summaries",
        owner_id=owner,
        listing_id=listing,
        listing_title=f"Listing {listing}",
        counterparty_id=counterparty,
        last_message=f"hello from {counterparty}",
        last_message_at=EPOCH.replace(minute=minute).isoformat(),
    )


@pytest.fixture
def inbox(store: MessageStore, subscriptions: SubscriptionManager) -> ConversationList:
    return ConversationList(store, subscriptions, ME, refresh_delay_ms=1)


class TestConversationList:
    """Test loading and live refresh."""

    @pytest.mark.asyncio
    async def test_load_groups_summaries(self, backend: FakeBackend, inbox: ConversationList) -> None:
        add_summary(backend, 1, "u2", 1)
        add_summary(backend, 1, "u3", 2)
        add_summary(backend, 2, "u2", 0)
        add_summary(backend, 3, "u9", 5, owner="someone-else")

        groups = await inbox.load()

        assert list(groups) == [1, 2]
        assert [c.counterparty_id for c in groups[1].conversations] == ["u3", "u2"]
        assert inbox.groups.value is groups

    @pytest.mark.asyncio
    async def test_offline_falls_back_to_cache(
        self, backend: FakeBackend, store: MessageStore, subscriptions: SubscriptionManager, cache: Cache
    ) -> None:
        add_summary(backend, 1, "u2", 1)
        inbox = ConversationList(store, subscriptions, ME, cache=cache)
        await inbox.load()

        backend.fail_queries = TransientFetchError("offline")
        groups = await inbox.refresh()

        assert list(groups) == [1]
        assert isinstance(inbox.last_error, TransientFetchError)
        assert inbox.synced_at is not None

    @pytest.mark.asyncio
    async def test_offline_without_cache_is_empty(self, backend: FakeBackend, inbox: ConversationList) -> None:
        backend.fail_queries = TransientFetchError("offline")
        assert await inbox.load() == {}
        assert inbox.synced_at is None

    @pytest.mark.asyncio
    async def test_watch_reloads_after_new_message(self, backend: FakeBackend, inbox: ConversationList) -> None:
        add_summary(backend, 1, "u2", 1)
        await inbox.load()
        await inbox.watch()
        queries_before = backend.query_count

        add_summary(backend, 4, "u7", 9)
        for content in ("one", "two", "three"):
            await backend.insert(
                "messages", {"property_id": 4, "sender_id": "u7", "receiver_id": "a", "content": content}
            )
        await asyncio.sleep(0.05)

        assert backend.query_count == queries_before + 1
        assert list(inbox.groups.value) == [4, 1]

    @pytest.mark.asyncio
    async def test_unrelated_messages_do_not_reload(self, backend: FakeBackend, inbox: ConversationList) -> None:
        await inbox.watch()
        queries_before = backend.query_count

        await backend.insert("messages", {"property_id": 4, "sender_id": "x", "receiver_id": "y", "content": "hi"})
        await asyncio.sleep(0.05)

        assert backend.query_count == queries_before

    @pytest.mark.asyncio
    async def test_close(self, backend: FakeBackend, inbox: ConversationList) -> None:
        add_summary(backend, 1, "u2", 1)
        await inbox.load()
        await inbox.watch()
        assert inbox.is_watching

        inbox.close()

        assert not inbox.is_watching
        assert inbox.groups.value == {}
        assert backend.channels == []
