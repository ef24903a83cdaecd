"""Shared fixtures: an in-memory backend honouring the Backend protocol."""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from marketplace_messaging.api.filters import Filter
from marketplace_messaging.api.models import AuthTokens, AuthUser
from marketplace_messaging.errors import BackendError, NotAuthorized, SubscriptionLost
from marketplace_messaging.messaging.conversation import conversation_link
from marketplace_messaging.messaging.store import MessageStore
from marketplace_messaging.messaging.subscriptions import SubscriptionManager
from marketplace_messaging.state.cache import Cache
from marketplace_messaging.utils.config import Config

EPOCH = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Returns strictly increasing timestamps, one second apart."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass(eq=False)
class FakeChannel:
    table: str
    filter: Filter | None
    callback: Callable[[dict[str, Any]], None]


class FakeBackend:
    """In-memory tables plus a synchronous insert feed."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.channels: list[FakeChannel] = []
        self.queued: list[tuple[FakeChannel, dict[str, Any]]] = []
        self.uploads: list[tuple[str, str, bytes]] = []
        self.connected = True
        self.closed = False
        self.access_token: str | None = None

        # Behaviour switches
        self.deliver_on_insert = True
        self.notify_on_message = True
        self.fail_next_insert: BackendError | None = None
        self.fail_queries: BackendError | None = None
        self.fail_subscribe = False
        self.fail_upload = False
        # When set, queries wait on it
        self.gate: asyncio.Event | None = None

        self.query_count = 0
        self._ids = itertools.count(1)
        self._listeners: list[Callable[[bool], None]] = []

    # Seeding helpers

    def add_row(self, table: str, **row: Any) -> dict[str, Any]:
        row.setdefault("id", next(self._ids))
        if "created_at" not in row and table != "conversation_summaries":
            row["created_at"] = self.clock().isoformat()
        if isinstance(row.get("created_at"), datetime):
            row["created_at"] = row["created_at"].isoformat()
        self.tables[table].append(row)
        return row

    def push(self, table: str, row: dict[str, Any]) -> None:
        """Deliver a row through the feed without storing it."""
        self._deliver(table, row)

    def flush(self) -> None:
        queued, self.queued = self.queued, []
        for channel, row in queued:
            if channel in self.channels:
                channel.callback(dict(row))

    def set_connected(self, connected: bool) -> None:
        # Channels survive a drop; the socket rejoins them on reconnect
        self.connected = connected
        for listener in list(self._listeners):
            listener(connected)

    # Backend protocol

    @property
    def is_realtime_connected(self) -> bool:
        return self.connected

    def on_connection_change(self, callback: Callable[[bool], None]) -> None:
        self._listeners.append(callback)

    async def query(
        self,
        table: str,
        filter: Filter | None = None,
        order: str | None = None,
        limit: int | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        self.query_count += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_queries is not None:
            raise self.fail_queries
        rows = [dict(r) for r in self.tables[table] if filter is None or filter.matches(r)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: r.get(column) or "", reverse=direction == "desc")
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def count(self, table: str, filter: Filter | None = None) -> int:
        if self.fail_queries is not None:
            raise self.fail_queries
        return sum(1 for r in self.tables[table] if filter is None or filter.matches(r))

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        if self.fail_next_insert is not None:
            error, self.fail_next_insert = self.fail_next_insert, None
            raise error
        stored = self.add_row(table, is_read=False, **row)
        self._deliver(table, stored)
        if table == "messages" and self.notify_on_message:
            notification = self.add_row(
                "notifications",
                user_id=stored["receiver_id"],
                is_read=False,
                content="New message",
                link=conversation_link(stored["property_id"], stored["sender_id"]),
            )
            self._deliver("notifications", notification)
        return dict(stored)

    async def update(
        self, table: str, filter: Filter, patch: dict[str, Any]
    ) -> list[dict[str, Any]]:
        updated = []
        for row in self.tables[table]:
            if filter.matches(row):
                row.update(patch)
                updated.append(dict(row))
        return updated

    async def upload_object(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str:
        if self.fail_upload:
            raise BackendError("Payload too large", 413)
        self.uploads.append((bucket, path, data))
        return f"https://storage.test/{bucket}/{path}"

    async def subscribe_inserts(
        self, table: str, filter: Filter | None, callback: Callable[[dict[str, Any]], None]
    ) -> FakeChannel:
        if not self.connected or self.fail_subscribe:
            raise SubscriptionLost("Realtime transport unavailable")
        channel = FakeChannel(table, filter, callback)
        self.channels.append(channel)
        return channel

    def unsubscribe(self, handle: Any) -> None:
        if handle in self.channels:
            self.channels.remove(handle)

    async def connect_realtime(self, access_token: str | None) -> None:
        self.access_token = access_token
        if not self.connected:
            raise SubscriptionLost("Realtime transport unavailable")

    async def aclose(self) -> None:
        self.closed = True

    def _deliver(self, table: str, row: dict[str, Any]) -> None:
        if not self.connected:
            return
        for channel in list(self.channels):
            if channel.table != table:
                continue
            if channel.filter is not None and not channel.filter.matches(row):
                continue
            if self.deliver_on_insert:
                channel.callback(dict(row))
            else:
                self.queued.append((channel, row))


class FakeAuth:
    """Auth service accepting a fixed set of accounts."""

    def __init__(self) -> None:
        self.accounts: dict[str, tuple[str, dict[str, Any]]] = {}
        self._access_token: str | None = None
        self.sign_out_calls = 0

    def add_account(self, email: str, password: str, user_id: str, username: str | None = None) -> None:
        metadata = {"username": username} if username else {}
        self.accounts[email] = (password, {"id": user_id, "email": email, "user_metadata": metadata})

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    def _tokens(self, payload: dict[str, Any]) -> AuthTokens:
        return AuthTokens(
            access_token=f"access-{payload['id']}",
            refresh_token=f"refresh-{payload['id']}",
            expires_in=3600,
            user=payload,
        )

    async def sign_in_with_password(self, email: str, password: str) -> AuthTokens:
        account = self.accounts.get(email)
        if account is None or account[0] != password:
            raise NotAuthorized("Invalid login credentials", 400)
        return self._tokens(account[1])

    async def refresh_session(self, refresh_token: str) -> AuthTokens:
        for _, payload in self.accounts.values():
            if refresh_token == f"refresh-{payload['id']}":
                return self._tokens(payload)
        raise NotAuthorized("Invalid refresh token", 401)

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        self._access_token = None


async def settle(rounds: int = 5) -> None:
    """Let callbacks and tasks scheduled on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_user(user_id: str, username: str | None = None) -> AuthUser:
    return AuthUser(id=user_id, email=f"{user_id}@example.com", username=username or user_id)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> FakeBackend:
    return FakeBackend(clock)


@pytest.fixture
def store(backend: FakeBackend) -> MessageStore:
    return MessageStore(backend)


@pytest.fixture
def subscriptions(store: MessageStore) -> SubscriptionManager:
    return SubscriptionManager(store)


@pytest.fixture
def cache(tmp_path: Path) -> Iterator[Cache]:
    cache = Cache(tmp_path / "cache.db")
    yield cache
    cache.close()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(config_dir=tmp_path / "config", use_keyring=False)
