"""Socket.IO client for the realtime change feed."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError
from socketio.exceptions import SocketIOError

from ..errors import SubscriptionLost
from .filters import Filter

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Channel:
    """One server-side insert subscription, routed by topic."""

    topic: str
    table: str
    filter: Filter | None
    callback: Callable[[dict[str, Any]], None]
    joined: bool = field(default=False)


class RealtimeSocket:
    """Socket.IO client delivering row-insert events for subscribed tables."""

    def __init__(self, server_url: str, api_key: str) -> None:
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self._access_token: str | None = None
        self._sio: socketio.AsyncClient | None = None
        self._connected = False
        self._channels: dict[str, Channel] = {}
        self._background: set[asyncio.Task[Any]] = set()

        # Event callbacks
        self._on_connected: Callable[[], None] | None = None
        self._on_disconnected: Callable[[], None] | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels.values())

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    def on_connected(self, callback: Callable[[], None]) -> None:
        """Register callback for connection established (including reconnects)."""
        self._on_connected = callback

    def on_disconnected(self, callback: Callable[[], None]) -> None:
        """Register callback for disconnection."""
        self._on_disconnected = callback

    def _create_client(self) -> socketio.AsyncClient:
        """Create a new Socket.IO client with event handlers."""
        sio = socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=0,  # Infinite retries
            reconnection_delay=1,
            reconnection_delay_max=30,
            logger=False,
            engineio_logger=False,
        )

        @sio.event
        async def connect() -> None:
            self._connected = True
            logger.info("Realtime connected")
            # Server forgets subscriptions across reconnects
            for channel in list(self._channels.values()):
                await self._join(channel)
            if self._on_connected:
                self._on_connected()

        @sio.event
        async def disconnect() -> None:
            self._connected = False
            for channel in self._channels.values():
                channel.joined = False
            logger.warning("Realtime disconnected")
            if self._on_disconnected:
                self._on_disconnected()

        @sio.event
        async def connect_error(data: Any) -> None:
            logger.warning("Realtime connection error: %s", data)

        @sio.on("postgres_changes")
        async def on_change(data: dict[str, Any]) -> None:
            self._handle_change(data)

        return sio

    async def connect(self) -> None:
        """Connect to the realtime endpoint, raising SubscriptionLost on failure."""
        if self._sio is not None and self._connected:
            return

        self._sio = self._create_client()
        auth = {"apikey": self.api_key, "token": self._access_token or self.api_key}
        try:
            await self._sio.connect(
                self.server_url,
                auth=auth,
                transports=["websocket", "polling"],
                wait_timeout=10,
            )
        except (SocketConnectionError, OSError, asyncio.TimeoutError) as e:
            self._sio = None
            self._connected = False
            raise SubscriptionLost(f"Realtime connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from the server and forget every channel."""
        self._channels.clear()
        if self._sio is not None:
            await self._sio.disconnect()
            self._sio = None
            self._connected = False

    async def subscribe(
        self,
        table: str,
        filter: Filter | None,
        callback: Callable[[dict[str, Any]], None],
    ) -> Channel:
        """
        Subscribe to inserts on a table.

        Args:
            table: Table to watch
            filter: Server-side filter (only simple equality is honoured by most servers)
            callback: Called with the new row for every insert on this channel
        """
        if self._sio is None or not self._connected:
            raise SubscriptionLost("Realtime transport is not connected")

        channel = Channel(
            topic=f"{table}:{uuid.uuid4().hex[:12]}",
            table=table,
            filter=filter,
            callback=callback,
        )
        self._channels[channel.topic] = channel
        try:
            await self._join(channel)
        except SocketIOError as e:
            self._channels.pop(channel.topic, None)
            raise SubscriptionLost(f"Failed to subscribe to {table}: {e}") from e
        return channel

    def unsubscribe(self, channel: Channel) -> None:
        """Stop routing events to a channel; the server is told in the background."""
        if self._channels.pop(channel.topic, None) is None:
            return
        channel.joined = False
        if self._sio is None or not self._connected:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # No loop left to notify the server from
        task = loop.create_task(self._leave(channel))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _join(self, channel: Channel) -> None:
        if self._sio is None:
            raise SubscriptionLost("Realtime transport is not connected")
        await self._sio.emit("subscribe", {
            "topic": channel.topic,
            "table": channel.table,
            "event": "INSERT",
            "filter": channel.filter.to_query_string() if channel.filter else None,
        })
        channel.joined = True

    async def _leave(self, channel: Channel) -> None:
        if self._sio is None:
            return
        try:
            await self._sio.emit("unsubscribe", {"topic": channel.topic})
        except SocketIOError as e:
            logger.warning("Failed to unsubscribe %s: %s", channel.topic, e)

    def _handle_change(self, data: dict[str, Any]) -> None:
        """Route a change event to its channel."""
        topic = data.get("topic")
        channel = self._channels.get(topic) if topic else None
        if channel is None:
            # Late event for a channel we already left
            logger.debug("Dropping event for unknown topic %s", topic)
            return
        if data.get("eventType", "INSERT") != "INSERT":
            return
        row = data.get("new") or data.get("record")
        if not isinstance(row, dict):
            logger.warning("Malformed change event on %s: %s", topic, str(data)[:200])
            return
        try:
            channel.callback(row)
        except Exception:
            logger.exception("Error handling insert on %s", topic)
