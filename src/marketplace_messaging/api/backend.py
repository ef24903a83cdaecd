"""The hosted service as seen by the messaging core."""

from __future__ import annotations

from typing import Any, Callable, Protocol

from .client import MarketplaceClient
from .filters import Filter
from .realtime import RealtimeSocket

RowCallback = Callable[[dict[str, Any]], None]


class Backend(Protocol):
    """Row-level data access, object storage and an insert change feed."""

    @property
    def is_realtime_connected(self) -> bool: ...

    async def query(
        self,
        table: str,
        filter: Filter | None = None,
        order: str | None = None,
        limit: int | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]: ...

    async def count(self, table: str, filter: Filter | None = None) -> int: ...

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    async def update(
        self, table: str, filter: Filter, patch: dict[str, Any]
    ) -> list[dict[str, Any]]: ...

    async def upload_object(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str: ...

    async def subscribe_inserts(
        self, table: str, filter: Filter | None, callback: RowCallback
    ) -> Any: ...

    def unsubscribe(self, handle: Any) -> None: ...

    def on_connection_change(self, callback: Callable[[bool], None]) -> None: ...

    async def connect_realtime(self, access_token: str | None) -> None: ...

    async def aclose(self) -> None: ...


class HostedBackend:
    """Backend implementation over the REST client and the realtime socket."""

    def __init__(self, client: MarketplaceClient, socket: RealtimeSocket) -> None:
        self.client = client
        self.socket = socket
        self._connection_listeners: list[Callable[[bool], None]] = []
        self.socket.on_connected(lambda: self._notify_connection(True))
        self.socket.on_disconnected(lambda: self._notify_connection(False))

    @property
    def is_realtime_connected(self) -> bool:
        return self.socket.is_connected

    def on_connection_change(self, callback: Callable[[bool], None]) -> None:
        self._connection_listeners.append(callback)

    def _notify_connection(self, connected: bool) -> None:
        for listener in list(self._connection_listeners):
            listener(connected)

    async def query(
        self,
        table: str,
        filter: Filter | None = None,
        order: str | None = None,
        limit: int | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        await self.client.connect()
        return await self.client.query(table, filter, order=order, limit=limit, select=select)

    async def count(self, table: str, filter: Filter | None = None) -> int:
        await self.client.connect()
        return await self.client.count(table, filter)

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        await self.client.connect()
        return await self.client.insert(table, row)

    async def update(
        self, table: str, filter: Filter, patch: dict[str, Any]
    ) -> list[dict[str, Any]]:
        await self.client.connect()
        return await self.client.update(table, filter, patch)

    async def upload_object(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str:
        await self.client.connect()
        return await self.client.upload_object(bucket, path, data, content_type)

    async def subscribe_inserts(
        self, table: str, filter: Filter | None, callback: RowCallback
    ) -> Any:
        return await self.socket.subscribe(table, filter, callback)

    def unsubscribe(self, handle: Any) -> None:
        self.socket.unsubscribe(handle)

    async def connect_realtime(self, access_token: str | None) -> None:
        self.socket.set_access_token(access_token)
        await self.socket.connect()

    async def aclose(self) -> None:
        await self.socket.disconnect()
        await self.client.close()
