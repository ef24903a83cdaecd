"""REST client for the hosted database, storage and auth service."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..errors import BackendError, NotAuthorized, TransientFetchError
from .filters import Filter
from .models import AuthTokens

logger = logging.getLogger(__name__)


class MarketplaceClient:
    """Async client for the PostgREST-style data API, object storage and auth."""

    def __init__(
        self,
        server_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            server_url: Base URL of the hosted project (e.g., https://abc.example.co)
            api_key: Public (anon) API key sent with every request
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._access_token: str | None = None
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> MarketplaceClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return  # Already connected
        kwargs: dict[str, Any] = {}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            kwargs["http2"] = True  # Many small requests to one host
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            follow_redirects=True,
            **kwargs,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not connected."""
        if self._client is None:
            raise BackendError("Client not connected. Call connect() first.")
        return self._client

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def set_access_token(self, token: str | None) -> None:
        """Use a user access token instead of the anon key for authorization."""
        self._access_token = token

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self._access_token or self.api_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    def _build_url(self, path: str) -> str:
        return f"{self.server_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        params: list[tuple[str, str]] | None = None,
        json_data: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make a request and map failures onto the error taxonomy."""
        logger.debug("%s %s %s", method, path, params or "")
        try:
            response = await self.client.request(
                method,
                self._build_url(path),
                params=params,
                json=json_data,
                content=content,
                headers=self._headers(headers),
            )
        except httpx.ConnectError as e:
            raise TransientFetchError(f"Failed to connect to server: {e}") from e
        except httpx.TimeoutException as e:
            raise TransientFetchError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientFetchError(f"Transport error: {e}") from e

        if response.status_code >= 400:
            message = response.text[:200]
            error_type = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    message = body.get("message") or body.get("msg") or body.get("error_description") or message
                    error_type = body.get("code") or body.get("error")
            except ValueError:
                pass
            if response.status_code in (401, 403):
                raise NotAuthorized(message, status=response.status_code, error_type=error_type)
            if response.status_code >= 500 or response.status_code == 429:
                raise TransientFetchError(
                    f"HTTP {response.status_code}: {message}",
                    status=response.status_code,
                    error_type=error_type,
                )
            raise BackendError(
                f"HTTP {response.status_code}: {message}",
                status=response.status_code,
                error_type=error_type,
            )

        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                f"Failed to parse response (status={response.status_code}): {e}. "
                f"Response: {response.text[:500]}"
            ) from e

    # Table endpoints

    async def query(
        self,
        table: str,
        filter: Filter | None = None,
        order: str | None = None,
        limit: int | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        """
        Read rows from a table or view.

        Args:
            table: Table or view name
            filter: Row filter expression
            order: Order clause in ``column.asc`` / ``column.desc`` form
            limit: Maximum rows to return
            select: Column selection (may embed related tables)
        """
        params: list[tuple[str, str]] = [("select", select)]
        if filter is not None:
            params.extend(filter.to_params())
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", f"rest/v1/{table}", params=params)
        data = self._json(response)
        return list(data or [])

    async def count(self, table: str, filter: Filter | None = None) -> int:
        """Exact number of rows matching a filter, without fetching them."""
        params: list[tuple[str, str]] = [("select", "*")]
        if filter is not None:
            params.extend(filter.to_params())
        response = await self._request(
            "HEAD", f"rest/v1/{table}", params=params, headers={"Prefer": "count=exact"}
        )
        # Content-Range: 0-24/3573 or */0
        content_range = response.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1]
        if not total.isdigit():
            raise BackendError(f"Missing row count in response: {content_range!r}")
        return int(total)

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""
        response = await self._request(
            "POST",
            f"rest/v1/{table}",
            json_data=row,
            headers={"Prefer": "return=representation"},
        )
        data = self._json(response)
        if isinstance(data, list):
            if not data:
                raise BackendError(f"Insert into {table} returned no row")
            return data[0]
        return data

    async def update(
        self, table: str, filter: Filter, patch: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Patch all rows matching a filter and return the affected rows."""
        response = await self._request(
            "PATCH",
            f"rest/v1/{table}",
            params=filter.to_params(),
            json_data=patch,
            headers={"Prefer": "return=representation"},
        )
        return list(self._json(response) or [])

    # Storage endpoints

    def public_url(self, bucket: str, path: str) -> str:
        """Public URL of an object in a public bucket."""
        return self._build_url(f"storage/v1/object/public/{bucket}/{quote(path)}")

    async def upload_object(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str:
        """Upload bytes to object storage and return the public URL."""
        await self._request(
            "POST",
            f"storage/v1/object/{bucket}/{quote(path)}",
            content=data,
            headers={"Content-Type": content_type or "application/octet-stream"},
        )
        return self.public_url(bucket, path)

    # Auth endpoints

    async def sign_in_with_password(self, email: str, password: str) -> AuthTokens:
        """Exchange e-mail and password for a session."""
        response = await self._request(
            "POST",
            "auth/v1/token",
            params=[("grant_type", "password")],
            json_data={"email": email, "password": password},
        )
        return AuthTokens(**self._json(response))

    async def refresh_session(self, refresh_token: str) -> AuthTokens:
        """Exchange a refresh token for a new session."""
        response = await self._request(
            "POST",
            "auth/v1/token",
            params=[("grant_type", "refresh_token")],
            json_data={"refresh_token": refresh_token},
        )
        return AuthTokens(**self._json(response))

    async def sign_out(self) -> None:
        """Revoke the current session."""
        if self._access_token is None:
            return
        await self._request("POST", "auth/v1/logout")
        self._access_token = None


# Convenience function for quick testing
async def check_connection(server_url: str, api_key: str) -> tuple[bool, str]:
    """
    Test connection to the hosted backend.

    Returns:
        Tuple of (success, message)
    """
    try:
        async with MarketplaceClient(server_url, api_key) as client:
            await client.query("houses", limit=1, select="id")
            return True, "Connected"
    except NotAuthorized:
        return False, "Invalid API key"
    except TransientFetchError as e:
        return False, str(e)
    except BackendError as e:
        return False, f"Unexpected error: {e}"
