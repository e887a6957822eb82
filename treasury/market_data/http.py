"""Shared async JSON client for the public yield and perp feeds."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class FeedError(RuntimeError):
    """An upstream feed returned an error or an unexpected payload."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class JsonFeedClient:
    """Lazily-created `httpx.AsyncClient` with a fixed base URL and timeout."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        client = await self._get_client()
        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code if e.response is not None else None
            raise FeedError(f"{self.base_url}{path} returned {status_code}", status_code=status_code) from e
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise FeedError(f"Network error calling {self.base_url}{path}: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise FeedError(f"Invalid JSON from {self.base_url}{path}") from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
