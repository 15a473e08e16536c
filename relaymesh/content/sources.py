"""
Content sources: access paths into the content-addressed network.

- PinningServiceClient: the primary path, an authenticated pinning API
- GatewayClient: a public HTTP gateway serving /ipfs/{id}

Both raise on failure (aiohttp.ClientError for transport and non-2xx
responses); retry and fallback policy lives in ContentFetcher.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

import aiohttp


@runtime_checkable
class ContentSource(Protocol):
    """One access path to the content network."""

    name: str

    async def fetch(self, content_id: str) -> bytes:
        ...

    async def probe(self, content_id: str) -> None:
        ...


class _HttpSource:
    """Shared session handling for HTTP-backed sources."""

    __slots__ = ("name", "_base_url", "_session", "_headers")

    def __init__(
        self,
        name: str,
        base_url: str,
        session: aiohttp.ClientSession,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.name = name
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._headers = headers or {}

    def url_for(self, content_id: str) -> str:
        return f"{self._base_url}/ipfs/{content_id}"

    async def fetch(self, content_id: str) -> bytes:
        async with self._session.get(self.url_for(content_id), headers=self._headers) as response:
            response.raise_for_status()
            return await response.read()

    async def probe(self, content_id: str) -> None:
        async with self._session.head(
            self.url_for(content_id), headers=self._headers, allow_redirects=True,
        ) as response:
            response.raise_for_status()


class GatewayClient(_HttpSource):
    """Public gateway. Uncached reads so a stale edge cannot mask an outage."""

    __slots__ = ()

    def __init__(self, base_url: str, session: aiohttp.ClientSession) -> None:
        super().__init__(
            name=base_url.rstrip("/"),
            base_url=base_url,
            session=session,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
        )


class PinningServiceClient(_HttpSource):
    """Primary pinning service reachable with a bearer token."""

    __slots__ = ()

    def __init__(self, api_url: str, token: str, session: aiohttp.ClientSession) -> None:
        headers = {"Accept": "application/octet-stream"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        super().__init__(name="primary", base_url=api_url, session=session, headers=headers)
