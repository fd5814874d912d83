"""Direct HTTP fetcher used by the loader for network sources."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from repic.config import HTTP_TIMEOUT_SEC, IMAGE_ACCEPT_HEADER
from repic.errors import NetworkError
from repic.utils.data_url import encode_data_url, sniff_mime

LOGGER = logging.getLogger(__name__)


class ImageFetcher(Protocol):
    """Fetches one network source and returns it as a data URL.

    Implementations raise :class:`NetworkError` on failure and must let
    ``asyncio.CancelledError`` propagate so the loader can abort them.
    """

    async def fetch(self, url: str) -> str: ...

    async def aclose(self) -> None: ...


class HttpImageFetcher:
    """:class:`ImageFetcher` on a shared ``httpx.AsyncClient``.

    Requests go out anonymously: no cookies, no Referer.  Sites that insist
    on either are handled further down the escalation chain.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = HTTP_TIMEOUT_SEC,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"Accept": IMAGE_ACCEPT_HEADER},
        )

    async def fetch(self, url: str) -> str:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise NetworkError(f"{type(exc).__name__}: {exc}", url=url) from exc

        if not response.is_success:
            raise NetworkError(f"HTTP {response.status_code}", url=url, status=response.status_code)

        data = response.content
        if not data:
            raise NetworkError("empty response body", url=url, status=response.status_code)

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        mime = content_type if content_type.startswith("image/") else sniff_mime(data)
        LOGGER.debug("Fetched %s (%d bytes, %s)", url, len(data), mime)
        return encode_data_url(data, mime)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
