"""Fallback fetchers used when a direct load is refused.

Hosts commonly block hot-linked images: they reject requests without a
browser ``User-Agent`` or a same-site ``Referer``, or they only serve images to
clients carrying session cookies.  :class:`NetworkImageProxy` covers the first
case with browser-like headers; :class:`BrowserImageProxy` covers the second by
fetching through a real Chromium context.

Proxies report failure in their result instead of raising, except for
``asyncio.CancelledError`` which always propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import httpx
from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Playwright, async_playwright

from repic.config import (
    BROWSER_USER_AGENT,
    HTTP_TIMEOUT_SEC,
    IMAGE_ACCEPT_HEADER,
    PROXY_NAVIGATION_TIMEOUT_MS,
)
from repic.utils.data_url import encode_data_url, sniff_mime
from repic.utils.sources import is_network_source, origin_of

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProxyResult:
    success: bool
    data: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: str) -> "ProxyResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str) -> "ProxyResult":
        return cls(success=False, error=error)


class ImageProxy(Protocol):
    async def proxy(self, url: str) -> ProxyResult: ...

    async def aclose(self) -> None: ...


def _as_data_url(body: bytes, content_type: str | None) -> str:
    mime = (content_type or "").split(";")[0].strip().lower()
    if not mime.startswith("image/"):
        mime = sniff_mime(body)
    return encode_data_url(body, mime)


def _proxy_headers(url: str) -> dict[str, str]:
    headers = {"User-Agent": BROWSER_USER_AGENT, "Accept": IMAGE_ACCEPT_HEADER}
    referer = origin_of(url)
    if referer:
        headers["Referer"] = referer
    return headers


class NetworkImageProxy:
    """Re-fetches the image with browser headers and a same-origin Referer."""

    def __init__(self, client: httpx.AsyncClient | None = None, *, timeout: float = HTTP_TIMEOUT_SEC):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def proxy(self, url: str) -> ProxyResult:
        if not is_network_source(url):
            return ProxyResult.failed(f"not a network source: {url}")
        try:
            response = await self._client.get(url, headers=_proxy_headers(url))
        except httpx.HTTPError as exc:
            LOGGER.debug("Network proxy request for %s failed: %s", url, exc)
            return ProxyResult.failed(f"{type(exc).__name__}: {exc}")
        if not response.is_success:
            return ProxyResult.failed(f"HTTP {response.status_code}")
        if not response.content:
            return ProxyResult.failed("empty response body")
        return ProxyResult.ok(_as_data_url(response.content, response.headers.get("content-type")))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class BrowserImageProxy:
    """Fetches the image from inside a headless Chromium context.

    The browser is started lazily on the first request and kept for reuse;
    requests share the context's cookie jar.  Pass ``context`` to reuse an
    existing :class:`BrowserContext` (it is then never closed here).
    """

    def __init__(
        self,
        *,
        context: BrowserContext | None = None,
        headless: bool = True,
        timeout_ms: int = PROXY_NAVIGATION_TIMEOUT_MS,
        playwright_factory: Callable[[], Any] = async_playwright,
    ):
        self._context: BrowserContext | None = context
        self._owns_context = context is None
        self._headless = headless
        self._timeout_ms = timeout_ms
        self._playwright_factory = playwright_factory
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        # Serializes startup and shutdown.
        self._lifecycle_lock = asyncio.Lock()

    async def startup(self) -> None:
        if self._context is not None:
            return
        async with self._lifecycle_lock:
            if self._context is not None:
                return
            if self._playwright is None:
                self._playwright = await self._playwright_factory().start()
            LOGGER.info("Starting Chromium for the browser image proxy (headless=%s)", self._headless)
            if self._browser is None:
                self._browser = await self._playwright.chromium.launch(headless=self._headless)
            self._context = await self._browser.new_context(user_agent=BROWSER_USER_AGENT)

    async def shutdown(self) -> None:
        async with self._lifecycle_lock:
            if self._owns_context:
                if self._browser is not None:
                    await self._browser.close()
                    self._browser = None
                    LOGGER.info("Chromium closed")
                self._context = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    async def proxy(self, url: str) -> ProxyResult:
        if not is_network_source(url):
            return ProxyResult.failed(f"not a network source: {url}")
        try:
            await self.startup()
            response = await self._context.request.get(
                url,
                headers=_proxy_headers(url),
                timeout=self._timeout_ms,
            )
            if not response.ok:
                return ProxyResult.failed(f"HTTP {response.status}")
            body = await response.body()
        except PlaywrightError as exc:
            LOGGER.debug("Browser proxy request for %s failed: %s", url, exc)
            return ProxyResult.failed(f"browser: {exc}")
        if not body:
            return ProxyResult.failed("empty response body")
        return ProxyResult.ok(_as_data_url(body, response.headers.get("content-type")))

    async def aclose(self) -> None:
        await self.shutdown()
