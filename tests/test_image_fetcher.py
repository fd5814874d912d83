"""Tests for HttpImageFetcher over httpx.MockTransport."""

from __future__ import annotations

import httpx
import pytest

from repic.errors import NetworkError
from repic.infrastructure.services.image_fetcher import HttpImageFetcher
from repic.utils.data_url import decode_data_url


def _fetcher(handler) -> HttpImageFetcher:
    return HttpImageFetcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestHttpImageFetcher:
    @pytest.mark.asyncio
    async def test_returns_data_url_with_content_type(self, png_bytes):
        fetcher = _fetcher(lambda request: httpx.Response(200, content=png_bytes, headers={"content-type": "image/png"}))
        data, mime = decode_data_url(await fetcher.fetch("https://example.com/a.png"))
        assert data == png_bytes
        assert mime == "image/png"

    @pytest.mark.asyncio
    async def test_sniffs_mime_when_content_type_is_wrong(self, png_bytes):
        fetcher = _fetcher(
            lambda request: httpx.Response(200, content=png_bytes, headers={"content-type": "application/octet-stream"})
        )
        _data, mime = decode_data_url(await fetcher.fetch("https://example.com/a"))
        assert mime == "image/png"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        fetcher = _fetcher(lambda request: httpx.Response(404))
        with pytest.raises(NetworkError) as excinfo:
            await fetcher.fetch("https://example.com/missing.png")
        assert excinfo.value.status == 404
        assert excinfo.value.url == "https://example.com/missing.png"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        fetcher = _fetcher(handler)
        with pytest.raises(NetworkError) as excinfo:
            await fetcher.fetch("https://example.com/a.png")
        assert excinfo.value.status is None

    @pytest.mark.asyncio
    async def test_empty_body(self):
        fetcher = _fetcher(lambda request: httpx.Response(200, content=b""))
        with pytest.raises(NetworkError):
            await fetcher.fetch("https://example.com/a.png")

    @pytest.mark.asyncio
    async def test_sends_no_referer(self, png_bytes):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, content=png_bytes)

        await _fetcher(handler).fetch("https://example.com/a.png")
        assert "referer" not in seen

    @pytest.mark.asyncio
    async def test_does_not_close_injected_client(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        await HttpImageFetcher(client).aclose()
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_closes_own_client(self):
        fetcher = HttpImageFetcher()
        await fetcher.aclose()
        assert fetcher._client.is_closed
