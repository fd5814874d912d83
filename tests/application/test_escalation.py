"""Tests for EscalatingImageLoader: direct → network proxy → browser proxy."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeFetcher, spin
from repic.application.services.escalation import EscalatingImageLoader, EscalationLayer
from repic.errors import AbortError, ImageUnavailableError, InvalidSourceError, NetworkError
from repic.events import EventBus, ImageLoadedEvent, ImageUnavailableEvent
from repic.infrastructure.services.image_loader import ImageLoader
from repic.infrastructure.services.image_proxy import ProxyResult

URL = "https://img.example.com/hotlinked.jpg"
DIRECT_DATA = "data:image/png;base64,ZGlyZWN0"
PROXY_DATA = "data:image/jpeg;base64,cHJveHk="


class StubProxy:
    def __init__(self, result: ProxyResult | None = None, *, gated: bool = False, error: Exception | None = None):
        self.result = result or ProxyResult.failed("blocked")
        self.error = error
        self.calls: list[str] = []
        self.cancelled = False
        self.gate = asyncio.Event() if gated else None

    async def proxy(self, url: str) -> ProxyResult:
        self.calls.append(url)
        try:
            if self.gate is not None:
                await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.result

    async def aclose(self) -> None:
        pass


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher({URL: DIRECT_DATA})


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def published(bus) -> list:
    events = []
    bus.subscribe(ImageLoadedEvent, events.append)
    bus.subscribe(ImageUnavailableEvent, events.append)
    return events


def make_chain(fetcher, network=None, browser=None, *, timeout=5.0, bus=None):
    loader = ImageLoader(fetcher, event_bus=bus)
    chain = EscalatingImageLoader(
        loader, network_proxy=network, browser_proxy=browser, timeout=timeout, event_bus=bus
    )
    return loader, chain


def refused(fetcher: FakeFetcher) -> None:
    fetcher.failures[URL] = NetworkError("HTTP 403", url=URL, status=403)


class TestDirect:
    @pytest.mark.asyncio
    async def test_direct_success_skips_proxies(self, fetcher):
        network, browser = StubProxy(), StubProxy()
        _, chain = make_chain(fetcher, network, browser)

        result = await chain.resolve(URL)

        assert (result.data, result.layer) == (DIRECT_DATA, EscalationLayer.DIRECT)
        assert network.calls == [] and browser.calls == []

    @pytest.mark.asyncio
    async def test_local_sources_are_returned_unchanged(self, fetcher):
        _, chain = make_chain(fetcher)
        for source in ("file:///home/me/a.jpg", "data:image/png;base64,AAAA"):
            result = await chain.resolve(source)
            assert (result.data, result.layer) == (source, EscalationLayer.LOCAL)
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_rejects_non_network_source(self, fetcher):
        _, chain = make_chain(fetcher)
        with pytest.raises(InvalidSourceError):
            await chain.resolve("ftp://example.com/a.jpg")

    @pytest.mark.asyncio
    async def test_custom_direct_load(self, fetcher):
        _, chain = make_chain(fetcher)

        async def direct():
            return "data:image/gif;base64,R0lG"

        result = await chain.resolve(URL, direct=direct)
        assert result.data == "data:image/gif;base64,R0lG"
        assert fetcher.calls == []


class TestEscalation:
    @pytest.mark.asyncio
    async def test_network_proxy_result_is_written_back(self, fetcher, bus, published):
        refused(fetcher)
        network = StubProxy(ProxyResult.ok(PROXY_DATA))
        browser = StubProxy()
        loader, chain = make_chain(fetcher, network, browser, bus=bus)

        result = await chain.resolve(URL)

        assert (result.data, result.layer) == (PROXY_DATA, EscalationLayer.NETWORK_PROXY)
        assert loader.get_cached(URL) == PROXY_DATA
        assert browser.calls == []
        assert [(type(e), e.layer) for e in published] == [(ImageLoadedEvent, "network_proxy")]

    @pytest.mark.asyncio
    async def test_browser_proxy_is_last_resort(self, fetcher):
        refused(fetcher)
        network = StubProxy(ProxyResult.failed("HTTP 403"))
        browser = StubProxy(ProxyResult.ok(PROXY_DATA))
        loader, chain = make_chain(fetcher, network, browser)

        result = await chain.resolve(URL)

        assert result.layer is EscalationLayer.BROWSER_PROXY
        assert network.calls == [URL]
        assert loader.get_cached(URL) == PROXY_DATA

    @pytest.mark.asyncio
    async def test_raising_proxy_counts_as_failure(self, fetcher):
        refused(fetcher)
        network = StubProxy(error=RuntimeError("proxy crashed"))
        browser = StubProxy(ProxyResult.ok(PROXY_DATA))
        _, chain = make_chain(fetcher, network, browser)

        assert (await chain.resolve(URL)).layer is EscalationLayer.BROWSER_PROXY

    @pytest.mark.asyncio
    async def test_exhaustion_raises_with_attempts(self, fetcher, bus, published):
        refused(fetcher)
        network, browser = StubProxy(ProxyResult.failed("HTTP 403")), StubProxy(ProxyResult.failed("HTTP 451"))
        loader, chain = make_chain(fetcher, network, browser, bus=bus)

        with pytest.raises(ImageUnavailableError) as info:
            await chain.resolve(URL)

        attempts = info.value.attempts
        assert len(attempts) == 3
        assert attempts[0].startswith("direct: NetworkError")
        assert attempts[1:] == ("network_proxy: HTTP 403", "browser_proxy: HTTP 451")
        assert info.value.url == URL
        assert loader.get_cached(URL) is None
        (event,) = published
        assert isinstance(event, ImageUnavailableEvent)
        assert event.source == URL

    @pytest.mark.asyncio
    async def test_no_proxies_configured(self, fetcher):
        refused(fetcher)
        _, chain = make_chain(fetcher)
        with pytest.raises(ImageUnavailableError):
            await chain.resolve(URL)


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_stalled_direct_load_escalates(self, fetcher):
        fetcher.gated = True
        network = StubProxy(ProxyResult.ok(PROXY_DATA))
        loader, chain = make_chain(fetcher, network, timeout=0.01)

        result = await chain.resolve(URL)

        assert result.layer is EscalationLayer.NETWORK_PROXY
        assert network.calls == [URL]
        fetcher.release_all()
        await loader.drain()

    @pytest.mark.asyncio
    async def test_late_direct_success_wins_over_running_proxy(self, fetcher):
        fetcher.gated = True
        network = StubProxy(ProxyResult.ok(PROXY_DATA), gated=True)
        loader, chain = make_chain(fetcher, network, timeout=0.01)

        task = asyncio.ensure_future(chain.resolve(URL))
        await asyncio.sleep(0.05)
        await spin()
        assert network.calls == [URL]

        fetcher.release(URL)
        result = await task

        assert (result.data, result.layer) == (DIRECT_DATA, EscalationLayer.DIRECT)
        await spin()
        assert network.cancelled
        assert loader.get_cached(URL) == DIRECT_DATA

    @pytest.mark.asyncio
    async def test_late_direct_failure_does_not_escalate_again(self, fetcher):
        fetcher.gated = True
        refused(fetcher)
        network = StubProxy(ProxyResult.failed("HTTP 403"), gated=True)
        browser = StubProxy(ProxyResult.ok(PROXY_DATA))
        _, chain = make_chain(fetcher, network, browser, timeout=0.01)

        task = asyncio.ensure_future(chain.resolve(URL))
        await asyncio.sleep(0.05)
        fetcher.release(URL)
        await spin()
        assert not task.done()

        network.gate.set()
        result = await task

        assert result.layer is EscalationLayer.BROWSER_PROXY
        assert network.calls == [URL]
        assert browser.calls == [URL]

    @pytest.mark.asyncio
    async def test_waits_for_direct_when_every_proxy_failed(self, fetcher):
        fetcher.gated = True
        network, browser = StubProxy(), StubProxy()
        _, chain = make_chain(fetcher, network, browser, timeout=0.01)

        task = asyncio.ensure_future(chain.resolve(URL))
        await asyncio.sleep(0.05)
        await spin()
        assert network.calls == [URL] and browser.calls == [URL]
        assert not task.done()

        fetcher.release(URL)
        assert (await task).layer is EscalationLayer.DIRECT


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_error_short_circuits(self, fetcher):
        network = StubProxy(ProxyResult.ok(PROXY_DATA))
        _, chain = make_chain(fetcher, network)

        async def direct():
            raise AbortError("navigated away")

        with pytest.raises(AbortError):
            await chain.resolve(URL, direct=direct)
        assert network.calls == []

    @pytest.mark.asyncio
    async def test_cancel_all_during_proxy_discards_result(self, fetcher, bus, published):
        refused(fetcher)
        network = StubProxy(ProxyResult.ok(PROXY_DATA), gated=True)
        browser = StubProxy()
        loader, chain = make_chain(fetcher, network, browser, bus=bus)

        task = asyncio.ensure_future(chain.resolve(URL))
        await spin()
        assert network.calls == [URL]

        loader.cancel_all()
        network.gate.set()
        with pytest.raises(AbortError):
            await task

        assert loader.get_cached(URL) is None
        assert browser.calls == []
        assert published == []

    @pytest.mark.asyncio
    async def test_cancel_all_while_direct_is_still_running(self, fetcher):
        fetcher.gated = True
        network = StubProxy(ProxyResult.ok(PROXY_DATA), gated=True)
        loader, chain = make_chain(fetcher, network, timeout=0.01)

        task = asyncio.ensure_future(chain.resolve(URL))
        await asyncio.sleep(0.05)
        await spin()

        loader.cancel_all()
        with pytest.raises(AbortError):
            await task
        await spin()
        assert network.cancelled
        assert loader.get_cached(URL) is None
