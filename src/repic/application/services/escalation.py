"""Escalating image resolution: direct → network proxy → browser proxy.

The direct attempt gets :data:`~repic.config.DIRECT_LOAD_TIMEOUT_SEC` to
answer.  Whichever happens first (success, failure or timeout) settles it,
and failure or timeout starts the proxy chain exactly once.  A direct attempt
that merely timed out keeps running; if it succeeds before the proxy layer
currently in progress reports, the direct result wins.

``AbortError`` anywhere, or a loader generation change, ends the chain
without writing anything back.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from repic.config import DIRECT_LOAD_TIMEOUT_SEC
from repic.errors import AbortError, ImageUnavailableError, InvalidSourceError
from repic.events import EventBus, ImageLoadedEvent, ImageUnavailableEvent
from repic.infrastructure.services.image_loader import ImageLoader, Priority
from repic.infrastructure.services.image_proxy import ImageProxy, ProxyResult
from repic.utils.sources import is_local_source, is_network_source

LOGGER = logging.getLogger(__name__)

DirectLoad = Callable[[], Awaitable[str]]


class EscalationLayer(str, Enum):
    LOCAL = "local"
    DIRECT = "direct"
    NETWORK_PROXY = "network_proxy"
    BROWSER_PROXY = "browser_proxy"


@dataclass(frozen=True)
class EscalationResult:
    data: str
    layer: EscalationLayer


class EscalatingImageLoader:
    """Resolves a source through the loader, falling back to the proxies."""

    def __init__(
        self,
        loader: ImageLoader,
        *,
        network_proxy: Optional[ImageProxy] = None,
        browser_proxy: Optional[ImageProxy] = None,
        timeout: float = DIRECT_LOAD_TIMEOUT_SEC,
        event_bus: Optional[EventBus] = None,
    ):
        self._loader = loader
        self._layers: list[tuple[EscalationLayer, ImageProxy]] = []
        if network_proxy is not None:
            self._layers.append((EscalationLayer.NETWORK_PROXY, network_proxy))
        if browser_proxy is not None:
            self._layers.append((EscalationLayer.BROWSER_PROXY, browser_proxy))
        self._timeout = timeout
        self._events = event_bus

    @property
    def loader(self) -> ImageLoader:
        return self._loader

    async def resolve(
        self,
        source: str,
        priority: Priority = Priority.HIGH,
        *,
        direct: Optional[DirectLoad] = None,
    ) -> EscalationResult:
        """Return image data for *source* and the layer that produced it.

        Raises :class:`AbortError` when the load was cancelled and
        :class:`ImageUnavailableError` when every layer failed.
        """
        if is_local_source(source):
            return EscalationResult(source, EscalationLayer.LOCAL)
        if not is_network_source(source):
            raise InvalidSourceError(f"not a network source: {source!r}")

        generation = self._loader.generation
        attempts: list[str] = []
        pending_direct: Optional[asyncio.Task] = asyncio.ensure_future(
            direct() if direct is not None else self._loader.load(source, priority)
        )
        try:
            done, _ = await asyncio.wait({pending_direct}, timeout=self._timeout)
            if done:
                # Settled before the timeout; never revisited.
                try:
                    return EscalationResult(self._direct_result(pending_direct), EscalationLayer.DIRECT)
                except _DirectFailed as failed:
                    attempts.append(f"direct: {failed.reason}")
                    pending_direct = None
            else:
                LOGGER.info("Direct load of %s stalled for %.1fs; escalating", source, self._timeout)
                attempts.append("direct: timed out")
            self._check_generation(source, generation)

            for layer, proxy in self._layers:
                outcome = await self._race(source, proxy, pending_direct)
                self._check_generation(source, generation)
                if isinstance(outcome, str):
                    return EscalationResult(outcome, EscalationLayer.DIRECT)
                result, direct_settled = outcome
                if direct_settled:
                    pending_direct = None
                if result.success and result.data:
                    self._loader.cache_proxy_result(source, result.data)
                    LOGGER.info("Loaded %s through the %s", source, layer.value.replace("_", " "))
                    if self._events is not None:
                        self._events.publish(ImageLoadedEvent(source=source, layer=layer.value))
                    return EscalationResult(result.data, layer)
                LOGGER.warning("%s failed for %s: %s", layer.value, source, result.error)
                attempts.append(f"{layer.value}: {result.error}")

            if pending_direct is not None:
                # Every proxy failed while the timed-out direct attempt still runs.
                await asyncio.wait({pending_direct})
                self._check_generation(source, generation)
                try:
                    return EscalationResult(self._direct_result(pending_direct), EscalationLayer.DIRECT)
                except _DirectFailed as failed:
                    attempts.append(f"direct (late): {failed.reason}")
        finally:
            if pending_direct is not None and not pending_direct.done():
                # Only this waiter is cancelled; a shared loader fetch keeps going.
                pending_direct.cancel()

        LOGGER.warning("Image %s unavailable after %d attempt(s)", source, len(attempts))
        if self._events is not None:
            self._events.publish(ImageUnavailableEvent(source=source, reason="; ".join(attempts)))
        raise ImageUnavailableError(f"all layers failed for {source}", url=source, attempts=tuple(attempts))

    async def _race(
        self,
        source: str,
        proxy: ImageProxy,
        pending_direct: Optional[asyncio.Task],
    ) -> str | tuple[ProxyResult, bool]:
        """Run one proxy layer, racing a still-running direct attempt.

        Returns the direct payload if it wins, otherwise ``(result,
        direct_settled)``.  A proxy that raises counts as a failed result.
        """
        proxy_task = asyncio.ensure_future(proxy.proxy(source))
        direct_settled = False
        try:
            while True:
                waiting = {proxy_task}
                if pending_direct is not None and not direct_settled:
                    waiting.add(pending_direct)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if pending_direct in done and not direct_settled:
                    direct_settled = True
                    try:
                        return self._direct_result(pending_direct)
                    except _DirectFailed as failed:
                        # Late failures never escalate a second time.
                        LOGGER.debug("Late direct failure for %s ignored: %s", source, failed.reason)
                if proxy_task in done:
                    break
            try:
                return proxy_task.result(), direct_settled
            except AbortError:
                raise
            except Exception as exc:
                LOGGER.warning("Proxy raised for %s: %s", source, exc)
                return ProxyResult.failed(f"{type(exc).__name__}: {exc}"), direct_settled
        finally:
            if not proxy_task.done():
                proxy_task.cancel()

    @staticmethod
    def _direct_result(task: asyncio.Task) -> str:
        try:
            return task.result()
        except AbortError:
            raise
        except asyncio.CancelledError:
            raise AbortError("direct load was cancelled") from None
        except Exception as exc:
            raise _DirectFailed(f"{type(exc).__name__}: {exc}") from exc

    def _check_generation(self, source: str, generation: int) -> None:
        if self._loader.generation != generation:
            raise AbortError(f"resolution of {source} was cancelled")


class _DirectFailed(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
