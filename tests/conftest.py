import asyncio
import io
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

# Qt must not try to reach a display server in CI.
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from PIL import Image  # noqa: E402

from repic.errors import CacheError  # noqa: E402
from repic.infrastructure.services.offline_store import CacheEntry  # noqa: E402
from repic.utils.data_url import encode_data_url  # noqa: E402


def make_image_bytes(size=(640, 480), mode="RGB", fmt="PNG", color=(200, 40, 40)) -> bytes:
    if mode in ("RGBA", "LA"):
        color = (*color[: len(mode) - 1], 128)
    img = Image.new(mode, size, color)
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


async def spin(times: int = 20) -> None:
    """Let every ready callback on the loop run."""
    for _ in range(times):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Stub collaborators
# ---------------------------------------------------------------------------

class FakeFetcher:
    """ImageFetcher stub that can hold requests until a test releases them."""

    def __init__(self, payloads=None, *, gated: bool = False, default: str | None = None):
        self.payloads = dict(payloads or {})
        self.failures: dict[str, BaseException] = {}
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.gated = gated
        self.closed = False
        self._gates: dict[str, asyncio.Event] = {}
        self._default = default or encode_data_url(make_image_bytes(), "image/png")

    def gate(self, url: str) -> asyncio.Event:
        return self._gates.setdefault(url, asyncio.Event())

    def release(self, url: str) -> None:
        self.gate(url).set()

    def release_all(self) -> None:
        self.gated = False
        for event in self._gates.values():
            event.set()

    async def fetch(self, url: str) -> str:
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gated:
                await self.gate(url).wait()
            if url in self.failures:
                raise self.failures[url]
            return self.payloads.get(url, self._default)
        finally:
            self.active -= 1

    async def aclose(self) -> None:
        self.closed = True


class InMemoryBackend:
    """OfflineStoreBackend kept in a dict; can be switched to failing."""

    def __init__(self):
        self.entries: dict[str, tuple[CacheEntry, str]] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise CacheError("backend unavailable")

    async def get(self, key):
        self._check()
        item = self.entries.get(key)
        return item[0] if item else None

    async def put(self, entry, namespace):
        self._check()
        self.entries[entry.key] = (entry, namespace)

    async def count(self, namespace=None):
        self._check()
        return sum(1 for _, ns in self.entries.values() if namespace is None or ns == namespace)

    async def delete_oldest(self, namespace, limit):
        self._check()
        oldest = sorted(
            (entry for entry, ns in self.entries.values() if ns == namespace),
            key=lambda entry: entry.stored_at,
        )[:limit]
        for entry in oldest:
            del self.entries[entry.key]
        return len(oldest)

    async def clear(self):
        self._check()
        self.entries.clear()

    async def close(self):
        self.closed = True


@pytest.fixture()
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture()
def png_data_url(png_bytes) -> str:
    return encode_data_url(png_bytes, "image/png")


@pytest.fixture()
def memory_backend() -> InMemoryBackend:
    return InMemoryBackend()
