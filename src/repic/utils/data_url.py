"""Helpers for the ``data:`` URLs used as the portable image encoding."""

from __future__ import annotations

import base64
import binascii

from ..errors import DecodeError

_DATA_PREFIX = "data:"
_BASE64_MARKER = ";base64"

# Leading magic bytes for the formats a photo viewer sees in the wild.  Used
# only when the server omits or lies about ``Content-Type``.
MAGIC_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8", "image/jpeg"),
    (b"GIF8", "image/gif"),
    (b"BM", "image/bmp"),
)


def sniff_mime(data: bytes, fallback: str = "application/octet-stream") -> str:
    """Guess the image MIME type of *data* from its signature."""

    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    for magic, mime in MAGIC_SIGNATURES:
        if data.startswith(magic):
            return mime
    return fallback


def encode_data_url(data: bytes, mime: str | None = None) -> str:
    """Return *data* as a base64 ``data:`` URL."""

    mime = mime or sniff_mime(data)
    payload = base64.b64encode(data).decode("ascii")
    return f"{_DATA_PREFIX}{mime}{_BASE64_MARKER},{payload}"


def decode_data_url(url: str) -> tuple[bytes, str]:
    """Split a base64 ``data:`` URL into ``(bytes, mime)``.

    Raises :class:`DecodeError` for anything that is not a base64 data URL.
    """

    if not url.startswith(_DATA_PREFIX):
        raise DecodeError("not a data URL")
    header, sep, payload = url[len(_DATA_PREFIX):].partition(",")
    if not sep or not header.endswith(_BASE64_MARKER):
        raise DecodeError("data URL is not base64 encoded")
    mime = header[: -len(_BASE64_MARKER)] or "text/plain"
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"invalid base64 payload: {exc}") from exc
    return data, mime
