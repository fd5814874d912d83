from typing import Tuple
from PIL import Image, ImageOps, UnidentifiedImageError
import logging
import io

from repic.config import THUMB_QUALITY, THUMB_SIZE
from repic.errors import DecodeError
from repic.utils.data_url import decode_data_url, encode_data_url

LOGGER = logging.getLogger(__name__)


def fit_within(width: int, height: int, max_edge: int) -> Tuple[int, int]:
    """Scale ``(width, height)`` so the longer edge is at most *max_edge*.

    Images already small enough are returned unchanged; we never upscale.
    """
    if width > height:
        if width > max_edge:
            return max_edge, max(1, round(height * max_edge / width))
    elif height > max_edge:
        return max(1, round(width * max_edge / height)), max_edge
    return width, height


class PillowThumbnailGenerator:
    """
    Derives small JPEG thumbnails from encoded images using Pillow.
    """

    def __init__(self, max_edge: int = THUMB_SIZE, quality: int = THUMB_QUALITY):
        self._max_edge = max_edge
        self._quality = quality

    @property
    def max_edge(self) -> int:
        return self._max_edge

    def derive(self, image: str) -> str:
        """
        Return a JPEG data URL whose longer edge is at most ``max_edge``.
        Raises DecodeError if the payload cannot be decoded.

        CPU bound; the loader calls this through ``asyncio.to_thread``.
        """
        data, _mime = decode_data_url(image)
        return encode_data_url(self.derive_bytes(data), "image/jpeg")

    def derive_bytes(self, data: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(data)) as img:
                # Animated formats: the first frame is enough for a thumbnail
                img.seek(0)
                img = ImageOps.exif_transpose(img)
                if img.mode != "RGB":
                    img = self._flatten(img)
                size = fit_within(img.width, img.height, self._max_edge)
                if size != img.size:
                    img = img.resize(size, Image.Resampling.LANCZOS)
                out = io.BytesIO()
                img.save(out, format="JPEG", quality=self._quality, optimize=True)
                return out.getvalue()
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
            LOGGER.debug(f"Pillow failed to thumbnail {len(data)} bytes: {e}")
            raise DecodeError(f"cannot decode image: {e}") from e

    @staticmethod
    def _flatten(img: Image.Image) -> Image.Image:
        # JPEG has no alpha; composite transparent images on white
        if img.mode in ("RGBA", "LA", "P"):
            rgba = img.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        return img.convert("RGB")
