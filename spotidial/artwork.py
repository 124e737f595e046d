# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Album artwork for the dial's round 240x240 display.

Downloads the cover, centre-crops it to the display size and re-encodes it
as JPEG.  Transcoding is CPU-bound and runs in a small thread pool.
"""

import asyncio
import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

log = logging.getLogger(__name__)

DISPLAY_SIZE = (240, 240)
JPEG_QUALITY = 80

# Shared thread pool for CPU-bound image processing
_artwork_executor = ThreadPoolExecutor(max_workers=2)


class ArtworkCache:
    """Simple LRU cache for transcoded artwork (URL -> JPEG bytes)."""

    def __init__(self, max_size=32):
        self.max_size = max_size
        self._cache: OrderedDict[str, bytes] = OrderedDict()

    def get(self, url: str):
        if url in self._cache:
            self._cache.move_to_end(url)
            return self._cache[url]
        return None

    def put(self, url: str, data: bytes):
        if self.max_size <= 0:
            return
        if url in self._cache:
            self._cache.move_to_end(url)
        else:
            if len(self._cache) >= self.max_size:
                self._cache.popitem(last=False)
        self._cache[url] = data

    def __contains__(self, url: str):
        return url in self._cache

    def __len__(self):
        return len(self._cache)


def transcode(image_bytes: bytes, size=DISPLAY_SIZE, quality=JPEG_QUALITY) -> bytes | None:
    """Centre-crop raw image bytes to *size* and encode as JPEG.

    Returns None if the bytes are not a decodable image.
    """
    if not image_bytes:
        log.warning("Empty image data provided")
        return None
    try:
        image = Image.open(BytesIO(image_bytes))
        if image.mode != "RGB":
            image = image.convert("RGB")
        image = ImageOps.fit(image, size, method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))

        buf = BytesIO()
        image.save(buf, "JPEG", quality=quality)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        log.warning("Error processing image: %s", e)
        return None

    result = buf.getvalue()
    log.info("Image processed: %d bytes -> %d bytes", len(image_bytes), len(result))
    return result


class ArtworkPipeline:
    """Fetch + transcode, with a small cache keyed by artwork URL."""

    def __init__(self, gateway, settings=None):
        self.gateway = gateway
        self.size = (settings.width, settings.height) if settings else DISPLAY_SIZE
        self.quality = settings.quality if settings else JPEG_QUALITY
        self.cache = ArtworkCache(settings.cache_size if settings else 32)

    async def render(self, url: str | None) -> bytes | None:
        """Return display-ready JPEG bytes for *url*, or None if any stage fails."""
        if not url:
            return None
        cached = self.cache.get(url)
        if cached is not None:
            log.debug("Artwork cache hit: %s", url)
            return cached

        raw = await self.gateway.fetch_artwork_bytes(url)
        if raw is None:
            return None

        loop = asyncio.get_running_loop()
        jpeg = await loop.run_in_executor(
            _artwork_executor, transcode, raw, self.size, self.quality)
        if jpeg is not None:
            self.cache.put(url, jpeg)
        return jpeg
