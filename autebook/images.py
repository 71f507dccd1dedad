"""Inline image pipeline: download, downscale, re-encode, name.

Every image of a book gets an ``asset_id`` derived from the SHA-1 of its
encoded bytes (``img-<12 hex digits>``). Ids already present in the archive
or handed out earlier in the run are never reused; a numeric suffix keeps
them apart.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
from collections.abc import Iterable

from PIL import Image

from . import config
from .cache import ImageCache
from .client import RateLimitedFetcher
from .errors import FetchError, ImageDecodeFailed
from .models import ImageReference

log = logging.getLogger("autebook.images")

MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "svg": "image/svg+xml",
}

_EXTENSIONS = {"jpeg": "jpg", "png": "png", "webp": "webp"}
_PIL_FORMATS = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}


class AssetIdAllocator:
    """Hands out asset ids unique within one archive."""

    def __init__(self, taken: Iterable[str] = ()):
        self._taken = set(taken)
        self._by_digest: dict[str, str] = {}

    def allocate(self, digest: str) -> str:
        """Return the id for encoded bytes with hex *digest*.

        The same digest allocated twice in a run yields the same id.
        """
        if digest in self._by_digest:
            return self._by_digest[digest]
        base = "img-" + digest[:12]
        asset_id, n = base, 1
        while asset_id in self._taken:
            n += 1
            asset_id = f"{base}-{n}"
        self._taken.add(asset_id)
        self._by_digest[digest] = asset_id
        return asset_id


def _sniff_text(data: bytes) -> str:
    head = data[:512].lstrip().lower()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in data[:4096].lower()):
        return "svg"
    if head.startswith(b"<!doctype html") or head.startswith(b"<html"):
        return "html"
    return ""


def encode_image(data: bytes, target: str = config.IMAGE_FORMAT, max_width: int = config.IMAGE_MAX_WIDTH) -> tuple[bytes, str]:
    """Decode *data*, shrink it to *max_width* and re-encode it as *target*.

    GIF (possibly animated) and SVG are kept as they are. Returns
    ``(encoded bytes, file extension)``; raises ``ValueError`` with a short
    reason when the payload is not an image.
    """
    kind = _sniff_text(data)
    if kind == "svg":
        return data, "svg"
    if kind == "html":
        raise ValueError("got an HTML page instead of an image")

    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format == "GIF":
                return data, "gif"
            img.load()
            if img.width > max_width:
                height = max(1, round(img.height * max_width / img.width))
                img = img.resize((max_width, height), Image.Resampling.LANCZOS)

            if target == "jpeg":
                if img.mode in ("RGBA", "LA", "P"):
                    rgba = img.convert("RGBA")
                    img = Image.new("RGB", rgba.size, (255, 255, 255))
                    img.paste(rgba, mask=rgba.getchannel("A"))
                elif img.mode != "RGB":
                    img = img.convert("RGB")
            elif img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                img = img.convert("RGBA")

            out = io.BytesIO()
            if target == "jpeg":
                img.save(out, "JPEG", quality=config.JPEG_QUALITY, optimize=True)
            elif target == "webp":
                img.save(out, "WEBP", quality=config.JPEG_QUALITY)
            else:
                img.save(out, _PIL_FORMATS[target], optimize=True)
    except (OSError, Image.DecompressionBombError) as e:
        raise ValueError(f"cannot decode image: {e}") from e
    return out.getvalue(), _EXTENSIONS[target]


class ImagePipeline:
    """Turns image URLs of one book into :class:`ImageReference` objects.

    A URL is processed once per pipeline; later requests for it, including
    concurrent ones, get the same reference.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        allocator: AssetIdAllocator,
        target: str = config.IMAGE_FORMAT,
        max_width: int = config.IMAGE_MAX_WIDTH,
        cache: ImageCache | None = None,
    ):
        self._fetcher = fetcher
        self._allocator = allocator
        self._target = target
        self._max_width = max_width
        self._cache = cache or ImageCache(None, "")
        self._tasks: dict[str, asyncio.Task] = {}

    async def process(self, url: str) -> ImageReference:
        """Return the image at *url* ready to be stored.

        Raises
        ------
        ImageDecodeFailed
            If it cannot be downloaded or decoded.
        """
        task = self._tasks.get(url)
        if task is None:
            task = asyncio.ensure_future(self._process(url))
            self._tasks[url] = task
        return await asyncio.shield(task)

    async def _load(self, url: str) -> tuple[bytes, str]:
        cached = self._cache.get(url)
        if cached is not None:
            log.debug("Image cache hit: %s", url)
            return cached

        try:
            raw = await self._fetcher.get_bytes(url)
        except FetchError as e:
            raise ImageDecodeFailed(url, f"download failed: {e}") from e

        try:
            encoded, ext = await asyncio.to_thread(encode_image, raw, self._target, self._max_width)
        except ValueError as e:
            raise ImageDecodeFailed(url, str(e)) from e

        await asyncio.to_thread(self._cache.put, url, encoded, ext)
        return encoded, ext

    async def _process(self, url: str) -> ImageReference:
        encoded, ext = await self._load(url)
        asset_id = self._allocator.allocate(hashlib.sha1(encoded).hexdigest())
        return ImageReference(
            original_url=url,
            asset_id=asset_id,
            encoded_bytes=encoded,
            media_type=MEDIA_TYPES.get(ext, "application/octet-stream"),
            file_name=f"{asset_id}.{ext}",
        )

    def cancel(self) -> None:
        """Cancel downloads still in flight."""
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
