"""
Tests for image encoding, asset ids, the per-run image memo and the
on-disk image cache.

Run:
    python -m pytest tests/test_images.py -v
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import os
import sys
import tempfile
import unittest
from pathlib import Path

import httpx
from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from helpers import fast_settings, png_bytes

from autebook.cache import ImageCache, book_key
from autebook.client import RateLimitedFetcher
from autebook.errors import ImageDecodeFailed
from autebook.images import AssetIdAllocator, ImagePipeline, encode_image

IMAGE_URL = "https://www.royalroadcdn.com/public/img/map.png"


class TestAssetIdAllocator(unittest.TestCase):

    def test_prefix(self):
        digest = hashlib.sha1(b"x").hexdigest()
        self.assertEqual(AssetIdAllocator().allocate(digest), "img-" + digest[:12])

    def test_same_digest_same_id(self):
        allocator = AssetIdAllocator()
        digest = hashlib.sha1(b"x").hexdigest()
        self.assertEqual(allocator.allocate(digest), allocator.allocate(digest))

    def test_archive_ids_left_alone(self):
        allocator = AssetIdAllocator({"img-1", "img-2"})
        ids = {allocator.allocate(hashlib.sha1(bytes([n])).hexdigest()) for n in range(50)}
        self.assertEqual(len(ids), 50)
        self.assertFalse(ids & {"img-1", "img-2"})

    def test_never_reuses_taken_ids(self):
        allocator = AssetIdAllocator({"img-aaaaaaaaaaaa", "cover"})
        first = allocator.allocate("a" * 40)
        second = allocator.allocate("a" * 12 + "b" * 28)
        self.assertEqual(first, "img-aaaaaaaaaaaa-2")
        self.assertEqual(second, "img-aaaaaaaaaaaa-3")
        self.assertEqual(allocator.allocate("a" * 40), first)


class TestEncodeImage(unittest.TestCase):

    def test_downscaled_to_max_width(self):
        data, ext = encode_image(png_bytes(1200, 600), "jpeg", 600)
        self.assertEqual(ext, "jpg")
        with Image.open(io.BytesIO(data)) as img:
            self.assertEqual(img.format, "JPEG")
            self.assertEqual(img.size, (600, 300))

    def test_small_image_keeps_size(self):
        data, ext = encode_image(png_bytes(100, 50), "png", 600)
        self.assertEqual(ext, "png")
        with Image.open(io.BytesIO(data)) as img:
            self.assertEqual(img.size, (100, 50))

    def test_transparency_flattened_for_jpeg(self):
        buf = io.BytesIO()
        Image.new("RGBA", (10, 10), (0, 0, 0, 0)).save(buf, "PNG")
        data, _ = encode_image(buf.getvalue(), "jpeg", 600)
        with Image.open(io.BytesIO(data)) as img:
            self.assertEqual(img.mode, "RGB")
            self.assertEqual(img.getpixel((5, 5)), (255, 255, 255))

    def test_webp(self):
        data, ext = encode_image(png_bytes(20, 20), "webp", 600)
        self.assertEqual(ext, "webp")
        self.assertEqual(data[8:12], b"WEBP")

    def test_gif_kept_as_is(self):
        buf = io.BytesIO()
        Image.new("P", (1000, 10)).save(buf, "GIF")
        raw = buf.getvalue()
        self.assertEqual(encode_image(raw, "jpeg", 600), (raw, "gif"))

    def test_svg_kept_as_is(self):
        raw = b'<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10"/>'
        self.assertEqual(encode_image(raw), (raw, "svg"))

    def test_html_payload(self):
        with self.assertRaises(ValueError):
            encode_image(b"<!DOCTYPE html><html><body>Login</body></html>")

    def test_garbage(self):
        with self.assertRaises(ValueError):
            encode_image(b"\x00\x01not an image")


class PipelineCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.requests: list[str] = []
        self.payload = png_bytes(900, 300)

    async def asyncTearDown(self):
        self.tmp.cleanup()

    def fetcher(self, status=200):
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(str(request.url))
            if status != 200:
                return httpx.Response(status)
            return httpx.Response(200, content=self.payload)

        return RateLimitedFetcher(fast_settings(), transport=httpx.MockTransport(handler))


class TestImagePipeline(PipelineCase):

    async def test_one_download_per_url(self):
        async with self.fetcher() as fetcher:
            pipeline = ImagePipeline(fetcher, AssetIdAllocator())
            a, b, c = await asyncio.gather(*(pipeline.process(IMAGE_URL) for _ in range(3)))
        self.assertEqual(len(self.requests), 1)
        self.assertIs(a, b)
        self.assertIs(b, c)
        self.assertEqual(a.media_type, "image/jpeg")
        self.assertEqual(a.file_name, a.asset_id + ".jpg")

    async def test_download_failure(self):
        async with self.fetcher(status=404) as fetcher:
            pipeline = ImagePipeline(fetcher, AssetIdAllocator())
            with self.assertRaises(ImageDecodeFailed) as ctx:
                await pipeline.process(IMAGE_URL)
        self.assertEqual(ctx.exception.url, IMAGE_URL)
        self.assertEqual(ctx.exception.stage, "images")

    async def test_undecodable(self):
        self.payload = b"<html><body>Rate limited</body></html>"
        async with self.fetcher() as fetcher:
            pipeline = ImagePipeline(fetcher, AssetIdAllocator())
            with self.assertRaises(ImageDecodeFailed):
                await pipeline.process(IMAGE_URL)

    async def test_cache_hit_skips_download(self):
        root = Path(self.tmp.name)
        async with self.fetcher() as fetcher:
            first = await ImagePipeline(fetcher, AssetIdAllocator(), cache=ImageCache(root, "book")).process(IMAGE_URL)
        async with self.fetcher(status=500) as fetcher:
            again = await ImagePipeline(fetcher, AssetIdAllocator(), cache=ImageCache(root, "book")).process(IMAGE_URL)
        self.assertEqual(len(self.requests), 1)
        self.assertEqual(first.encoded_bytes, again.encoded_bytes)
        self.assertEqual(first.asset_id, again.asset_id)

    async def test_cache_keyed_on_format(self):
        root = Path(self.tmp.name)
        async with self.fetcher() as fetcher:
            await ImagePipeline(fetcher, AssetIdAllocator(), cache=ImageCache(root, "book", "jpeg-600")).process(IMAGE_URL)
            ref = await ImagePipeline(
                fetcher, AssetIdAllocator(), target="png", cache=ImageCache(root, "book", "png-600")
            ).process(IMAGE_URL)
        self.assertEqual(len(self.requests), 2)
        self.assertEqual(ref.media_type, "image/png")


class TestImageCache(unittest.TestCase):

    def test_disabled(self):
        cache = ImageCache(None, "book")
        self.assertFalse(cache.enabled)
        cache.put(IMAGE_URL, b"data", "jpg")
        self.assertIsNone(cache.get(IMAGE_URL))

    def test_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            cache = ImageCache(Path(tmp), "https://www.royalroad.com/fiction/1/x")
            self.assertIsNone(cache.get(IMAGE_URL))
            cache.put(IMAGE_URL, b"data", "png")
            self.assertEqual(cache.get(IMAGE_URL), (b"data", "png"))
            self.assertEqual(list(cache.dir.glob("*.tmp")), [])

    def test_book_key(self):
        self.assertEqual(book_key("royalroad-123"), "royalroad-123")
        self.assertEqual(book_key("https://www.royalroad.com/fiction/1"), "https_www.royalroad.com_fiction_1")
        self.assertEqual(book_key("///"), "unknown")


if __name__ == "__main__":
    unittest.main()
