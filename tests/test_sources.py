"""
Tests for the selector-driven sources: index parsing, content extraction
and URL routing.

Run:
    python -m pytest tests/test_sources.py -v
"""

from __future__ import annotations

import os
import sys
import unittest
from datetime import datetime, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from helpers import FakeRoyalRoad

from autebook.errors import SourceFormatChanged, UnsupportedSource
from autebook.sources import GENERIC, ROYALROAD, SelectorSource, create_source, source_for_url

ROYALROAD_CHAPTER = """
<html><body>
<div class="nav-buttons"><a href="/prev">Previous</a></div>
<hr/>
<div class="portlet"><div class="author-note"><p>Thanks for reading!</p></div></div>
<div class="chapter-inner chapter-content">
  <p>First paragraph.</p>
  <p class="cjRm3x">This story is stolen from Royal Road.</p>
  <p>Second paragraph.</p>
  <script>ads()</script>
</div>
<div class="portlet"><div class="author-note"><p>See you tomorrow.</p></div></div>
</body></html>
"""

GENERIC_INDEX = """
<html><head><meta property="og:image" content="/cover.jpg"/></head><body>
<h1>Generic Novel</h1>
<span class="author">Anon</span>
<ul class="chapters">
  <li><a href="/novel/chapter/one">Chapter One</a> <time datetime="2024-03-01T10:00:00Z">March</time></li>
  <li><a href="/novel/chapter/two">Chapter Two</a></li>
</ul>
</body></html>
"""


class TestRoyalRoadIndex(unittest.TestCase):

    def setUp(self):
        self.fake = FakeRoyalRoad()
        self.fake.add_chapters(3)
        self.source = SelectorSource(ROYALROAD)

    def test_metadata(self):
        meta, _ = self.source.parse_index(self.fake.index_html(), self.fake.book_url)
        self.assertEqual(meta.title, "Test Book")
        self.assertEqual(meta.author, "Jane Author")
        self.assertEqual(meta.identifier, "royalroad-123")
        self.assertEqual(meta.cover_url, self.fake.cover_url)
        self.assertIn("A story about tests.", meta.description)
        self.assertEqual(meta.source_url, self.fake.book_url)

    def test_chapters(self):
        _, chapters = self.source.parse_index(self.fake.index_html(), self.fake.book_url)
        self.assertEqual([c.stable_id for c in chapters], ["1001", "1002", "1003"])
        self.assertEqual(chapters[0].title, "Chapter 1")
        self.assertEqual(chapters[0].url, self.fake.chapter_url(1))
        self.assertEqual(chapters[0].published_at, datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc))

    def test_chapters_sorted_by_order(self):
        self.fake.chapters.reverse()
        _, chapters = self.source.parse_index(self.fake.index_html(), self.fake.book_url)
        self.assertEqual([c.stable_id for c in chapters], ["1001", "1002", "1003"])

    def test_html_entities_in_titles(self):
        self.fake.rename(2, "Tom &amp; Jerry")
        _, chapters = self.source.parse_index(self.fake.index_html(), self.fake.book_url)
        self.assertEqual(chapters[1].title, "Tom & Jerry")

    def test_missing_chapter_list(self):
        html = "<html><body><h1>Test Book</h1></body></html>"
        with self.assertRaises(SourceFormatChanged):
            self.source.parse_index(html, self.fake.book_url)

    def test_missing_title(self):
        html = self.fake.index_html().replace("<h1>Test Book</h1>", "")
        with self.assertRaises(SourceFormatChanged):
            self.source.parse_index(html, self.fake.book_url)

    def test_malformed_json(self):
        html = self.fake.index_html().replace("window.chapters = [", "window.chapters = [{,")
        with self.assertRaises(SourceFormatChanged):
            self.source.parse_index(html, self.fake.book_url)


class TestRoyalRoadContent(unittest.TestCase):

    def setUp(self):
        self.source = SelectorSource(ROYALROAD)
        self.html = self.source.extract_content(ROYALROAD_CHAPTER, "https://www.royalroad.com/x")

    def test_content_wrapped(self):
        self.assertIn('<div class="chapter-content">', self.html)
        self.assertIn("First paragraph.", self.html)
        self.assertIn("Second paragraph.", self.html)

    def test_chrome_and_watermark_removed(self):
        self.assertNotIn("stolen", self.html)
        self.assertNotIn("ads()", self.html)
        self.assertNotIn("Previous", self.html)

    def test_author_notes(self):
        start = self.html.index("authors-note-start")
        body = self.html.index("First paragraph.")
        end = self.html.index("authors-note-end")
        self.assertLess(start, body)
        self.assertLess(body, end)
        self.assertIn("Thanks for reading!", self.html)
        self.assertIn("See you tomorrow.", self.html)

    def test_long_watermark_like_block_is_kept(self):
        long_text = "word " * 60
        html = ROYALROAD_CHAPTER.replace("This story is stolen from Royal Road.", long_text)
        out = self.source.extract_content(html, "https://www.royalroad.com/x")
        self.assertIn(long_text.strip(), out)

    def test_no_content(self):
        self.assertIsNone(self.source.extract_content("<html><body></body></html>", "https://x"))


class TestGenericSource(unittest.TestCase):

    def test_link_list(self):
        source = SelectorSource(GENERIC)
        meta, chapters = source.parse_index(GENERIC_INDEX, "https://novels.example/novel")
        self.assertEqual(meta.title, "Generic Novel")
        self.assertEqual(meta.author, "Anon")
        self.assertEqual(meta.cover_url, "https://novels.example/cover.jpg")
        self.assertEqual([c.stable_id for c in chapters], ["one", "two"])
        self.assertEqual(chapters[1].url, "https://novels.example/novel/chapter/two")
        self.assertIsNotNone(chapters[0].published_at)
        self.assertIsNone(chapters[1].published_at)

    def test_chapter_id_falls_back_to_path(self):
        source = SelectorSource(GENERIC)
        self.assertEqual(source.chapter_id("https://novels.example/read/42.html"), "read/42.html")


class TestRouting(unittest.TestCase):

    def test_royalroad_url(self):
        source = source_for_url("https://www.royalroad.com/fiction/123/test-book")
        self.assertEqual(source.name, "royalroad")

    def test_unknown_url(self):
        with self.assertRaises(UnsupportedSource) as ctx:
            source_for_url("https://novels.example/novel")
        self.assertEqual(ctx.exception.stage, "source")

    def test_empty_url(self):
        with self.assertRaises(UnsupportedSource):
            source_for_url("")

    def test_preferred_source(self):
        self.assertEqual(source_for_url("https://novels.example/novel", "generic").name, "generic")

    def test_create_unknown(self):
        with self.assertRaises(ValueError):
            create_source("nope")


if __name__ == "__main__":
    unittest.main()
