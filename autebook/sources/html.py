"""Selector-driven HTML source.

One class covers every supported site; what differs between sites is a
:class:`SourceProfile` made of CSS selectors and a couple of regexes. The
chapter list comes either from links on the index page or from a JSON
array embedded in a ``<script>`` (``window.chapters = [...]``).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from html import unescape
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from ..errors import SourceFormatChanged
from ..models import BookMetadata
from .base import NovelSource, RawChapter

log = logging.getLogger("autebook.sources")


@dataclass(frozen=True)
class SourceProfile:
    name: str
    url_pattern: str
    content_selector: str
    title_selector: str = "h1"
    author_selector: str = ""
    description_selector: str = ""
    cover_selector: str = ""
    cover_regex: str = ""
    chapter_link_selector: str = ""
    chapters_json_regex: str = ""
    chapter_id_regex: str = ""
    note_start_selector: str = ""
    note_end_selector: str = ""
    chrome_selectors: tuple[str, ...] = ()
    watermark_selector: str = ""
    watermark_max_length: int = 200
    language: str = "en"


ROYALROAD = SourceProfile(
    name="royalroad",
    url_pattern=r"^https?://(?:www\.)?royalroad\.com/fiction/\d+",
    content_selector=".chapter-inner.chapter-content",
    title_selector="h1",
    author_selector="h4 a",
    description_selector=".description > .hidden-content",
    cover_regex=r'window\.fictionCover = "(.*?)";',
    chapters_json_regex=r"window\.chapters = (\[.*\]);",
    chapter_id_regex=r"/chapter/(\d+)",
    # The site does not say whether a note is before or after the chapter.
    note_start_selector="hr + .portlet > .author-note",
    note_end_selector="div + .portlet > .author-note",
    chrome_selectors=("script", "style", ".ads-holder", ".nav-buttons"),
    watermark_selector="[class^=cj],[class^=cm]",
)

GENERIC = SourceProfile(
    name="generic",
    url_pattern=r"^https?://",
    content_selector=".chapter-content, #chapter-content, .entry-content, article",
    title_selector="h1",
    author_selector=".author a, .author, [rel=author]",
    description_selector=".description, .summary, .synopsis",
    cover_selector="meta[property='og:image']",
    chapter_link_selector=".chapter-list a, #chapters a, ul.chapters a, a.chapter-link",
    chapter_id_regex=r"/chapters?/([\w-]+)",
    chrome_selectors=(
        "script",
        "style",
        "iframe",
        "nav",
        "header",
        "footer",
        ".ads",
        ".advertisement",
        ".navigation",
        ".nav-links",
        ".comments",
        ".share",
    ),
)

PROFILES: dict[str, SourceProfile] = {p.name: p for p in (ROYALROAD, GENERIC)}


def _parse_datetime(value: object) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _text_of(soup: BeautifulSoup, selector: str) -> str:
    if not selector:
        return ""
    node = soup.select_one(selector)
    return node.get_text(" ", strip=True) if node else ""


def _inner_html(node: Tag | None) -> str:
    if node is None:
        return ""
    return node.decode_contents().strip()


class SelectorSource(NovelSource):
    """A :class:`NovelSource` configured by a :class:`SourceProfile`."""

    def __init__(self, profile: SourceProfile):
        self.profile = profile
        self._url_re = re.compile(profile.url_pattern)
        self._id_re = re.compile(profile.chapter_id_regex) if profile.chapter_id_regex else None

    @property
    def name(self) -> str:
        return self.profile.name

    def matches(self, url: str) -> bool:
        return bool(self._url_re.match(url or ""))

    def __repr__(self) -> str:
        return f"SelectorSource({self.profile.name!r})"

    # ── Index page ──────────────────────────────────────────────────────

    def parse_index(self, html: str, url: str) -> tuple[BookMetadata, list[RawChapter]]:
        p = self.profile
        soup = BeautifulSoup(html, "lxml")

        title = _text_of(soup, p.title_selector)
        if not title:
            raise SourceFormatChanged(f"No title found on {url}")

        if p.chapters_json_regex:
            chapters = self._chapters_from_json(html, url)
        else:
            chapters = self._chapters_from_links(soup, url)
        if not chapters:
            raise SourceFormatChanged(f"No chapters found on {url}")

        meta = BookMetadata(
            title=title,
            source_url=url,
            author=_text_of(soup, p.author_selector) or "<unknown>",
            description=_inner_html(soup.select_one(p.description_selector)) if p.description_selector else "",
            identifier=self._book_identifier(url),
            language=p.language,
            cover_url=self._cover_url(soup, html, url),
        )
        return meta, chapters

    def _chapters_from_json(self, html: str, url: str) -> list[RawChapter]:
        m = re.search(self.profile.chapters_json_regex, html)
        if not m:
            return []
        try:
            entries = json.loads(m.group(1))
        except json.JSONDecodeError as exc:
            raise SourceFormatChanged(f"Malformed chapter list on {url}: {exc}") from exc
        if not isinstance(entries, list):
            raise SourceFormatChanged(f"Chapter list on {url} is not an array")

        if entries and all(isinstance(e, dict) and "order" in e for e in entries):
            entries = sorted(entries, key=lambda e: e["order"])

        chapters: list[RawChapter] = []
        for entry in entries:
            if not isinstance(entry, dict) or "id" not in entry or "url" not in entry:
                raise SourceFormatChanged(f"Chapter entry without id/url on {url}")
            chapters.append(
                RawChapter(
                    stable_id=str(entry["id"]),
                    title=unescape(str(entry.get("title", ""))).strip(),
                    url=urljoin(url, entry["url"]),
                    published_at=_parse_datetime(entry.get("date")),
                )
            )
        return chapters

    def _chapters_from_links(self, soup: BeautifulSoup, url: str) -> list[RawChapter]:
        chapters: list[RawChapter] = []
        for a in soup.select(self.profile.chapter_link_selector):
            href = a.get("href")
            if not href:
                continue
            chapter_url = urljoin(url, str(href))
            published = None
            time_tag = a.find("time") or (a.parent.find("time") if a.parent else None)
            if time_tag is not None:
                published = _parse_datetime(time_tag.get("datetime"))
            chapters.append(
                RawChapter(
                    stable_id=self.chapter_id(chapter_url),
                    title=a.get_text(" ", strip=True),
                    url=chapter_url,
                    published_at=published,
                )
            )
        return chapters

    def chapter_id(self, chapter_url: str) -> str:
        """Stable id for a chapter URL: the id regex match, else the URL path."""
        if self._id_re:
            m = self._id_re.search(chapter_url)
            if m:
                return m.group(1)
        return urlsplit(chapter_url).path.strip("/") or chapter_url

    def _book_identifier(self, url: str) -> str:
        segments = [s for s in urlsplit(url).path.split("/") if s]
        if len(segments) > 1:
            return f"{self.name}-{segments[1]}"
        return f"{self.name}-{segments[0]}" if segments else self.name

    def _cover_url(self, soup: BeautifulSoup, html: str, url: str) -> str:
        p = self.profile
        if p.cover_regex:
            m = re.search(p.cover_regex, html)
            if m:
                return urljoin(url, m.group(1))
        if p.cover_selector:
            node = soup.select_one(p.cover_selector)
            if node is not None:
                value = node.get("content") or node.get("src") or ""
                if value:
                    return urljoin(url, str(value))
        return ""

    # ── Chapter page ────────────────────────────────────────────────────

    def extract_content(self, html: str, url: str) -> str | None:
        p = self.profile
        soup = BeautifulSoup(html, "lxml")

        for selector in p.chrome_selectors:
            for node in soup.select(selector):
                node.decompose()
        if p.watermark_selector:
            for node in soup.select(p.watermark_selector):
                if len(node.decode_contents()) < p.watermark_max_length:
                    node.decompose()

        content = _inner_html(soup.select_one(p.content_selector))
        if not content:
            return None

        parts: list[str] = []
        if p.note_start_selector:
            note = _inner_html(soup.select_one(p.note_start_selector))
            if note:
                parts.append(f'<div class="authors-note-start">{note}</div>')
        parts.append(f'<div class="chapter-content">{content}</div>')
        if p.note_end_selector:
            note = _inner_html(soup.select_one(p.note_end_selector))
            if note:
                parts.append(f'<div class="authors-note-end">{note}</div>')
        return "\n".join(parts)
