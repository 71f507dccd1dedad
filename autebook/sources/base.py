"""Abstract base class for web-novel sources.

A source knows how to turn the HTML of a book's index page into book
metadata plus an ordered chapter list, and how to cut the reading content
out of a chapter page. It never performs I/O itself: the inventory resolver
and the content fetcher download pages through the shared
:class:`~autebook.client.RateLimitedFetcher` and hand the text over.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import NamedTuple

from ..models import BookMetadata


class RawChapter(NamedTuple):
    """A chapter entry as listed by the index page, before positions are assigned."""

    stable_id: str
    title: str
    url: str
    published_at: datetime | None = None


class NovelSource(ABC):
    """Abstract base for chapter sources.

    Example::

        source = source_for_url(url)
        html = await fetcher.get_text(source.index_url(url))
        meta, chapters = source.parse_index(html, url)
    """

    # ── Identity ────────────────────────────────────────────────────────

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier for this source (e.g. ``"royalroad"``)."""

    @abstractmethod
    def matches(self, url: str) -> bool:
        """Return True when *url* is a book URL this source understands."""

    def index_url(self, url: str) -> str:
        """URL of the page that lists the book's chapters."""
        return url

    # ── Parsing ─────────────────────────────────────────────────────────

    @abstractmethod
    def parse_index(self, html: str, url: str) -> tuple[BookMetadata, list[RawChapter]]:
        """Parse the index page.

        Raises
        ------
        SourceFormatChanged
            If the page does not contain a recognisable chapter list.
        """

    @abstractmethod
    def extract_content(self, html: str, url: str) -> str | None:
        """Return the reading content of a chapter page as an HTML fragment.

        Navigation, ads and other site chrome must already be removed.
        Returns ``None`` when no content can be found.
        """
