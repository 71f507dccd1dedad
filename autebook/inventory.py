"""Chapter inventory resolution.

The inventory is the ordered list of chapters the remote source currently
publishes for a book. It is always resolved from scratch, starting at
position 1, and every request goes through the shared fetcher.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from .client import RateLimitedFetcher
from .errors import FetchError, SourceFormatChanged, SourceUnavailable
from .models import BookInventory, BookMetadata, ChapterDescriptor
from .sources import NovelSource, RawChapter

log = logging.getLogger("autebook.inventory")


async def _fetch_index(
    fetcher: RateLimitedFetcher, source: NovelSource, book_url: str
) -> tuple[BookMetadata, list[RawChapter]]:
    index_url = source.index_url(book_url)
    try:
        html = await fetcher.get_text(index_url)
    except FetchError as exc:
        raise SourceUnavailable(f"Chapter index unavailable: {exc}") from exc
    return source.parse_index(html, book_url)


def _descriptors(raw: list[RawChapter], book_url: str) -> list[ChapterDescriptor]:
    if not raw:
        raise SourceFormatChanged(f"No chapters listed for {book_url}")
    seen: set[str] = set()
    chapters = []
    for position, entry in enumerate(raw, 1):
        if not entry.stable_id:
            raise SourceFormatChanged(f"Chapter {position} has no id ({book_url})")
        if entry.stable_id in seen:
            raise SourceFormatChanged(f"Duplicate chapter id {entry.stable_id!r} ({book_url})")
        seen.add(entry.stable_id)
        chapters.append(
            ChapterDescriptor(
                stable_id=entry.stable_id,
                title=entry.title or f"Chapter {position}",
                source_url=entry.url,
                position=position,
                published_at=entry.published_at,
            )
        )
    return chapters


async def resolve_inventory(
    fetcher: RateLimitedFetcher, source: NovelSource, book_url: str
) -> AsyncIterator[ChapterDescriptor]:
    """Yield the book's chapters in reading order.

    Raises
    ------
    SourceUnavailable
        If the chapter index cannot be retrieved.
    SourceFormatChanged
        If it cannot be parsed into descriptors. Validation happens before
        the first descriptor is yielded, so consumers never see a partial
        list.
    """
    _, raw = await _fetch_index(fetcher, source, book_url)
    for descriptor in _descriptors(raw, book_url):
        yield descriptor


async def resolve_book(
    fetcher: RateLimitedFetcher, source: NovelSource, book_url: str
) -> BookInventory:
    """Resolve metadata and the full chapter list as one snapshot."""
    meta, raw = await _fetch_index(fetcher, source, book_url)
    chapters = _descriptors(raw, book_url)
    log.debug("%s: %d chapters listed", meta.title, len(chapters))
    return BookInventory(metadata=meta, chapters=tuple(chapters))
