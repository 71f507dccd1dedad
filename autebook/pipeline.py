"""One book, from archive on disk to updated archive on disk.

``inspect -> resolve inventory -> plan -> fetch -> assemble``. Every stage
may fail; the failure is turned into a :class:`Failed` outcome naming the
stage so a batch keeps going.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from . import koreader
from .assembler import assemble_archive
from .cache import ImageCache
from .client import RateLimitedFetcher
from .config import Settings
from .content import fetch_contents, normalize_html, serialize_fragment
from .errors import AutebookError, ImageDecodeFailed
from .images import AssetIdAllocator, ImagePipeline
from .inspector import empty_state, inspect_archive
from .inventory import resolve_book
from .models import (
    ArchiveState,
    BookInventory,
    BookJobResult,
    BookMetadata,
    Failed,
    ImageReference,
    NoChange,
    Success,
)
from .planner import plan_update
from .progress import ProgressReporter
from .sources import NovelSource, source_for_url

log = logging.getLogger("autebook.pipeline")

FORBIDDEN_CHARACTERS = re.compile(r'[/\\:*?"<>|%\[\]]')


def book_filename(title: str) -> str:
    name = FORBIDDEN_CHARACTERS.sub("_", title).strip().strip(".")
    return f"{name or 'book'}.epub"


def stash_copy(book: Path, stash_dir: Path) -> Path:
    """Copy *book* to ``<stash_dir>/<stem>_<YYYY-MM-DD_HHhMM><suffix>``."""
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%Hh%M")
    stash_dir.mkdir(parents=True, exist_ok=True)
    target = stash_dir / f"{book.stem}_{stamp}{book.suffix}"
    shutil.copy2(book, target)
    return target


class BookPipeline:
    """Runs updates and creations against a shared fetcher.

    Example::

        async with RateLimitedFetcher(settings) as fetcher:
            pipeline = BookPipeline(fetcher, settings)
            result = await pipeline.update(Path("books/some-book.epub"))
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        settings: Settings | None = None,
        reporter: ProgressReporter | None = None,
        source_name: str | None = None,
    ):
        self.fetcher = fetcher
        self.settings = settings or Settings()
        self.reporter = reporter or ProgressReporter()
        self.source_name = source_name

    def _images(self, taken: frozenset[str], meta: BookMetadata) -> ImagePipeline:
        s = self.settings
        cache = ImageCache(
            s.cache_dir,
            meta.identifier or meta.source_url,
            variant=f"{s.image_format}-{s.image_max_width}",
        )
        return ImagePipeline(
            self.fetcher,
            AssetIdAllocator(taken),
            target=s.image_format,
            max_width=s.image_max_width,
            cache=cache,
        )

    async def _fetch(self, path: Path, source: NovelSource, missing, images: ImagePipeline):
        self.reporter.book_started(path, len(missing))
        return await fetch_contents(
            self.fetcher,
            source,
            missing,
            images,
            strict_images=self.settings.strict_images,
            on_fetched=lambda d: self.reporter.chapter_fetched(path, d),
        )

    def _finish(self, path: Path, outcome, title: str) -> BookJobResult:
        result = BookJobResult(book_path=path, outcome=outcome, title=title)
        self.reporter.book_finished(result)
        return result

    # ── Update ──────────────────────────────────────────────────────────

    async def update(self, path: Path) -> BookJobResult:
        """Bring the archive at *path* up to date with its source."""
        path = Path(path)
        title = path.stem
        try:
            state = await asyncio.to_thread(inspect_archive, path)
            title = state.metadata.title or title
            source = source_for_url(state.metadata.source_url, self.source_name)
            inventory = await resolve_book(self.fetcher, source, state.metadata.source_url)
            outcome = await self._update(path, state, source, inventory)
        except AutebookError as e:
            log.error("%s: %s failed: %s", path.name, e.stage, e)
            outcome = Failed(str(e), e.stage)
        except Exception as e:
            log.exception("%s: unexpected error", path.name)
            outcome = Failed(f"{type(e).__name__}: {e}", "unknown")
        return self._finish(path, outcome, title)

    async def _update(self, path: Path, state: ArchiveState, source: NovelSource, inventory: BookInventory):
        s = self.settings
        plan = plan_update(inventory.chapters, state.chapters, s.strict_titles, s.detect_republished)
        if plan.is_noop:
            if len(inventory.chapters) < len(state.chapters):
                log.warning("%s: %s, keeping the archive as is", path.name, plan.reason)
            else:
                log.info("%s: up to date (%d chapters)", path.name, len(state.chapters))
            return NoChange()

        if plan.rebuild_required:
            log.info("%s: rebuilding, %s", path.name, plan.reason)
        else:
            log.info("%s: %d new chapters", path.name, len(plan.missing))

        images = self._images(state.asset_ids, inventory.metadata)
        contents = await self._fetch(path, source, plan.missing, images)

        if plan.rebuild_required and s.stash_dir is not None:
            stashed = await asyncio.to_thread(stash_copy, path, s.stash_dir)
            log.info("%s: previous version kept as %s", path.name, stashed)

        await asyncio.to_thread(assemble_archive, path, state, contents, plan.rebuild_required)

        if plan.rebuild_required:
            added = max(0, len(inventory.chapters) - len(state.chapters))
        else:
            added = len(contents)
        if added:
            await asyncio.to_thread(koreader.mark_unfinished, path)
        return Success(chapters_added=added, rebuilt=plan.rebuild_required)

    # ── Create ──────────────────────────────────────────────────────────

    async def create(self, url: str, directory: Path, filename: str | None = None) -> BookJobResult:
        """Build a new archive for the book at *url* inside *directory*.

        If the target file already exists it is updated instead.
        """
        directory = Path(directory)
        path = directory / filename if filename else None
        title = url
        try:
            source = source_for_url(url, self.source_name)
            inventory = await resolve_book(self.fetcher, source, url)
            meta = inventory.metadata
            title = meta.title
            path = path or directory / book_filename(meta.title)
            if path.exists():
                log.info("%s already exists, updating it", path.name)
                return await self.update(path)

            if meta.description:
                meta = replace(meta, description=serialize_fragment(normalize_html(meta.description, url)))
            images = self._images(frozenset(), meta)
            cover = await self._cover(meta, images)
            contents = await self._fetch(path, source, inventory.chapters, images)
            directory.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(
                assemble_archive, path, empty_state(path), contents, False, meta, cover
            )
            log.info("%s: created with %d chapters", path.name, len(contents))
            outcome = Success(chapters_added=len(contents))
        except AutebookError as e:
            log.error("%s: %s failed: %s", url, e.stage, e)
            outcome = Failed(str(e), e.stage)
        except Exception as e:
            log.exception("%s: unexpected error", url)
            outcome = Failed(f"{type(e).__name__}: {e}", "unknown")
        return self._finish(path or directory, outcome, title)

    async def _cover(self, meta: BookMetadata, images: ImagePipeline) -> ImageReference | None:
        if not meta.cover_url:
            return None
        try:
            return await images.process(meta.cover_url)
        except ImageDecodeFailed as e:
            log.warning("%s: no cover (%s)", meta.title, e)
            return None
