"""Batch updates: discover books, run them through a pool of workers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from pathlib import Path

from .client import RateLimitedFetcher
from .config import Settings
from .models import BookJobResult
from .pipeline import BookPipeline
from .progress import ProgressReporter

log = logging.getLogger("autebook.orchestrator")


def discover_books(paths: Iterable[Path]) -> list[Path]:
    """Expand *paths* into EPUB files.

    Directories are searched recursively for ``*.epub``; files are taken as
    they are. The result is de-duplicated on the resolved path and keeps the
    order in which books were first seen.
    """
    books: list[Path] = []
    seen: set[Path] = set()

    def add(p: Path) -> None:
        key = p.resolve()
        if key not in seen:
            seen.add(key)
            books.append(p)

    for path in paths:
        path = Path(path).expanduser()
        if path.is_dir():
            for p in sorted(path.rglob("*.epub")):
                if p.is_file():
                    add(p)
        elif path.is_file():
            add(path)
        else:
            log.warning("%s does not exist, skipping", path)
    return books


async def worker(
    name: str,
    queue: asyncio.Queue,
    pipeline: BookPipeline,
    results: list[BookJobResult],
    total: int,
) -> None:
    """Pull books from the queue until it is drained."""
    while True:
        idx, path = await queue.get()
        try:
            start = time.monotonic()
            log.debug("[%d/%d] %s: %s", idx, total, name, path.name)
            result = await pipeline.update(path)
            results.append(result)
            log.debug("[%d/%d] %s: %s -> %s (%.0fs)", idx, total, name, path.name,
                      type(result.outcome).__name__, time.monotonic() - start)
        finally:
            queue.task_done()


async def run_batch(
    books: list[Path],
    settings: Settings | None = None,
    reporter: ProgressReporter | None = None,
    fetcher: RateLimitedFetcher | None = None,
    source_name: str | None = None,
) -> list[BookJobResult]:
    """Update every book in *books*; one result per book, in input order.

    A single fetcher, built here unless one is passed in, carries every
    request of the batch.
    """
    settings = settings or Settings()
    reporter = reporter or ProgressReporter()
    results: list[BookJobResult] = []
    if not books:
        return results

    queue: asyncio.Queue = asyncio.Queue()
    for i, path in enumerate(books, 1):
        queue.put_nowait((i, path))
    total = len(books)

    own_fetcher = fetcher is None
    fetcher = fetcher or RateLimitedFetcher(settings)
    pipeline = BookPipeline(fetcher, settings, reporter, source_name)
    reporter.batch_started(total)
    tasks = [
        asyncio.create_task(worker(f"W{i + 1}", queue, pipeline, results, total))
        for i in range(min(settings.workers, total))
    ]
    try:
        await queue.join()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        reporter.batch_finished()
        if own_fetcher:
            await fetcher.close()

    order = {p: n for n, p in enumerate(books)}
    results.sort(key=lambda r: order.get(r.book_path, len(order)))
    return results
