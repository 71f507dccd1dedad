#!/usr/bin/env python3
"""Keep EPUB books of web novels up to date.

Usage:
    autebook update ~/Books                     # update every EPUB under ~/Books
    autebook update a.epub b.epub -w 2          # two books at a time
    autebook update --from-file books.txt       # paths listed in a file
    autebook update ~/Books --stash-dir ~/old   # keep a copy before rebuilds
    autebook create https://www.royalroad.com/fiction/12345/some-book --dir ~/Books
    autebook inspect ~/Books/some-book.epub     # show the chapters of an archive
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, config
from .client import RateLimitedFetcher
from .config import Settings, read_path_list
from .errors import ArchiveError
from .inspector import inspect_archive
from .models import BookJobResult, Failed, NoChange, Success
from .orchestrator import discover_books, run_batch
from .pipeline import BookPipeline
from .progress import ProgressReporter, RichReporter
from .sources import VALID_SOURCES

log = logging.getLogger("autebook")

console = Console(stderr=True)


def setup_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )
    if verbose < 2:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        workers=getattr(args, "workers", config.WORKERS),
        max_concurrent=args.max_concurrent,
        requests_per_second=args.rate,
        burst=args.burst,
        image_format=args.image_format,
        strict_images=args.strict_images,
        strict_titles=not getattr(args, "lenient_titles", False),
        detect_republished=getattr(args, "detect_republished", False),
        cache_dir=None if args.no_cache else args.cache_dir,
        stash_dir=getattr(args, "stash_dir", None),
    )


def reporter_for(args: argparse.Namespace) -> ProgressReporter:
    if args.no_progress or args.quiet or not console.is_terminal:
        return ProgressReporter()
    return RichReporter(console)


# ── Summary ──────────────────────────────────────────────────────────────────


def print_summary(results: list[BookJobResult]) -> None:
    updated = [r for r in results if isinstance(r.outcome, Success)]
    unchanged = [r for r in results if isinstance(r.outcome, NoChange)]
    failed = [r for r in results if isinstance(r.outcome, Failed)]
    chapters = sum(r.outcome.chapters_added for r in updated)
    rebuilt = sum(1 for r in updated if r.outcome.rebuilt)

    console.print()
    summary = (
        f"[green]{len(updated)}[/green] updated  •  "
        f"[blue]{len(unchanged)}[/blue] up to date  •  "
        f"[red]{len(failed)}[/red] failed  •  "
        f"[bold]{len(results)}[/bold] total  •  "
        f"[green]{chapters}[/green] new chapters"
    )
    if rebuilt:
        summary += f"  •  [yellow]{rebuilt}[/yellow] rebuilt"
    console.print(Panel(summary, title="[bold cyan]Update Summary[/bold cyan]", border_style="cyan"))

    if updated:
        table = Table(title="Updated", show_header=True, header_style="bold green")
        table.add_column("Book", ratio=2)
        table.add_column("New", width=6, justify="right")
        table.add_column("Rebuilt", width=8)
        for r in updated:
            table.add_row(r.title[:50], str(r.outcome.chapters_added), "yes" if r.outcome.rebuilt else "")
        console.print(table)

    if failed:
        table = Table(title="Failed", show_header=True, header_style="bold red")
        table.add_column("Book", ratio=2)
        table.add_column("Stage", width=10)
        table.add_column("Error", ratio=3)
        for r in failed:
            table.add_row(r.book_path.name, r.outcome.stage, r.outcome.reason[:120])
        console.print(table)


# ── Commands ─────────────────────────────────────────────────────────────────


def cmd_update(args: argparse.Namespace, settings: Settings) -> int:
    paths = [Path(p) for p in args.paths]
    if args.from_file:
        paths.extend(read_path_list(Path(args.from_file)))
    if not paths:
        paths = [Path(".")]

    books = discover_books(paths)
    if not books:
        console.print("[yellow]No EPUB found.[/yellow]")
        return 0
    log.info("%d books, %d workers, %.1f requests/s", len(books), settings.workers, settings.requests_per_second)

    results = asyncio.run(run_batch(books, settings, reporter_for(args), source_name=args.source))
    print_summary(results)
    return 1 if any(not r.ok for r in results) else 0


async def _create(args: argparse.Namespace, settings: Settings) -> BookJobResult:
    async with RateLimitedFetcher(settings) as fetcher:
        pipeline = BookPipeline(fetcher, settings, reporter_for(args), args.source)
        reporter = pipeline.reporter
        reporter.batch_started(1)
        try:
            return await pipeline.create(args.url, Path(args.dir), args.filename)
        finally:
            reporter.batch_finished()


def cmd_create(args: argparse.Namespace, settings: Settings) -> int:
    result = asyncio.run(_create(args, settings))
    print_summary([result])
    return 0 if result.ok else 1


def cmd_inspect(args: argparse.Namespace) -> int:
    try:
        state = inspect_archive(Path(args.path))
    except ArchiveError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    meta = state.metadata
    out = Console()
    out.print(
        Panel(
            f"[bold]{meta.title or '?'}[/bold]\n"
            f"Author:    {meta.author or '?'}\n"
            f"Source:    {meta.source_url or '[red]none[/red]'}\n"
            f"Generator: {state.generator or '?'}\n"
            f"Package:   {state.opf_path}  ({len(state.entries)} items)",
            title=str(state.path.name),
            border_style="blue",
            expand=False,
        )
    )
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", width=5, justify="right")
    table.add_column("Id", width=12)
    table.add_column("Title", ratio=3)
    table.add_column("Published", width=20)
    for c in state.chapters:
        published = c.published_at.strftime("%Y-%m-%d %H:%M") if c.published_at else ""
        table.add_row(str(c.position), c.stable_id, c.title, published)
    out.print(table)
    return 0


# ── CLI ──────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv includes HTTP)")
    common.add_argument("-q", "--quiet", action="store_true", help="Only warnings and errors")

    fetch = argparse.ArgumentParser(add_help=False)
    fetch.add_argument("--max-concurrent", type=int, default=config.MAX_CONCURRENT,
                       help=f"Max in-flight HTTP requests (default: {config.MAX_CONCURRENT})")
    fetch.add_argument("--rate", type=float, default=config.REQUESTS_PER_SECOND,
                       help=f"Requests per second (default: {config.REQUESTS_PER_SECOND:g})")
    fetch.add_argument("--burst", type=int, default=config.BURST, help=f"Token bucket size (default: {config.BURST})")
    fetch.add_argument("--image-format", default=config.IMAGE_FORMAT, choices=config.IMAGE_FORMATS + ("jpg",),
                       help=f"Format inline images are stored in (default: {config.IMAGE_FORMAT})")
    fetch.add_argument("--strict-images", action="store_true", help="Fail a chapter when one of its images fails")
    fetch.add_argument("--source", choices=VALID_SOURCES, help="Force a source instead of guessing it from the URL")
    fetch.add_argument("--cache-dir", type=Path, default=config.CACHE_DIR, help="Image cache directory")
    fetch.add_argument("--no-cache", action="store_true", help="Do not cache images on disk")
    fetch.add_argument("--no-progress", action="store_true", help="No progress bars")

    parser = argparse.ArgumentParser(
        prog="autebook",
        description="Keep EPUB books of web novels up to date",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    p_update = sub.add_parser("update", parents=[common, fetch], help="Add new chapters to existing books")
    p_update.add_argument("paths", nargs="*", help="EPUB files or directories (default: current directory)")
    p_update.add_argument("--from-file", metavar="FILE", help="Read book paths from FILE, one per line")
    p_update.add_argument("-w", "--workers", type=int, default=config.WORKERS,
                          help=f"Books updated concurrently (default: {config.WORKERS})")
    p_update.add_argument("--lenient-titles", action="store_true",
                          help="Do not rebuild a book when a chapter title changed")
    p_update.add_argument("--detect-republished", action="store_true",
                          help="Rebuild a book when a chapter was republished")
    p_update.add_argument("--stash-dir", type=Path, default=config.STASH_DIR,
                          help="Keep a dated copy of a book here before rebuilding it")

    p_create = sub.add_parser("create", parents=[common, fetch], help="Create a book from its URL")
    p_create.add_argument("url", help="Book URL")
    p_create.add_argument("--dir", default=".", help="Output directory (default: current directory)")
    p_create.add_argument("--filename", help="Output file name (default: from the book title)")

    p_inspect = sub.add_parser("inspect", parents=[common], help="List the chapters of an EPUB")
    p_inspect.add_argument("path", help="EPUB file")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    setup_logging(args.verbose, args.quiet)

    if args.command == "inspect":
        return cmd_inspect(args)

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    try:
        if args.command == "update":
            return cmd_update(args, settings)
        return cmd_create(args, settings)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
