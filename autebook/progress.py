"""Progress reporting for batch runs.

Reporters receive events from every book worker. They are called from the
event loop thread and must return quickly.
"""

from __future__ import annotations

from pathlib import Path

from rich.console import Console, Group
from rich.live import Live
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from .models import BookJobResult, ChapterDescriptor


class ProgressReporter:
    """Base reporter: ignores every event."""

    def batch_started(self, total_books: int) -> None:
        pass

    def book_started(self, path: Path, total: int) -> None:
        """*total* is the number of chapters that will be fetched."""

    def chapter_fetched(self, path: Path, descriptor: ChapterDescriptor) -> None:
        pass

    def book_finished(self, result: BookJobResult) -> None:
        pass

    def batch_finished(self) -> None:
        pass


NullReporter = ProgressReporter


class RichReporter(ProgressReporter):
    """Overall bar for books plus one bar per book being fetched."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self.books = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}[/bold blue]"),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            TextColumn("•"),
            TimeElapsedColumn(),
            TextColumn("•"),
            TimeRemainingColumn(),
        )
        self.chapters = Progress(
            TextColumn("  "),
            TextColumn("[cyan]{task.description}[/cyan]"),
            BarColumn(bar_width=30),
            MofNCompleteColumn(),
            TextColumn("•"),
            TimeElapsedColumn(),
        )
        self._live = Live(Group(self.books, self.chapters), console=self.console, refresh_per_second=10)
        self._books_task: TaskID | None = None
        self._tasks: dict[Path, TaskID] = {}

    def batch_started(self, total_books: int) -> None:
        self._books_task = self.books.add_task("Updating books", total=total_books)
        self._live.start()

    def book_started(self, path: Path, total: int) -> None:
        if total:
            self._tasks[path] = self.chapters.add_task(path.stem[:40], total=total)

    def chapter_fetched(self, path: Path, descriptor: ChapterDescriptor) -> None:
        task = self._tasks.get(path)
        if task is not None:
            self.chapters.advance(task)

    def book_finished(self, result: BookJobResult) -> None:
        task = self._tasks.pop(result.book_path, None)
        if task is not None:
            self.chapters.remove_task(task)
        if self._books_task is not None:
            self.books.advance(self._books_task)

    def batch_finished(self) -> None:
        self._live.stop()
