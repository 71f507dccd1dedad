"""Exception taxonomy shared by every stage of a book update."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ChapterDescriptor


class AutebookError(Exception):
    """Base class; the pipeline turns any of these into a failed book."""

    stage = "unknown"


# ── Transport ────────────────────────────────────────────────────────────────


class FetchError(AutebookError):
    """Any non-recoverable HTTP error, raised once retries are exhausted."""

    stage = "fetch"


class NotFound(FetchError):
    """HTTP 404."""


# ── Inventory ────────────────────────────────────────────────────────────────


class SourceError(AutebookError):
    stage = "inventory"


class SourceUnavailable(SourceError):
    """The remote chapter index could not be retrieved."""


class SourceFormatChanged(SourceError):
    """The remote chapter index could not be parsed into descriptors."""


class UnsupportedSource(SourceError):
    """No source profile recognises the book's URL."""

    stage = "source"


# ── Archive ──────────────────────────────────────────────────────────────────


class ArchiveError(AutebookError):
    stage = "inspect"


class NotAnArchive(ArchiveError):
    """The file is not an EPUB container at all."""


class CorruptArchive(ArchiveError):
    """The zip is readable but its container, manifest or spine is invalid."""


# ── Content ──────────────────────────────────────────────────────────────────


class ChapterError(AutebookError):
    stage = "fetch"

    def __init__(self, descriptor: ChapterDescriptor, message: str):
        super().__init__(f"chapter {descriptor.position} '{descriptor.title}': {message}")
        self.descriptor = descriptor


class ChapterFetchFailed(ChapterError):
    """The chapter page could not be downloaded."""


class ChapterParseFailed(ChapterError):
    """The chapter page was downloaded but no reading content was found."""


class ImageDecodeFailed(AutebookError):
    """An inline image could not be downloaded or decoded."""

    stage = "images"

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} (URL: {url})")
        self.url = url


# ── Assembly ─────────────────────────────────────────────────────────────────


class AssemblyFailed(AutebookError):
    """Writing the new container failed; the original file is untouched."""

    stage = "assemble"
