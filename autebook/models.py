"""Data types passed between the stages of a book update."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Union


@dataclass(frozen=True)
class ChapterDescriptor:
    """One chapter of a book, identified by a source-stable id.

    ``position`` is 1-based and defines the reading order.
    """

    stable_id: str
    title: str
    source_url: str
    position: int
    published_at: datetime | None = None


@dataclass(frozen=True)
class ImageReference:
    original_url: str
    asset_id: str
    encoded_bytes: bytes
    media_type: str
    file_name: str


@dataclass
class ChapterContent:
    descriptor: ChapterDescriptor
    html_fragment: str
    images: list[ImageReference] = field(default_factory=list)


@dataclass(frozen=True)
class BookMetadata:
    """Book-level metadata as published by the remote source."""

    title: str
    source_url: str
    author: str = ""
    description: str = ""
    identifier: str = ""
    language: str = "en"
    cover_url: str = ""


@dataclass(frozen=True)
class BookInventory:
    metadata: BookMetadata
    chapters: tuple[ChapterDescriptor, ...]


@dataclass(frozen=True)
class ArchiveEntry:
    """A manifest item of an existing archive."""

    item_id: str
    href: str
    member: str
    media_type: str
    properties: frozenset[str] = frozenset()

    @property
    def is_document(self) -> bool:
        return self.media_type in ("application/xhtml+xml", "text/html")

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")


@dataclass(frozen=True)
class ArchiveMetadata:
    title: str = ""
    author: str = ""
    identifiers: tuple[str, ...] = ()
    source_url: str = ""
    language: str = ""


@dataclass(frozen=True)
class ArchiveState:
    """Everything the planner and assembler need from an existing EPUB.

    ``metadata_xml`` is the OPF ``<metadata>`` element exactly as found, so
    hand-edited or unknown fields survive a rewrite.
    """

    path: Path
    opf_path: str
    metadata: ArchiveMetadata
    metadata_xml: bytes
    entries: tuple[ArchiveEntry, ...]
    spine: tuple[str, ...]
    chapters: tuple[ChapterDescriptor, ...]
    chapter_members: tuple[str, ...]
    asset_ids: frozenset[str]
    generator: str = ""
    nav_member: str = ""
    ncx_member: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.entries


@dataclass(frozen=True)
class UpdatePlan:
    missing: tuple[ChapterDescriptor, ...]
    rebuild_required: bool = False
    reason: str = ""

    @property
    def is_noop(self) -> bool:
        return not self.missing and not self.rebuild_required


# ── Job outcomes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Success:
    chapters_added: int
    rebuilt: bool = False


@dataclass(frozen=True)
class NoChange:
    pass


@dataclass(frozen=True)
class Failed:
    reason: str
    stage: str = "unknown"


Outcome = Union[Success, NoChange, Failed]


@dataclass(frozen=True)
class BookJobResult:
    book_path: Path
    outcome: Outcome
    title: str = ""

    @property
    def ok(self) -> bool:
        return not isinstance(self.outcome, Failed)
