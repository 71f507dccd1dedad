"""Read an existing EPUB into an :class:`ArchiveState`.

The archive is only ever opened for reading. Documents written by autebook
carry their chapter id, source URL and publication date as ``<meta>`` entries
in their head; documents written by other tools (FanFicFare mostly) fall back
to what can be recovered from the chapter URL, the table of contents and the
document itself.
"""

from __future__ import annotations

import logging
import zipfile
import zlib
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from lxml import etree

from . import config
from .epub import (
    CONTAINER_PATH,
    DC_NS,
    MIMETYPE,
    NCX_MEDIA_TYPE,
    child_by_local_name,
    children_by_local_name,
    local_name,
    node_text,
    opf_path_from_container,
    parse_xml,
    resolve_href,
)
from .errors import CorruptArchive, NotAnArchive
from .models import ArchiveEntry, ArchiveMetadata, ArchiveState, ChapterDescriptor

log = logging.getLogger("autebook.inspector")

# Spine documents that are never chapters.
FRONT_MATTER_STEMS = {"cover", "title", "title_page", "titlepage", "nav", "toc", "log_page"}


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _id_from_chapter_url(url: str) -> str:
    # https://www.royalroad.com/fiction/<book>/<slug>/chapter/<id>/<slug>
    segments = urlsplit(url).path.split("/")[1:]
    if len(segments) > 4 and segments[4]:
        return segments[4]
    return ""


# ── OPF ──────────────────────────────────────────────────────────────────────


def _read_metadata(metadata: etree._Element) -> tuple[ArchiveMetadata, str]:
    def dc(name: str) -> list[str]:
        return [node_text(n) for n in metadata.iter(f"{{{DC_NS}}}{name}") if node_text(n)]

    identifiers = tuple(dc("identifier"))
    source = next(iter(dc("source")), "")
    if not source:
        source = next((i for i in identifiers if i.startswith(("http://", "https://"))), "")

    generator = ""
    for node in children_by_local_name(metadata, "meta"):
        if node.get("name") == "generator":
            generator = node.get("content") or ""
            break

    meta = ArchiveMetadata(
        title=next(iter(dc("title")), ""),
        author=next(iter(dc("creator")), ""),
        identifiers=identifiers,
        source_url=source,
        language=next(iter(dc("language")), ""),
    )
    return meta, generator


def _read_manifest(opf_path: str, manifest: etree._Element) -> tuple[ArchiveEntry, ...]:
    entries = []
    seen: set[str] = set()
    for node in children_by_local_name(manifest, "item"):
        item_id = (node.get("id") or "").strip()
        href = (node.get("href") or "").strip()
        if not item_id or not href:
            raise CorruptArchive(f"Manifest item without id or href in {opf_path}")
        if item_id in seen:
            raise CorruptArchive(f"Duplicate manifest id {item_id!r} in {opf_path}")
        seen.add(item_id)
        entries.append(
            ArchiveEntry(
                item_id=item_id,
                href=href,
                member=resolve_href(opf_path, href),
                media_type=(node.get("media-type") or "").strip().lower(),
                properties=frozenset((node.get("properties") or "").split()),
            )
        )
    return tuple(entries)


# ── Table of contents ────────────────────────────────────────────────────────


def _nav_titles(zf: zipfile.ZipFile, nav_member: str) -> dict[str, str]:
    titles: dict[str, str] = {}
    root = parse_xml(zf.read(nav_member))
    for link in root.xpath(".//*[local-name()='nav']//*[local-name()='a'][@href]"):
        target = resolve_href(nav_member, link.get("href"))
        title = node_text(link)
        if target and title:
            titles.setdefault(target, title)
    return titles


def _ncx_titles(zf: zipfile.ZipFile, ncx_member: str) -> dict[str, str]:
    titles: dict[str, str] = {}
    root = parse_xml(zf.read(ncx_member))
    for point in root.xpath(".//*[local-name()='navPoint']"):
        label = point.xpath("./*[local-name()='navLabel']/*[local-name()='text']")
        content = point.xpath("./*[local-name()='content'][@src]")
        if not label or not content:
            continue
        target = resolve_href(ncx_member, content[0].get("src"))
        title = node_text(label[0])
        if target and title:
            titles.setdefault(target, title)
    return titles


def _toc_titles(zf: zipfile.ZipFile, nav_member: str, ncx_member: str) -> dict[str, str]:
    titles: dict[str, str] = {}
    for member, reader in ((nav_member, _nav_titles), (ncx_member, _ncx_titles)):
        if not member:
            continue
        try:
            found = reader(zf, member)
        except (KeyError, etree.XMLSyntaxError) as exc:
            log.warning("%s: unreadable table of contents %s (%s)", zf.filename, member, exc)
            continue
        for key, value in found.items():
            titles.setdefault(key, value)
    return titles


# ── Chapters ─────────────────────────────────────────────────────────────────


def _head_meta(soup: BeautifulSoup, name: str) -> str:
    node = soup.find("meta", attrs={"name": name})
    if node is None:
        return ""
    return str(node.get("content") or "")


def _is_front_matter(entry: ArchiveEntry) -> bool:
    if "nav" in entry.properties:
        return True
    return PurePosixPath(entry.member).stem.lower() in FRONT_MATTER_STEMS


def read_chapter(raw: bytes, entry: ArchiveEntry, position: int, toc_title: str = "") -> ChapterDescriptor:
    """Describe one spine document as a chapter."""
    soup = BeautifulSoup(raw, "lxml")
    url = _head_meta(soup, "chapterurl")
    own = _head_meta(soup, "generator") == config.GENERATOR

    stable_id = _head_meta(soup, "chapterid") if own else ""
    stable_id = stable_id or _id_from_chapter_url(url) or PurePosixPath(entry.member).stem

    head_title = soup.title.get_text() if soup.title else ""
    if own and head_title:
        title = head_title
    else:
        heading = soup.find(["h1", "h2", "h3"])
        title = (
            toc_title
            or head_title.strip()
            or (heading.get_text(" ", strip=True) if heading else "")
            or PurePosixPath(entry.member).stem
        )

    return ChapterDescriptor(
        stable_id=stable_id,
        title=title,
        source_url=url,
        position=position,
        published_at=_parse_datetime(_head_meta(soup, "published")),
    )


# ── Entry point ──────────────────────────────────────────────────────────────


def _open(path: Path) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(path)
    except zipfile.BadZipFile as exc:
        raise NotAnArchive(f"{path} is not a zip archive") from exc
    except OSError as exc:
        raise NotAnArchive(f"{path} cannot be opened: {exc}") from exc


def inspect_archive(path: Path) -> ArchiveState:
    """Read *path* and return its :class:`ArchiveState`.

    Raises
    ------
    NotAnArchive
        If the file is not a zip or lacks the EPUB ``mimetype`` member.
    CorruptArchive
        If the container, package document, manifest or spine is broken.
    """
    path = Path(path)
    with _open(path) as zf:
        names = set(zf.namelist())
        if "mimetype" not in names or zf.read("mimetype").strip() != MIMETYPE:
            raise NotAnArchive(f"{path} is not an EPUB (bad or missing mimetype)")

        try:
            if CONTAINER_PATH not in names:
                raise CorruptArchive(f"{path}: missing {CONTAINER_PATH}")
            opf_path = opf_path_from_container(zf.read(CONTAINER_PATH))
            if not opf_path or opf_path not in names:
                raise CorruptArchive(f"{path}: package document {opf_path or '?'} not found")
            root = parse_xml(zf.read(opf_path))
        except etree.XMLSyntaxError as exc:
            raise CorruptArchive(f"{path}: {exc}") from exc
        except (zipfile.BadZipFile, zlib.error) as exc:
            raise CorruptArchive(f"{path}: {exc}") from exc

        if local_name(root.tag) != "package":
            raise CorruptArchive(f"{path}: {opf_path} is not a package document")
        metadata_node = child_by_local_name(root, "metadata")
        manifest_node = child_by_local_name(root, "manifest")
        spine_node = child_by_local_name(root, "spine")
        if metadata_node is None or manifest_node is None or spine_node is None:
            raise CorruptArchive(f"{path}: package document lacks metadata, manifest or spine")

        metadata, generator = _read_metadata(metadata_node)
        entries = _read_manifest(opf_path, manifest_node)
        by_id = {e.item_id: e for e in entries}

        spine: list[str] = []
        for itemref in children_by_local_name(spine_node, "itemref"):
            idref = (itemref.get("idref") or "").strip()
            if idref not in by_id:
                raise CorruptArchive(f"{path}: spine references unknown item {idref!r}")
            spine.append(idref)

        nav_member = next((e.member for e in entries if "nav" in e.properties), "")
        toc_id = spine_node.get("toc") or ""
        ncx_entry = by_id.get(toc_id) or next((e for e in entries if e.media_type == NCX_MEDIA_TYPE), None)
        ncx_member = ncx_entry.member if ncx_entry else ""
        toc_titles = _toc_titles(zf, nav_member, ncx_member)

        chapters: list[ChapterDescriptor] = []
        members: list[str] = []
        for idref in spine:
            entry = by_id[idref]
            if not entry.is_document or _is_front_matter(entry):
                continue
            if entry.member not in names:
                raise CorruptArchive(f"{path}: spine document {entry.member} missing from archive")
            try:
                raw = zf.read(entry.member)
            except (zipfile.BadZipFile, zlib.error) as exc:
                raise CorruptArchive(f"{path}: {entry.member}: {exc}") from exc
            chapter = read_chapter(raw, entry, len(chapters) + 1, toc_titles.get(entry.member, ""))
            chapters.append(chapter)
            members.append(entry.member)

        if not generator and chapters:
            raw = zf.read(members[0])
            generator = _head_meta(BeautifulSoup(raw, "lxml"), "generator")

    seen: set[str] = set()
    for chapter in chapters:
        if chapter.stable_id in seen:
            raise CorruptArchive(f"{path}: chapter id {chapter.stable_id!r} appears twice")
        seen.add(chapter.stable_id)

    asset_ids = {e.item_id for e in entries}
    asset_ids.update(PurePosixPath(e.member).stem for e in entries if e.is_image)

    log.debug("%s: %d chapters, %d manifest items", path.name, len(chapters), len(entries))
    return ArchiveState(
        path=path,
        opf_path=opf_path,
        metadata=metadata,
        metadata_xml=etree.tostring(metadata_node, encoding="utf-8"),
        entries=entries,
        spine=tuple(spine),
        chapters=tuple(chapters),
        chapter_members=tuple(members),
        asset_ids=frozenset(asset_ids),
        generator=generator,
        nav_member=nav_member,
        ncx_member=ncx_member,
    )


def empty_state(path: Path) -> ArchiveState:
    """State of a book that does not exist yet."""
    return ArchiveState(
        path=Path(path),
        opf_path=f"{config.OEBPS_DIR}/{config.OPF_NAME}",
        metadata=ArchiveMetadata(),
        metadata_xml=b"",
        entries=(),
        spine=(),
        chapters=(),
        chapter_members=(),
        asset_ids=frozenset(),
    )
