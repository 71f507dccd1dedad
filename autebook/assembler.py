"""Write an EPUB that merges an existing archive with new chapters.

Members of the old archive are copied as stored (same bytes, same
compression, same timestamps) except for the package document and the
navigation files, which are regenerated. The new archive is written next
to the target and moved over it only once complete.

Member order of the output::

    mimetype                      (stored, uncompressed)
    META-INF/container.xml        (+ any other META-INF files)
    <package document>
    spine documents, in reading order
    everything else in manifest order
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import zipfile
import zlib
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from bs4 import BeautifulSoup
from lxml import etree

from . import config, render
from .content import IMAGE_HREF_PREFIX
from .epub import (
    CONTAINER_PATH,
    CSS_MEDIA_TYPE,
    DC_NS,
    MIMETYPE,
    NCX_MEDIA_TYPE,
    OPF_NS,
    XHTML_MEDIA_TYPE,
    children_by_local_name,
    child_by_local_name,
    container_xml,
    copy_zip_member,
    parse_xml,
    relative_href,
    resolve_href,
)
from .errors import AssemblyFailed
from .models import ArchiveEntry, ArchiveState, BookMetadata, ChapterContent, ImageReference

log = logging.getLogger("autebook.assembler")

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_-]+")
_TITLE_PAGE_STEMS = {"title", "title_page", "titlepage"}


@dataclass
class _NewMember:
    member: str
    item_id: str
    media_type: str
    data: bytes
    properties: str = ""


@dataclass
class _Layout:
    """Where things go inside the output archive."""

    opf_path: str
    text_dir: str
    images_dir: str
    stylesheet: str = ""
    members: set[str] = field(default_factory=set)
    ids: set[str] = field(default_factory=set)

    def claim(self, member: str, item_id: str) -> tuple[str, str]:
        path = PurePosixPath(member)
        n = 1
        while member in self.members:
            n += 1
            member = str(path.with_name(f"{path.stem}-{n}{path.suffix}"))
        base_id, n = item_id, 1
        while item_id in self.ids:
            n += 1
            item_id = f"{base_id}-{n}"
        self.members.add(member)
        self.ids.add(item_id)
        return member, item_id


def _opf_dir(opf_path: str) -> str:
    parent = PurePosixPath(opf_path).parent.as_posix()
    return "" if parent == "." else parent


def _join(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def _qname(node: etree._Element, name: str) -> str:
    tag = node.tag
    if isinstance(tag, str) and tag.startswith("{"):
        return tag.split("}", 1)[0] + "}" + name
    return name


# ── Package document ─────────────────────────────────────────────────────────


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _touch_modified(root: etree._Element) -> None:
    """Bump an existing ``dcterms:modified``; nothing else in ``<metadata>`` changes."""
    metadata = child_by_local_name(root, "metadata")
    if metadata is None:
        return
    for node in children_by_local_name(metadata, "meta"):
        if (node.get("property") or "").strip() == "dcterms:modified":
            node.text = _timestamp()


def _new_package(meta: BookMetadata, cover_id: str | None, published: datetime | None) -> etree._Element:
    root = etree.Element(
        f"{{{OPF_NS}}}package",
        nsmap={None: OPF_NS},
        attrib={
            "version": "3.0",
            "unique-identifier": "book-id",
            "{http://www.w3.org/XML/1998/namespace}lang": meta.language or "en",
        },
    )
    metadata = etree.SubElement(root, f"{{{OPF_NS}}}metadata", nsmap={"dc": DC_NS})

    def dc(name: str, text: str, **attrib: str) -> None:
        node = etree.SubElement(metadata, f"{{{DC_NS}}}{name}", attrib=attrib)
        node.text = text

    dc("identifier", meta.identifier or meta.source_url, id="book-id")
    dc("title", meta.title)
    if meta.author:
        dc("creator", meta.author)
    dc("language", meta.language or "en")
    if meta.description:
        dc("description", BeautifulSoup(meta.description, "lxml").get_text(" ", strip=True))
    if meta.source_url:
        dc("source", meta.source_url)
    if published is not None:
        dc("date", published.isoformat())
    modified = etree.SubElement(metadata, f"{{{OPF_NS}}}meta", property="dcterms:modified")
    modified.text = _timestamp()
    etree.SubElement(metadata, f"{{{OPF_NS}}}meta", name="generator", content=config.GENERATOR)
    if cover_id:
        etree.SubElement(metadata, f"{{{OPF_NS}}}meta", name="cover", content=cover_id)
    etree.SubElement(root, f"{{{OPF_NS}}}manifest")
    etree.SubElement(root, f"{{{OPF_NS}}}spine", toc="ncx")
    return root


def _cover_id(state: ArchiveState) -> str:
    for entry in state.entries:
        if "cover-image" in entry.properties:
            return entry.item_id
    if state.metadata_xml:
        metadata = parse_xml(state.metadata_xml)
        for node in children_by_local_name(metadata, "meta"):
            if node.get("name") == "cover" and node.get("content"):
                return node.get("content")
    return ""


def _unique_identifier(root: etree._Element) -> str:
    metadata = child_by_local_name(root, "metadata")
    if metadata is None:
        return ""
    wanted = root.get("unique-identifier")
    identifiers = list(metadata.iter(f"{{{DC_NS}}}identifier"))
    for node in identifiers:
        if wanted and node.get("id") == wanted:
            return (node.text or "").strip()
    return (identifiers[0].text or "").strip() if identifiers else ""


def _book_title(root: etree._Element) -> str:
    metadata = child_by_local_name(root, "metadata")
    node = metadata.find(f"{{{DC_NS}}}title") if metadata is not None else None
    return (node.text or "").strip() if node is not None else ""


def _set_children(parent: etree._Element, children: Sequence[etree._Element], indent: str) -> None:
    for child in list(parent):
        parent.remove(child)
    parent.text = "\n" + indent if children else None
    for n, child in enumerate(children):
        child.tail = "\n" + (indent if n < len(children) - 1 else indent[:-2])
        parent.append(child)


# ── Image references in kept documents ───────────────────────────────────────


def _referenced_members(zf: zipfile.ZipFile, entries: Sequence[ArchiveEntry]) -> set[str]:
    """Members referenced from the given documents and stylesheets."""
    found: set[str] = set()
    for entry in entries:
        raw = zf.read(entry.member)
        if entry.media_type == CSS_MEDIA_TYPE:
            for ref in re.findall(rb"url\(\s*['\"]?([^'\")]+)", raw):
                found.add(resolve_href(entry.member, ref.decode("utf-8", "replace")))
            continue
        soup = BeautifulSoup(raw, "lxml")
        for tag in soup.find_all(["img", "image", "link", "a"]):
            for attr in ("src", "href", "xlink:href"):
                value = tag.get(attr)
                if value:
                    found.add(resolve_href(entry.member, str(value)))
    return found


# ── Entry point ──────────────────────────────────────────────────────────────


def assemble_archive(
    target: Path,
    state: ArchiveState,
    contents: Sequence[ChapterContent],
    rebuild: bool = False,
    metadata: BookMetadata | None = None,
    cover: ImageReference | None = None,
) -> Path:
    """Write *state* plus *contents* to *target*.

    *rebuild* drops the chapters of *state* and keeps the rest (stylesheets,
    fonts, title page, cover, images still referenced). An empty *state*
    creates a new book from *metadata*.

    Raises
    ------
    AssemblyFailed
        On any error; *target* is left as it was.
    """
    target = Path(target)
    if state.is_empty and metadata is None:
        raise AssemblyFailed("A new book needs its metadata")

    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.stem}.", suffix=".tmp", dir=target.parent)
    except OSError as exc:
        raise AssemblyFailed(f"Cannot write to {target.parent}: {exc}") from exc
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            with zipfile.ZipFile(f, "w", compression=zipfile.ZIP_DEFLATED) as out:
                if state.is_empty:
                    _write_new(out, metadata, contents, cover)
                else:
                    with zipfile.ZipFile(state.path) as src:
                        _write_merged(out, src, state, contents, rebuild)
            f.flush()
            os.fsync(f.fileno())
        if target.exists():
            shutil.copymode(target, tmp)
        else:
            os.chmod(tmp, 0o644)
        os.replace(tmp, target)
    except (
        OSError,
        zipfile.BadZipFile,
        zlib.error,
        NotImplementedError,
        etree.LxmlError,
        KeyError,
        ValueError,
    ) as exc:
        tmp.unlink(missing_ok=True)
        raise AssemblyFailed(f"Could not write {target.name}: {exc}") from exc
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    return target


def _write_mimetype(out: zipfile.ZipFile) -> None:
    info = zipfile.ZipInfo("mimetype", date_time=datetime.now().timetuple()[:6])
    info.compress_type = zipfile.ZIP_STORED
    out.writestr(info, MIMETYPE)


def _write_bytes(out: zipfile.ZipFile, member: str, data: bytes) -> None:
    info = zipfile.ZipInfo(member, date_time=datetime.now().timetuple()[:6])
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    out.writestr(info, data)


def _chapter_members(
    layout: _Layout,
    contents: Sequence[ChapterContent],
    lang: str,
    known_images: dict[str, str] | None = None,
) -> tuple[list[_NewMember], list[_NewMember]]:
    """Chapter documents and the images they use, ready to be written.

    *known_images* maps file names of images already placed (the cover) to
    their member.
    """
    images: dict[str, _NewMember] = {}
    image_members: dict[str, str] = dict(known_images or {})
    chapters: list[_NewMember] = []

    for content in contents:
        for ref in content.images:
            if ref.asset_id in images or ref.file_name in image_members:
                continue
            member, item_id = layout.claim(_join(layout.images_dir, ref.file_name), ref.asset_id)
            images[ref.asset_id] = _NewMember(member, item_id, ref.media_type, ref.encoded_bytes)
            image_members[ref.file_name] = member

    for content in contents:
        d = content.descriptor
        safe = _SAFE_NAME.sub("_", d.stable_id).strip("_") or str(d.position)
        member, item_id = layout.claim(_join(layout.text_dir, f"chapter-{safe}.xhtml"), f"chapter-{safe}")
        fragment = content.html_fragment
        for ref in content.images:
            href = relative_href(member, image_members[ref.file_name])
            if href != IMAGE_HREF_PREFIX + ref.file_name:
                fragment = fragment.replace(f'"{IMAGE_HREF_PREFIX}{ref.file_name}"', f'"{href}"')
        content = ChapterContent(d, fragment, content.images)
        stylesheet = relative_href(member, layout.stylesheet) if layout.stylesheet else None
        data = render.chapter_document(content, lang, stylesheet)
        chapters.append(_NewMember(member, item_id, XHTML_MEDIA_TYPE, data))

    return chapters, list(images.values())


def _write_new(
    out: zipfile.ZipFile,
    meta: BookMetadata,
    contents: Sequence[ChapterContent],
    cover: ImageReference | None,
) -> None:
    oebps = config.OEBPS_DIR
    opf_path = _join(oebps, config.OPF_NAME)
    layout = _Layout(
        opf_path=opf_path,
        text_dir=_join(oebps, config.TEXT_DIR),
        images_dir=_join(oebps, config.IMAGES_DIR),
        stylesheet=_join(oebps, config.STYLES_DIR, config.STYLESHEET_NAME),
        members={opf_path},
        ids={"ncx", "nav", "stylesheet", "title-page"},
    )

    extra: list[_NewMember] = [
        _NewMember(layout.stylesheet, "stylesheet", CSS_MEDIA_TYPE, render.BOOK_CSS.encode("utf-8"))
    ]
    layout.members.add(layout.stylesheet)

    title_member = _join(layout.text_dir, config.TITLE_PAGE_NAME)
    layout.members.add(title_member)
    cover_id = None
    cover_href = None
    known_images: dict[str, str] = {}
    if cover is not None:
        member, cover_id = layout.claim(_join(layout.images_dir, cover.file_name), cover.asset_id)
        known_images[cover.file_name] = member
        extra.append(_NewMember(member, cover_id, cover.media_type, cover.encoded_bytes, "cover-image"))
        cover_href = relative_href(title_member, member)
    title_doc = _NewMember(
        title_member,
        "title-page",
        XHTML_MEDIA_TYPE,
        render.title_page(meta, cover_href, relative_href(title_member, layout.stylesheet)),
    )

    chapters, images = _chapter_members(layout, contents, meta.language, known_images)
    published = next((c.descriptor.published_at for c in contents if c.descriptor.published_at), None)
    root = _new_package(meta, cover_id, published)

    nav_member = _join(oebps, config.NAV_NAME)
    ncx_member = _join(oebps, config.NCX_NAME)
    toc = [(title_member, "Title Page")] + [(c.member, content.descriptor.title) for c, content in zip(chapters, contents)]
    nav = _NewMember(
        nav_member,
        "nav",
        XHTML_MEDIA_TYPE,
        render.nav_document(meta.title, [(relative_href(nav_member, m), t) for m, t in toc], meta.language),
        "nav",
    )
    ncx = _NewMember(
        ncx_member,
        "ncx",
        NCX_MEDIA_TYPE,
        render.ncx_document(meta.identifier or meta.source_url, meta.title, [(relative_href(ncx_member, m), t) for m, t in toc]),
    )

    documents = [title_doc] + chapters
    others = [nav, ncx] + extra + images

    manifest = child_by_local_name(root, "manifest")
    items = []
    for m in documents + others:
        attrib = {"id": m.item_id, "href": relative_href(opf_path, m.member), "media-type": m.media_type}
        if m.properties:
            attrib["properties"] = m.properties
        items.append(etree.Element(f"{{{OPF_NS}}}item", attrib=attrib))
    _set_children(manifest, items, "    ")
    spine = child_by_local_name(root, "spine")
    _set_children(spine, [etree.Element(f"{{{OPF_NS}}}itemref", idref=m.item_id) for m in documents], "    ")

    _write_mimetype(out)
    _write_bytes(out, CONTAINER_PATH, container_xml(opf_path))
    _write_bytes(out, opf_path, etree.tostring(root, xml_declaration=True, encoding="utf-8", pretty_print=True))
    for m in documents + others:
        _write_bytes(out, m.member, m.data)


def _write_merged(
    out: zipfile.ZipFile,
    src: zipfile.ZipFile,
    state: ArchiveState,
    contents: Sequence[ChapterContent],
    rebuild: bool,
) -> None:
    names = {info.filename: info for info in src.infolist()}
    root = parse_xml(src.read(state.opf_path))
    manifest = child_by_local_name(root, "manifest")
    spine = child_by_local_name(root, "spine")
    by_id = {e.item_id: e for e in state.entries}

    dropped: set[str] = set(state.chapter_members) if rebuild else set()
    if rebuild:
        cover = _cover_id(state)
        kept_refs = _referenced_members(
            src,
            [
                e
                for e in state.entries
                if (e.is_document or e.media_type == CSS_MEDIA_TYPE)
                and e.member not in dropped
                and e.member in names
            ],
        )
        for e in state.entries:
            if e.is_image and e.item_id != cover and e.member not in kept_refs:
                dropped.add(e.member)

    for e in state.entries:
        if e.member not in names and e.member not in dropped:
            if e.item_id in state.spine:
                raise AssemblyFailed(f"{state.path.name}: spine document {e.member} is missing")
            log.warning("%s: manifest item %s has no file, dropping it", state.path.name, e.member)
            dropped.add(e.member)

    kept = [e for e in state.entries if e.member not in dropped]
    if state.chapter_members and not rebuild:
        text_dir = PurePosixPath(state.chapter_members[-1]).parent.as_posix()
    else:
        text_dir = _join(_opf_dir(state.opf_path), config.TEXT_DIR)
    css = next((e.member for e in kept if e.media_type == CSS_MEDIA_TYPE), "")
    layout = _Layout(
        opf_path=state.opf_path,
        text_dir="" if text_dir == "." else text_dir,
        images_dir=_join(_opf_dir(state.opf_path), config.IMAGES_DIR),
        stylesheet=css,
        members=set(names) - dropped,
        ids={e.item_id for e in kept} | set(state.asset_ids),
    )
    lang = state.metadata.language or "en"
    new_chapters, new_images = _chapter_members(layout, contents, lang)

    # Manifest: drop what is gone, append what is new.
    for item in children_by_local_name(manifest, "item"):
        entry = by_id.get((item.get("id") or "").strip())
        if entry is not None and entry.member in dropped:
            manifest.remove(item)
    items = children_by_local_name(manifest, "item")
    for m in new_chapters + new_images:
        item = etree.Element(
            _qname(manifest, "item"),
            attrib={"id": m.item_id, "href": relative_href(state.opf_path, m.member), "media-type": m.media_type},
        )
        items.append(item)
    indent = "    "
    _set_children(manifest, items, indent)

    # Spine: front matter, chapters (old then new), back matter.
    chapter_ids = {e.item_id for e in state.entries if e.member in set(state.chapter_members)}
    refs = children_by_local_name(spine, "itemref")
    first = next((n for n, r in enumerate(refs) if r.get("idref") in chapter_ids), None)
    last = max((n for n, r in enumerate(refs) if r.get("idref") in chapter_ids), default=None)
    if first is None:
        head, middle, tail = refs, [], []
    else:
        head = refs[:first]
        middle = [r for r in refs[first : last + 1] if r.get("idref") in chapter_ids]
        tail = [r for r in refs[first:] if r.get("idref") not in chapter_ids]
    if rebuild:
        middle = []
    head = [r for r in head if by_id[r.get("idref")].member not in dropped]
    tail = [r for r in tail if by_id[r.get("idref")].member not in dropped]
    new_refs = [etree.Element(_qname(spine, "itemref"), idref=m.item_id) for m in new_chapters]
    spine_refs = head + middle + new_refs + tail
    _set_children(spine, spine_refs, indent)

    # Navigation.
    toc: list[tuple[str, str]] = []
    for r in head:
        entry = by_id[r.get("idref")]
        if PurePosixPath(entry.member).stem.lower() in _TITLE_PAGE_STEMS:
            toc.append((entry.member, "Title Page"))
    if not rebuild:
        toc.extend(zip(state.chapter_members, (c.title for c in state.chapters)))
    toc.extend((m.member, c.descriptor.title) for m, c in zip(new_chapters, contents))
    title = _book_title(root) or state.metadata.title
    regenerated: dict[str, bytes] = {}
    if state.nav_member and state.nav_member not in dropped:
        regenerated[state.nav_member] = render.nav_document(
            title, [(relative_href(state.nav_member, m), t) for m, t in toc], lang
        )
    if state.ncx_member and state.ncx_member not in dropped:
        regenerated[state.ncx_member] = render.ncx_document(
            _unique_identifier(root), title, [(relative_href(state.ncx_member, m), t) for m, t in toc]
        )

    # Write.
    new_by_member = {m.member: m for m in new_chapters + new_images}
    manifest_members = [e.member for e in kept] + [m.member for m in new_chapters + new_images]
    listed = set(manifest_members)
    all_ids = {e.item_id: e.member for e in kept}
    all_ids.update((m.item_id, m.member) for m in new_chapters)
    spine_members = [all_ids[r.get("idref")] for r in spine_refs]

    _write_mimetype(out)
    meta_inf = sorted(n for n in names if n.startswith("META-INF/") and not n.endswith("/"))
    if CONTAINER_PATH in meta_inf:
        meta_inf.remove(CONTAINER_PATH)
        copy_zip_member(src, out, names[CONTAINER_PATH])
    else:
        _write_bytes(out, CONTAINER_PATH, container_xml(state.opf_path))
    for name in meta_inf:
        copy_zip_member(src, out, names[name])
    _touch_modified(root)
    _write_bytes(out, state.opf_path, etree.tostring(root, xml_declaration=True, encoding="utf-8"))

    written = {"mimetype", CONTAINER_PATH, state.opf_path, *meta_inf}
    for member in spine_members + manifest_members:
        if member in written:
            continue
        written.add(member)
        if member in regenerated:
            _write_bytes(out, member, regenerated[member])
        elif member in new_by_member:
            _write_bytes(out, member, new_by_member[member].data)
        else:
            copy_zip_member(src, out, names[member])

    for name in names:
        if name not in written and name not in listed and not name.endswith("/"):
            log.warning("%s: %s is not in the manifest, leaving it out", state.path.name, name)
