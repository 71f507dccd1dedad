"""Shared fixtures: a fake RoyalRoad served through httpx.MockTransport."""

from __future__ import annotations

import io
import json
import os
import sys
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from autebook.config import Settings
from autebook.models import BookMetadata, ChapterContent, ChapterDescriptor

BASE = "https://www.royalroad.com"
EPOCH = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def fast_settings(**overrides) -> Settings:
    """Settings that never make a test wait."""
    values = dict(
        workers=2,
        max_concurrent=4,
        requests_per_second=10_000,
        burst=100,
        max_retries=2,
        backoff_base=0.0,
        cache_dir=None,
        stash_dir=None,
    )
    values.update(overrides)
    return Settings(**values)


def png_bytes(width: int = 800, height: int = 400, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, "PNG")
    return buf.getvalue()


def descriptor(n: int, title: str | None = None, book_id: int = 123) -> ChapterDescriptor:
    return ChapterDescriptor(
        stable_id=str(1000 + n),
        title=title or f"Chapter {n}",
        source_url=f"{BASE}/fiction/{book_id}/test-book/chapter/{1000 + n}/chapter-{n}",
        position=n,
        published_at=EPOCH + timedelta(days=n),
    )


def content(n: int, title: str | None = None, body: str | None = None) -> ChapterContent:
    d = descriptor(n, title)
    return ChapterContent(d, f'<div class="chapter-content"><p>{body or f"Text of chapter {n}."}</p></div>')


def members(path: Path) -> list[str]:
    with zipfile.ZipFile(path) as zf:
        return zf.namelist()


def read_member(path: Path, name: str) -> bytes:
    with zipfile.ZipFile(path) as zf:
        return zf.read(name)


class FakeRoyalRoad:
    """A single fiction on a fake RoyalRoad.

    Chapters can be added, renamed or made to fail between runs; every
    request is recorded in ``self.requests``.
    """

    def __init__(self, book_id: int = 123, title: str = "Test Book", author: str = "Jane Author"):
        self.book_id = book_id
        self.title = title
        self.author = author
        self.chapters: list[dict] = []
        self.bodies: dict[str, str] = {}
        self.images: dict[str, bytes] = {}
        self.failing: set[str] = set()
        self.status: dict[str, int] = {}
        self.redirects: dict[str, str] = {}
        self.cover_url = f"https://www.royalroadcdn.com/public/covers/{book_id}.png"
        self.images[self.cover_url] = png_bytes(300, 450, (20, 20, 160))
        self.requests: list[str] = []

    @property
    def book_url(self) -> str:
        return f"{BASE}/fiction/{self.book_id}/test-book"

    def add_chapters(self, count: int) -> None:
        for _ in range(count):
            n = len(self.chapters) + 1
            d = descriptor(n, book_id=self.book_id)
            self.chapters.append(
                {
                    "id": int(d.stable_id),
                    "order": n - 1,
                    "date": d.published_at.isoformat().replace("+00:00", "Z"),
                    "title": d.title,
                    "url": d.source_url[len(BASE):],
                }
            )
            self.bodies[d.source_url] = f"<p>Text of chapter {n}.</p>"

    def chapter_url(self, n: int) -> str:
        return BASE + self.chapters[n - 1]["url"]

    def rename(self, n: int, title: str, body: str | None = None) -> None:
        self.chapters[n - 1]["title"] = title
        if body is not None:
            self.bodies[self.chapter_url(n)] = body

    def index_html(self) -> str:
        return (
            "<html><head><title>Test Book | Royal Road</title></head><body>"
            f"<div class='fic-header'><h1>{self.title}</h1>"
            f"<h4>by <a href='/profile/1'>{self.author}</a></h4></div>"
            "<div class='description'><div class='hidden-content'><p>A story about tests.</p></div></div>"
            "<script>\n"
            f'window.fictionCover = "{self.cover_url}";\n'
            f"window.chapters = {json.dumps(self.chapters)};\n"
            "</script></body></html>"
        )

    def chapter_html(self, url: str) -> str:
        return (
            "<html><body><div class='nav-buttons'><a href='#'>Next</a></div>"
            "<div class='portlet'><hr/></div>"
            f"<div class='chapter-inner chapter-content'>{self.bodies[url]}</div>"
            "<script>track()</script></body></html>"
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url in self.redirects:
            return httpx.Response(302, headers={"Location": self.redirects[url]})
        if url in self.status:
            return httpx.Response(self.status[url])
        if url == self.book_url:
            return httpx.Response(200, text=self.index_html())
        if url in self.failing:
            return httpx.Response(500)
        if url in self.bodies:
            return httpx.Response(200, text=self.chapter_html(url))
        if url in self.images:
            return httpx.Response(200, content=self.images[url])
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ── Archives ─────────────────────────────────────────────────────────────────


def book_metadata(fake: FakeRoyalRoad | None = None) -> BookMetadata:
    url = fake.book_url if fake else f"{BASE}/fiction/123/test-book"
    return BookMetadata(
        title=fake.title if fake else "Test Book",
        source_url=url,
        author="Jane Author",
        description="<p>A story about tests.</p>",
        identifier="royalroad-123",
    )


def make_book(path: Path, count: int, fake: FakeRoyalRoad | None = None) -> Path:
    """Write an archive holding chapters 1..count as the fake site lists them."""
    from autebook.assembler import assemble_archive
    from autebook.inspector import empty_state

    contents = [content(n) for n in range(1, count + 1)]
    return assemble_archive(path, empty_state(path), contents, metadata=book_metadata(fake))


FOREIGN_OPF = """<?xml version="1.0" encoding="utf-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="2.0" unique-identifier="fanficfare-uid">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
    <dc:identifier id="fanficfare-uid">{url}</dc:identifier>
    <dc:title>Foreign Book</dc:title>
    <dc:creator opf:role="aut">Some Author</dc:creator>
    <dc:language>en</dc:language>
    <dc:subject>Fantasy</dc:subject>
    <meta name="generator" content="FanFicFare"/>
  </metadata>
  <manifest>
    <item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>
    <item id="style" href="OEBPS/stylesheet.css" media-type="text/css"/>
    <item id="title_page" href="OEBPS/title_page.xhtml" media-type="application/xhtml+xml"/>
{items}
  </manifest>
  <spine toc="ncx">
    <itemref idref="title_page"/>
{itemrefs}
  </spine>
</package>
"""


def make_foreign_book(path: Path, count: int, url: str = f"{BASE}/fiction/123/test-book") -> Path:
    """An archive laid out the way FanFicFare writes RoyalRoad books."""
    items, itemrefs, points = [], [], []
    files: dict[str, str] = {}
    for n in range(1, count + 1):
        d = descriptor(n)
        name = f"OEBPS/file{n:04d}.xhtml"
        items.append(f'    <item id="file{n:04d}" href="{name}" media-type="application/xhtml+xml"/>')
        itemrefs.append(f'    <itemref idref="file{n:04d}"/>')
        points.append(
            f'<navPoint id="file{n:04d}" playOrder="{n}"><navLabel><text>{d.title}</text></navLabel>'
            f'<content src="{name}"/></navPoint>'
        )
        files[name] = (
            '<?xml version="1.0" encoding="utf-8"?>\n'
            '<html xmlns="http://www.w3.org/1999/xhtml"><head>'
            f'<title>{d.title}</title><meta name="chapterurl" content="{d.source_url}"/>'
            f"</head><body><h3>{d.title}</h3><p>Text of chapter {n}.</p></body></html>"
        )
    files["OEBPS/title_page.xhtml"] = (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<html xmlns="http://www.w3.org/1999/xhtml"><head><title>Foreign Book</title></head>'
        "<body><h3>Foreign Book</h3></body></html>"
    )
    files["OEBPS/stylesheet.css"] = "body { margin: 1em; }\n"
    files["toc.ncx"] = (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">'
        f'<head><meta name="dtb:uid" content="{url}"/></head>'
        "<docTitle><text>Foreign Book</text></docTitle><navMap>"
        + "".join(points)
        + "</navMap></ncx>"
    )
    files["content.opf"] = FOREIGN_OPF.format(url=url, items="\n".join(items), itemrefs="\n".join(itemrefs))
    container = (
        '<?xml version="1.0"?>\n'
        '<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">'
        '<rootfiles><rootfile full-path="content.opf" media-type="application/oebps-package+xml"/>'
        "</rootfiles></container>"
    )
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        zf.writestr("META-INF/container.xml", container, compress_type=zipfile.ZIP_DEFLATED)
        for name, data in files.items():
            zf.writestr(name, data, compress_type=zipfile.ZIP_DEFLATED)
    return path
