"""XHTML, NCX and CSS documents written into archives."""

from __future__ import annotations

from collections.abc import Sequence
from html import escape

from . import config
from .models import BookMetadata, ChapterContent

BOOK_CSS = """\
@charset "UTF-8";
body {
    line-height: 1.6;
    margin: 1em;
    padding: 0;
}
h1 {
    font-size: 1.5em;
    text-align: center;
    margin: 1.5em 0 1em;
}
p {
    margin: 0.5em 0;
    text-align: justify;
}
img {
    max-width: 100%;
}
table {
    border-collapse: collapse;
    margin: 1em auto;
}
td, th {
    border: 1px solid #888;
    padding: 0.25em 0.5em;
}
.authors-note-start, .authors-note-end {
    border: 1px solid #888;
    border-radius: 0.3em;
    margin: 1em 0;
    padding: 0 1em;
    font-size: 0.9em;
}
.title-page {
    text-align: center;
}
.title-page .author {
    font-style: italic;
}
.title-page img {
    max-height: 60%;
}
"""

_XML_DECL = '<?xml version="1.0" encoding="utf-8"?>\n'


def _html_open(lang: str) -> str:
    lang = escape(lang or "en")
    return (
        f"{_XML_DECL}<!DOCTYPE html>\n"
        '<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" '
        f'lang="{lang}" xml:lang="{lang}">\n'
    )


def _stylesheet_link(href: str | None) -> str:
    if not href:
        return ""
    return f'  <link rel="stylesheet" type="text/css" href="{escape(href)}"/>\n'


def chapter_document(content: ChapterContent, lang: str = "en", stylesheet: str | None = None) -> bytes:
    """Render a chapter.

    The head carries the chapter's id, URL and publication date so the
    archive can be read back without asking the source.
    """
    d = content.descriptor
    title = escape(d.title)
    head = [
        f"  <title>{title}</title>\n",
        f'  <meta name="generator" content="{config.GENERATOR}"/>\n',
        f'  <meta name="chapterid" content="{escape(d.stable_id)}"/>\n',
        f'  <meta name="chapterurl" content="{escape(d.source_url)}"/>\n',
    ]
    if d.published_at is not None:
        head.append(f'  <meta name="published" content="{d.published_at.isoformat()}"/>\n')
    head.append(_stylesheet_link(stylesheet))
    return (
        _html_open(lang)
        + "<head>\n"
        + "".join(head)
        + "</head>\n<body>\n"
        + f'  <h1 class="chapter-title">{title}</h1>\n'
        + content.html_fragment
        + "\n</body>\n</html>\n"
    ).encode("utf-8")


def title_page(meta: BookMetadata, cover_href: str | None = None, stylesheet: str | None = None) -> bytes:
    parts = [f"  <h1>{escape(meta.title)}</h1>\n"]
    if meta.author:
        parts.append(f'  <p class="author">{escape(meta.author)}</p>\n')
    if cover_href:
        parts.append(f'  <p><img src="{escape(cover_href)}" alt="Cover"/></p>\n')
    if meta.source_url:
        url = escape(meta.source_url)
        parts.append(f'  <p><a href="{url}">{url}</a></p>\n')
    if meta.description:
        parts.append(f'  <div class="description">{meta.description}</div>\n')
    return (
        _html_open(meta.language)
        + "<head>\n"
        + f"  <title>{escape(meta.title)}</title>\n"
        + f'  <meta name="generator" content="{config.GENERATOR}"/>\n'
        + _stylesheet_link(stylesheet)
        + '</head>\n<body>\n<div class="title-page">\n'
        + "".join(parts)
        + "</div>\n</body>\n</html>\n"
    ).encode("utf-8")


def nav_document(title: str, toc: Sequence[tuple[str, str]], lang: str = "en") -> bytes:
    """EPUB 3 navigation document; *toc* holds ``(href, label)`` pairs."""
    items = "".join(f'      <li><a href="{escape(href)}">{escape(label)}</a></li>\n' for href, label in toc)
    return (
        _html_open(lang)
        + f"<head>\n  <title>{escape(title)}</title>\n</head>\n<body>\n"
        + '  <nav epub:type="toc" id="toc">\n'
        + "    <h1>Table of Contents</h1>\n"
        + "    <ol>\n"
        + items
        + "    </ol>\n  </nav>\n</body>\n</html>\n"
    ).encode("utf-8")


def ncx_document(uid: str, title: str, toc: Sequence[tuple[str, str]]) -> bytes:
    """EPUB 2 table of contents, kept for older readers."""
    points = []
    for n, (href, label) in enumerate(toc, 1):
        points.append(
            f'    <navPoint id="navpoint-{n}" playOrder="{n}">\n'
            f"      <navLabel><text>{escape(label)}</text></navLabel>\n"
            f'      <content src="{escape(href)}"/>\n'
            "    </navPoint>\n"
        )
    return (
        _XML_DECL
        + '<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">\n'
        + "  <head>\n"
        + f'    <meta name="dtb:uid" content="{escape(uid)}"/>\n'
        + '    <meta name="dtb:depth" content="1"/>\n'
        + '    <meta name="dtb:totalPageCount" content="0"/>\n'
        + '    <meta name="dtb:maxPageNumber" content="0"/>\n'
        + "  </head>\n"
        + f"  <docTitle><text>{escape(title)}</text></docTitle>\n"
        + "  <navMap>\n"
        + "".join(points)
        + "  </navMap>\n</ncx>\n"
    ).encode("utf-8")
