"""Fetch and clean the content of missing chapters.

Chapters of one book are fetched concurrently; the shared fetcher bounds how
many requests are actually in flight. The first chapter that fails cancels
its siblings and fails the whole batch, so a book is either updated with
every missing chapter or not at all.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Sequence
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Comment, Tag

from .client import RateLimitedFetcher
from .errors import ChapterFetchFailed, ChapterParseFailed, FetchError, ImageDecodeFailed
from .images import ImagePipeline
from .models import ChapterContent, ChapterDescriptor, ImageReference
from .sources import NovelSource

log = logging.getLogger("autebook.content")

# Where chapter documents find their images in the default layout
# (OEBPS/text/*.xhtml next to OEBPS/images/*). The assembler re-targets the
# links when it writes chapters somewhere else.
IMAGE_HREF_PREFIX = "../images/"

DROP_TAGS = ("script", "style", "iframe", "noscript", "object", "embed", "form", "link", "meta")

# Wrapper classes written by the sources; every other class is dropped.
KEPT_CLASSES = {"chapter-content", "authors-note-start", "authors-note-end"}

_XML_NAME = re.compile(r"^[A-Za-z_][\w.-]*$")


def _clean_style(style: str) -> str:
    kept = []
    for declaration in style.split(";"):
        if ":" not in declaration:
            continue
        prop, value = (part.strip() for part in declaration.split(":", 1))
        prop = prop.lower()
        value_l = value.lower().replace("!important", "").strip()
        if prop == "font-family":
            continue
        if prop == "font-weight" and value_l in ("normal", "400"):
            continue
        if prop == "overflow" and value_l == "auto":
            continue
        kept.append(f"{prop}: {value}")
    return "; ".join(kept)


def _absolute(base_url: str, href: str) -> str | None:
    try:
        return urljoin(base_url, href)
    except ValueError:
        log.debug("Unusable URL %r in %s", href, base_url)
        return None


def normalize_html(fragment: str, base_url: str) -> Tag:
    """Clean a chapter fragment so it can be embedded in an XHTML document.

    Removes scripts, styles and other active content, class attributes, font
    declarations and empty paragraphs, and makes links absolute.
    """
    soup = BeautifulSoup(f"<div id='autebook-root'>{fragment}</div>", "lxml")
    root = soup.find(id="autebook-root")

    for node in root.find_all(string=lambda s: isinstance(s, Comment)):
        node.extract()
    for node in root.find_all(DROP_TAGS):
        node.decompose()

    for tag in root.find_all(True):
        if ":" in tag.name:
            tag.unwrap()
            continue
        for attr in list(tag.attrs):
            if not _XML_NAME.match(attr) or attr.lower().startswith("on"):
                del tag[attr]
        classes = [c for c in tag.get("class", []) if c in KEPT_CLASSES]
        if classes:
            tag["class"] = classes
        elif "class" in tag.attrs:
            del tag["class"]
        if "style" in tag.attrs:
            style = _clean_style(tag["style"])
            if style:
                tag["style"] = style
            else:
                del tag["style"]

    for a in root.find_all("a", href=True):
        href = _absolute(base_url, a["href"])
        if href is None:
            del a["href"]
        else:
            a["href"] = href
    for img in root.find_all("img"):
        src = img.get("src") or img.get("data-src") or ""
        for attr in ("srcset", "data-src", "loading"):
            if attr in img.attrs:
                del img[attr]
        src = _absolute(base_url, src) if src else None
        if src:
            img["src"] = src
        elif "src" in img.attrs:
            del img["src"]
        if "alt" not in img.attrs:
            img["alt"] = ""

    for p in root.find_all("p"):
        if not p.get_text(strip=True) and p.find(["img", "svg", "hr"]) is None:
            p.decompose()

    root.attrs = {}
    return root


def serialize_fragment(root: Tag) -> str:
    return "".join(str(child) for child in root.contents).strip()


async def _process_images(
    root: Tag, descriptor: ChapterDescriptor, images: ImagePipeline, strict: bool
) -> list[ImageReference]:
    tags = root.find_all("img")
    urls = [img.get("src") or "" for img in tags]
    results = await asyncio.gather(*(images.process(u) for u in urls if u), return_exceptions=True)
    by_url = dict(zip([u for u in urls if u], results))

    refs: dict[str, ImageReference] = {}
    for tag, url in zip(tags, urls):
        result = by_url.get(url)
        if isinstance(result, ImageReference):
            tag["src"] = IMAGE_HREF_PREFIX + result.file_name
            refs.setdefault(result.asset_id, result)
            continue
        if result is not None and not isinstance(result, ImageDecodeFailed):
            raise result
        if strict:
            raise result or ImageDecodeFailed(url, f"image without source in chapter {descriptor.position}")
        log.warning("Chapter %d '%s': dropping image (%s)", descriptor.position, descriptor.title, result or "no src")
        tag.decompose()
    return list(refs.values())


async def fetch_chapter(
    fetcher: RateLimitedFetcher,
    source: NovelSource,
    descriptor: ChapterDescriptor,
    images: ImagePipeline,
    strict_images: bool = False,
) -> ChapterContent:
    """Download one chapter, clean it and resolve its images."""
    try:
        html = await fetcher.get_text(descriptor.source_url)
    except FetchError as e:
        raise ChapterFetchFailed(descriptor, str(e)) from e

    fragment = source.extract_content(html, descriptor.source_url)
    if not fragment:
        raise ChapterParseFailed(descriptor, f"no content found at {descriptor.source_url}")

    root = normalize_html(fragment, descriptor.source_url)
    refs = await _process_images(root, descriptor, images, strict_images)
    return ChapterContent(descriptor=descriptor, html_fragment=serialize_fragment(root), images=refs)


async def fetch_contents(
    fetcher: RateLimitedFetcher,
    source: NovelSource,
    missing: Sequence[ChapterDescriptor],
    images: ImagePipeline,
    strict_images: bool = False,
    on_fetched: Callable[[ChapterDescriptor], None] | None = None,
) -> list[ChapterContent]:
    """Fetch every chapter in *missing*; results are sorted by position.

    Raises the error of the earliest failed chapter after cancelling the
    chapters still in flight.
    """

    async def one(descriptor: ChapterDescriptor) -> ChapterContent:
        content = await fetch_chapter(fetcher, source, descriptor, images, strict_images)
        if on_fetched is not None:
            on_fetched(descriptor)
        return content

    if not missing:
        return []

    tasks = [asyncio.create_task(one(d)) for d in missing]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        failed = [t for t in tasks if t in done and t.exception() is not None]
        if failed:
            raise failed[0].exception()
    finally:
        pending = [t for t in tasks if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            images.cancel()

    return sorted((t.result() for t in tasks), key=lambda c: c.descriptor.position)
