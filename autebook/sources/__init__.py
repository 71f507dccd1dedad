"""Remote chapter sources.

Usage::

    from autebook.sources import source_for_url

    source = source_for_url("https://www.royalroad.com/fiction/12345/some-book")
"""

from __future__ import annotations

from ..errors import UnsupportedSource
from .base import NovelSource, RawChapter
from .html import GENERIC, PROFILES, ROYALROAD, SelectorSource, SourceProfile

# Profiles tried by source_for_url, in order. "generic" matches any http URL,
# so it is only used when asked for by name.
AUTO_PROFILES = ("royalroad",)

VALID_SOURCES = tuple(PROFILES)


def create_source(name: str) -> NovelSource:
    """Build the source registered under *name*."""
    profile = PROFILES.get(name)
    if profile is None:
        valid = ", ".join(VALID_SOURCES)
        raise ValueError(f"Unknown source {name!r}. Valid sources: {valid}")
    return SelectorSource(profile)


def source_for_url(url: str, preferred: str | None = None) -> NovelSource:
    """Return the source able to handle *url*.

    If *preferred* names a source it is used as-is. Otherwise the automatic
    profiles are tried in order and :class:`UnsupportedSource` is raised when
    none matches.
    """
    if preferred:
        return create_source(preferred)
    if not url:
        raise UnsupportedSource("unsupported source: no source URL")
    for name in AUTO_PROFILES:
        source = SelectorSource(PROFILES[name])
        if source.matches(url):
            return source
    raise UnsupportedSource(f"unsupported source: {url}")


__all__ = [
    "GENERIC",
    "NovelSource",
    "PROFILES",
    "ROYALROAD",
    "RawChapter",
    "SelectorSource",
    "SourceProfile",
    "VALID_SOURCES",
    "create_source",
    "source_for_url",
]
