"""KOReader sidecar adjustments.

KOReader keeps reading state for ``book.epub`` in
``book.sdr/metadata.epub.lua``. A book read to the end is stored with
``percent_finished = 1`` and shown as finished, which hides it once new
chapters have been appended.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

log = logging.getLogger("autebook.koreader")

_FINISHED = re.compile(r'(\["percent_finished"\]\s*=\s*)1(?:\.0+)?(?=\s*[,}\n])')


def sidecar_path(book: Path) -> Path:
    return book.parent / f"{book.stem}.sdr" / "metadata.epub.lua"


def mark_unfinished(book: Path) -> bool:
    """Lower a finished book's progress to 99%. Returns True if changed."""
    lua = sidecar_path(book)
    if not lua.is_file():
        return False
    text = lua.read_text(encoding="utf-8")
    new_text, count = _FINISHED.subn(r"\g<1>0.99", text)
    if not count:
        return False
    lua.write_text(new_text, encoding="utf-8")
    log.debug("%s: reading progress set to 99%%", book.name)
    return True
