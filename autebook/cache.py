"""On-disk cache of encoded inline images.

Layout: ``<cache_dir>/<book-key>/<sha1 of url, format and width>.<ext>``.
A rebuild re-downloads chapter text but finds its images here.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
from pathlib import Path

log = logging.getLogger("autebook.cache")

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def book_key(identifier: str) -> str:
    """Directory name for a book, derived from its identifier or URL."""
    key = _UNSAFE.sub("_", identifier).strip("._")
    return key[:80] or "unknown"


class ImageCache:
    """Encoded images of one book. A ``None`` root disables the cache."""

    def __init__(self, root: Path | None, key: str, variant: str = ""):
        self.dir = Path(root) / book_key(key) if root else None
        self._variant = variant

    @property
    def enabled(self) -> bool:
        return self.dir is not None

    def _stem(self, url: str) -> str:
        return hashlib.sha1(f"{url}|{self._variant}".encode("utf-8")).hexdigest()

    def get(self, url: str) -> tuple[bytes, str] | None:
        """Return ``(encoded bytes, extension)`` or ``None`` on a miss."""
        if self.dir is None or not self.dir.is_dir():
            return None
        for path in self.dir.glob(self._stem(url) + ".*"):
            if path.suffix == ".tmp":
                continue
            try:
                return path.read_bytes(), path.suffix.lstrip(".")
            except OSError as e:
                log.warning("Unreadable cache entry %s: %s", path, e)
                return None
        return None

    def put(self, url: str, data: bytes, ext: str) -> None:
        """Store an encoded image. Write errors only cost a later re-download."""
        if self.dir is None:
            return
        target = self.dir / f"{self._stem(url)}.{ext}"
        try:
            self.dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, target)
            except BaseException:
                os.unlink(tmp)
                raise
        except OSError as e:
            log.warning("Could not cache %s: %s", url, e)
