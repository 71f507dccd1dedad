"""Configuration for autebook.

Module-level defaults can be overridden through ``AUTEBOOK_*`` environment
variables; :class:`Settings` bundles the run parameters handed to the
pipeline at construction time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# ── HTTP ─────────────────────────────────────────────────────────────────────

USER_AGENT = os.environ.get(
    "AUTEBOOK_USER_AGENT",
    "autebook <https://github.com/ValentinLeTallec/AutEBook>",
)

HEADERS = {
    "user-agent": USER_AGENT,
    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}

REQUEST_TIMEOUT = 30.0
MAX_RETRIES = 4
BACKOFF_BASE = 2.0  # seconds, doubled on each retry
MAX_BACKOFF = 120.0  # cap on a single retry delay

# Two requests per second with no burst matches what RoyalRoad tolerates.
REQUESTS_PER_SECOND = float(os.environ.get("AUTEBOOK_RATE", "2"))
BURST = 1
MAX_CONCURRENT = 8

# ── Batch ────────────────────────────────────────────────────────────────────

WORKERS = int(os.environ.get("AUTEBOOK_WORKERS", "4"))

# ── Images ───────────────────────────────────────────────────────────────────

IMAGE_FORMATS = ("jpeg", "png", "webp")
IMAGE_FORMAT = "jpeg"
IMAGE_MAX_WIDTH = 600
JPEG_QUALITY = 80

# ── Paths ────────────────────────────────────────────────────────────────────

_cache_env = os.environ.get("AUTEBOOK_CACHE_DIR")
CACHE_DIR: Path | None = Path(_cache_env) if _cache_env else Path.home() / ".cache" / "autebook"

_stash_env = os.environ.get("AUTEBOOK_STASH_DIR")
STASH_DIR: Path | None = Path(_stash_env) if _stash_env else None

# ── EPUB layout for archives written from scratch ────────────────────────────

GENERATOR = "autebook"
OEBPS_DIR = "OEBPS"
OPF_NAME = "content.opf"
TEXT_DIR = "text"
IMAGES_DIR = "images"
STYLES_DIR = "styles"
STYLESHEET_NAME = "stylesheet.css"
NAV_NAME = "nav.xhtml"
NCX_NAME = "toc.ncx"
TITLE_PAGE_NAME = "title.xhtml"


@dataclass
class Settings:
    """Run parameters, fixed once a pipeline has been built."""

    workers: int = WORKERS
    max_concurrent: int = MAX_CONCURRENT
    requests_per_second: float = REQUESTS_PER_SECOND
    burst: int = BURST
    timeout: float = REQUEST_TIMEOUT
    max_retries: int = MAX_RETRIES
    backoff_base: float = BACKOFF_BASE
    max_backoff: float = MAX_BACKOFF
    image_format: str = IMAGE_FORMAT
    image_max_width: int = IMAGE_MAX_WIDTH
    strict_images: bool = False
    strict_titles: bool = True
    detect_republished: bool = False
    cache_dir: Path | None = CACHE_DIR
    stash_dir: Path | None = STASH_DIR
    headers: dict[str, str] = field(default_factory=lambda: dict(HEADERS))

    def __post_init__(self) -> None:
        for name in ("workers", "max_concurrent", "burst", "image_max_width"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if self.backoff_base < 0 or self.max_backoff < 0:
            raise ValueError("backoff_base and max_backoff must not be negative")
        self.image_format = self.image_format.lower()
        if self.image_format == "jpg":
            self.image_format = "jpeg"
        if self.image_format not in IMAGE_FORMATS:
            valid = ", ".join(IMAGE_FORMATS)
            raise ValueError(f"Unknown image format {self.image_format!r}. Valid formats: {valid}")


def read_path_list(path: Path) -> list[Path]:
    """Read book paths from a text file, one per line.

    Blank lines and lines starting with ``#`` are ignored; relative paths are
    resolved against the file's directory.
    """
    base = path.parent
    paths: list[Path] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            p = Path(line).expanduser()
            paths.append(p if p.is_absolute() else base / p)
    return paths
