"""Project-wide path helpers."""

from __future__ import annotations

import os
from pathlib import Path


def cache_dir() -> Path:
    """Return the directory used for client-side persisted caches.

    ``MEMEFEED_CACHE_DIR`` overrides the default ``~/.cache/memefeed``.
    """

    override = (os.getenv("MEMEFEED_CACHE_DIR") or "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".cache" / "memefeed"


__all__ = ["cache_dir"]
