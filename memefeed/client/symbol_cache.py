"""Persisted id -> display metadata cache for streamed token records."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

from cachetools import LRUCache

from ..jsonutil import dumps_bytes, loads
from ..paths import cache_dir

logger = logging.getLogger(__name__)

CACHED_FIELDS: tuple[str, ...] = ("symbol", "name", "icon")
DEFAULT_MAXSIZE = 2000


def default_cache_path(feed: str) -> Path:
    return cache_dir() / f"symbols-{feed}.json"


class SymbolCache:
    """Remember ``symbol``/``name``/``icon`` per token id.

    Providers sometimes omit display fields on later polls; :meth:`enrich`
    fills them back in from earlier sightings.  Entries are LRU-bounded and
    optionally persisted as JSON at ``path``.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None, *, maxsize: int = DEFAULT_MAXSIZE) -> None:
        self.path = Path(path) if path is not None else None
        self._cache: MutableMapping[str, Dict[str, str]] = LRUCache(maxsize=maxsize)
        self._lock = threading.Lock()
        self._dirty = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get(self, token_id: str) -> Optional[Dict[str, str]]:
        with self._lock:
            entry = self._cache.get(token_id)
            return dict(entry) if entry is not None else None

    def load(self) -> int:
        """Read persisted entries; corrupt or unreadable files are ignored."""

        if self.path is None or not self.path.exists():
            return 0
        try:
            data = loads(self.path.read_bytes())
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable symbol cache %s: %s", self.path, exc)
            return 0
        if not isinstance(data, dict):
            logger.warning("Ignoring symbol cache %s: expected an object", self.path)
            return 0
        loaded = 0
        with self._lock:
            for token_id, entry in data.items():
                cleaned = _clean_entry(entry)
                if isinstance(token_id, str) and token_id and cleaned:
                    self._cache[token_id] = cleaned
                    loaded += 1
        return loaded

    def flush(self) -> bool:
        """Write entries to :attr:`path` atomically.  Returns ``True`` if written."""

        if self.path is None:
            return False
        with self._lock:
            if not self._dirty:
                return False
            payload = dumps_bytes({key: dict(value) for key, value in self._cache.items()}, sort_keys=True)
            self._dirty = False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".symbols-", dir=str(self.path.parent))
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("Failed to persist symbol cache %s: %s", self.path, exc)
            with self._lock:
                self._dirty = True
            return False
        return True

    def remember(self, record: Mapping[str, Any]) -> None:
        token_id = record.get("id")
        if not isinstance(token_id, str) or not token_id:
            return
        fresh = _clean_entry(record)
        if not fresh:
            return
        with self._lock:
            current = self._cache.get(token_id)
            merged = {**current, **fresh} if current else fresh
            if merged != current:
                self._cache[token_id] = merged
                self._dirty = True

    def enrich(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Return ``record`` with missing display fields filled from the cache."""

        token_id = record.get("id")
        if not isinstance(token_id, str):
            return record
        with self._lock:
            cached = self._cache.get(token_id)
        if not cached:
            return record
        missing = {key: value for key, value in cached.items() if not record.get(key)}
        if not missing:
            return record
        return {**record, **missing}


def _clean_entry(entry: Any) -> Dict[str, str]:
    if not isinstance(entry, Mapping):
        return {}
    cleaned: Dict[str, str] = {}
    for key in CACHED_FIELDS:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            cleaned[key] = value.strip()
    return cleaned


__all__ = ["SymbolCache", "CACHED_FIELDS", "default_cache_path"]
