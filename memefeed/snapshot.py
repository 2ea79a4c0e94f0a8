"""In-memory snapshot store for one feed."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Literal

from .models import Snapshot, TokenRecord, utcnow

logger = logging.getLogger(__name__)

Policy = Literal["replace", "merge"]
PayloadNormalizer = Callable[[Any], List[TokenRecord]]


def merge_tokens(
    existing: tuple[TokenRecord, ...] | List[TokenRecord],
    incoming: List[TokenRecord],
    max_tokens: int,
) -> List[TokenRecord]:
    """Merge ``incoming`` into ``existing`` by id.

    Known ids are updated in place (shallow field merge, position kept) and
    unseen ids are appended.  When the result exceeds ``max_tokens`` the
    oldest entries, those at the front, are evicted.
    """

    merged: List[TokenRecord] = [dict(token) for token in existing]
    index: Dict[str, int] = {token["id"]: pos for pos, token in enumerate(merged)}
    for token in incoming:
        pos = index.get(token["id"])
        if pos is None:
            index[token["id"]] = len(merged)
            merged.append(dict(token))
        else:
            merged[pos] = {**merged[pos], **token}
    if len(merged) > max_tokens:
        merged = merged[len(merged) - max_tokens:]
    return merged


class SnapshotStore:
    """Hold the latest :class:`Snapshot` of a feed.

    Readers on request threads call :meth:`get_snapshot` while the poll
    loop thread applies results.  Payloads are normalized outside the lock and
    the new immutable snapshot is swapped in under it, so readers never
    observe a partial state.
    """

    def __init__(
        self,
        normalizer: PayloadNormalizer,
        *,
        policy: Policy = "replace",
        max_tokens: int = 500,
        name: str = "feed",
    ) -> None:
        if policy not in ("replace", "merge"):
            raise ValueError(f"unknown policy {policy!r}")
        self.name = name
        self.policy = policy
        self.max_tokens = max(1, int(max_tokens))
        self._normalizer = normalizer
        self._lock = threading.Lock()
        self._snapshot = Snapshot()

    @property
    def version(self) -> int:
        return self._snapshot.version

    def get_snapshot(self) -> Snapshot:
        with self._lock:
            return self._snapshot

    def apply_result(self, payload: Any) -> Snapshot:
        """Normalize ``payload`` and install it as the new snapshot."""

        incoming = self._normalizer(payload)
        fetched_at = utcnow()
        if self.policy == "replace":
            tokens = tuple(incoming)
            with self._lock:
                snapshot = Snapshot(tokens, fetched_at, None, self._snapshot.version + 1)
                self._snapshot = snapshot
        else:
            # merge reads the previous tokens, so build and swap together
            with self._lock:
                merged = merge_tokens(self._snapshot.tokens, incoming, self.max_tokens)
                snapshot = Snapshot(tuple(merged), fetched_at, None, self._snapshot.version + 1)
                self._snapshot = snapshot
        logger.debug("%s snapshot v%d: %d token(s)", self.name, snapshot.version, len(snapshot.tokens))
        return snapshot

    def apply_failure(self, message: str) -> Snapshot:
        """Record ``message`` as the error, keeping tokens and ``fetchedAt``."""

        with self._lock:
            current = self._snapshot
            snapshot = Snapshot(current.tokens, current.fetched_at, message or "error", current.version + 1)
            self._snapshot = snapshot
        return snapshot

    def clear(self) -> Snapshot:
        with self._lock:
            snapshot = Snapshot(version=self._snapshot.version + 1)
            self._snapshot = snapshot
        logger.info("%s snapshot cleared", self.name)
        return snapshot


__all__ = ["SnapshotStore", "merge_tokens", "Policy"]
