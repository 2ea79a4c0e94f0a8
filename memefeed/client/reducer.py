"""Client-side merge/queue reducer for streamed feed snapshots.

The reducer turns a stream of full snapshots into a bounded ``visible`` list
that grows by one record per drip tick, so bursts of new tokens are revealed
gradually.  New ids always enter ``queued`` first; ids already shown or
queued are updated in place.  An id is never present in both lists.
"""

from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..errors import MalformedPayloadError
from ..jsonutil import loads
from ..models import TokenRecord, parse_timestamp, utcnow
from ..normalize import dedupe_by_id
from .symbol_cache import SymbolCache

logger = logging.getLogger(__name__)

MAX_DISPLAYED_TOKENS = 200
MAX_QUEUED_TOKENS = MAX_DISPLAYED_TOKENS * 3
DRIP_INTERVAL = 1.0


class ReducerState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    SEEDED = "seeded"
    STEADY = "steady"


class FeedReducer:
    def __init__(
        self,
        *,
        max_visible: int = MAX_DISPLAYED_TOKENS,
        max_queued: Optional[int] = None,
        symbol_cache: Optional[SymbolCache] = None,
        on_change: Optional[Callable[["FeedReducer"], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self.max_visible = max(1, int(max_visible))
        self.max_queued = max(0, int(max_queued if max_queued is not None else self.max_visible * 3))
        self.symbol_cache = symbol_cache
        self.on_change = on_change
        self.on_error = on_error
        self._lock = threading.Lock()
        self._visible: List[TokenRecord] = []
        self._queued: List[TokenRecord] = []
        self._state = ReducerState.UNINITIALIZED
        self._error: Optional[str] = None
        self._fetched_at: Optional[datetime] = None
        self._last_updated: Optional[datetime] = None
        self._closed = False

    # -- accessors ---------------------------------------------------------

    @property
    def visible(self) -> List[TokenRecord]:
        with self._lock:
            return [dict(token) for token in self._visible]

    @property
    def queued(self) -> List[TokenRecord]:
        with self._lock:
            return [dict(token) for token in self._queued]

    @property
    def state(self) -> ReducerState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def fetched_at(self) -> Optional[datetime]:
        return self._fetched_at

    @property
    def last_updated(self) -> Optional[datetime]:
        return self._last_updated

    @property
    def is_stale(self) -> bool:
        return self._error is not None and self._fetched_at is not None

    @property
    def closed(self) -> bool:
        return self._closed

    # -- transitions -------------------------------------------------------

    def handle_message(self, raw: str | bytes) -> bool:
        """Decode one ``init``/``update`` payload and apply it.

        Malformed payloads are logged and reported to ``on_error``; the
        state is left untouched and ``False`` is returned.
        """

        if self._closed:
            return False
        try:
            payload = loads(raw)
        except ValueError as exc:
            self._report(MalformedPayloadError(f"invalid JSON: {exc}"))
            return False
        return self.apply_snapshot(payload)

    def apply_snapshot(self, snapshot: Any) -> bool:
        if not isinstance(snapshot, Mapping):
            self._report(MalformedPayloadError("snapshot must be a JSON object"))
            return False
        tokens = snapshot.get("tokens", [])
        if not isinstance(tokens, list):
            self._report(MalformedPayloadError("snapshot 'tokens' must be a list"))
            return False
        incoming = dedupe_by_id(self._prepare(token) for token in tokens if isinstance(token, Mapping))

        with self._lock:
            if self._closed:
                return False
            if self._state is ReducerState.UNINITIALIZED:
                self._seed(incoming)
                self._state = ReducerState.SEEDED
            else:
                self._merge(incoming)
                self._state = ReducerState.STEADY
            error = snapshot.get("error")
            self._error = str(error) if error else None
            self._fetched_at = parse_timestamp(snapshot.get("fetchedAt"))
            self._last_updated = utcnow()
        self._changed()
        return True

    def _prepare(self, token: Mapping[str, Any]) -> TokenRecord:
        record = dict(token)
        if self.symbol_cache is not None and isinstance(record.get("id"), str):
            self.symbol_cache.remember(record)
            record = self.symbol_cache.enrich(record)
        return record

    def _seed(self, incoming: List[TokenRecord]) -> None:
        if not incoming:
            self._visible = []
            self._queued = []
            return
        first, rest = incoming[0], incoming[1:]
        self._visible = [first]
        self._queued = rest[: self.max_queued]

    def _merge(self, incoming: List[TokenRecord]) -> None:
        by_id: Dict[str, TokenRecord] = {token["id"]: token for token in incoming}
        known = set()
        for pos, token in enumerate(self._visible):
            update = by_id.get(token["id"])
            if update is not None:
                self._visible[pos] = {**token, **update}
            known.add(token["id"])
        for pos, token in enumerate(self._queued):
            update = by_id.get(token["id"])
            if update is not None:
                self._queued[pos] = {**token, **update}
            known.add(token["id"])
        additions = [token for token in incoming if token["id"] not in known]
        if additions:
            # the oldest queued entries are kept; newest additions overflow
            self._queued = (self._queued + additions)[: self.max_queued]

    def drip(self) -> Optional[TokenRecord]:
        """Move the head of ``queued`` to the front of ``visible``."""

        with self._lock:
            if self._closed or not self._queued:
                return None
            token = self._queued.pop(0)
            for pos, existing in enumerate(self._visible):
                if existing["id"] == token["id"]:
                    self._visible[pos] = {**existing, **token}
                    break
            else:
                self._visible.insert(0, token)
                del self._visible[self.max_visible:]
            moved = dict(token)
        self._changed()
        return moved

    def teardown(self) -> None:
        """Stop all transitions.  Later merges and drips are no-ops."""

        with self._lock:
            self._closed = True
        self.on_change = None

    # -- callbacks ---------------------------------------------------------

    def _changed(self) -> None:
        callback = self.on_change
        if callback is None or self._closed:
            return
        try:
            callback(self)
        except Exception:
            logger.exception("reducer on_change callback failed")

    def _report(self, exc: Exception) -> None:
        logger.warning("Discarding malformed snapshot: %s", exc)
        callback = self.on_error
        if callback is None or self._closed:
            return
        try:
            callback(exc)
        except Exception:
            logger.exception("reducer on_error callback failed")


__all__ = [
    "FeedReducer",
    "ReducerState",
    "MAX_DISPLAYED_TOKENS",
    "MAX_QUEUED_TOKENS",
    "DRIP_INTERVAL",
]
