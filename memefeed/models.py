"""Snapshot and token record types shared by the server and client sides."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

TokenRecord = Dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    """Render *value* as ISO-8601 UTC with millisecond precision and ``Z``."""

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp produced by :func:`format_timestamp`."""

    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Snapshot:
    """Current state of one feed.

    Instances are never mutated after construction; the store swaps in a
    new object on every transition, so a reference obtained from
    :meth:`SnapshotStore.get_snapshot` stays internally consistent.
    """

    tokens: Tuple[TokenRecord, ...] = ()
    fetched_at: Optional[datetime] = None
    error: Optional[str] = None
    version: int = 0

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    @property
    def is_stale(self) -> bool:
        """True when data exists but the most recent poll failed."""
        return self.fetched_at is not None and self.error is not None

    def to_payload(self, extra: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        """Return the REST/SSE wire representation."""

        payload: Dict[str, Any] = {}
        if extra:
            payload.update(extra)
        payload["tokens"] = [dict(token) for token in self.tokens]
        payload["fetchedAt"] = format_timestamp(self.fetched_at)
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one upstream request; failures never raise."""

    ok: bool
    payload: Any = None
    error: Optional[str] = None
    status: Optional[int] = None
    elapsed: float = 0.0
    fetched_at: datetime = field(default_factory=utcnow)

    @classmethod
    def success(cls, payload: Any, *, status: int | None = None, elapsed: float = 0.0) -> "FetchResult":
        return cls(ok=True, payload=payload, status=status, elapsed=elapsed)

    @classmethod
    def failure(cls, error: str, *, status: int | None = None, elapsed: float = 0.0) -> "FetchResult":
        return cls(ok=False, error=error, status=status, elapsed=elapsed)


__all__ = [
    "TokenRecord",
    "Snapshot",
    "FetchResult",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]
