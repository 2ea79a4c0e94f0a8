"""JSON helpers for snapshot payloads, using orjson when it is installed."""

from __future__ import annotations

from typing import Any

try:
    import orjson  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    orjson = None

__all__ = ["loads", "dumps", "dumps_bytes"]


def loads(data: str | bytes | bytearray) -> Any:
    """Parse JSON from ``data``.

    Raises :class:`ValueError` (``orjson.JSONDecodeError`` and
    ``json.JSONDecodeError`` both subclass it) on malformed input.
    """
    if orjson is not None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        return orjson.loads(data)
    import json
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8")
    return json.loads(data)


def dumps_bytes(obj: Any, *, sort_keys: bool = False) -> bytes:
    """Serialize ``obj`` to compact JSON bytes (no whitespace, UTF-8)."""
    if orjson is not None:
        opts = orjson.OPT_SORT_KEYS if sort_keys else 0
        return orjson.dumps(obj, option=opts)
    import json
    text = json.dumps(
        obj,
        sort_keys=sort_keys,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    return text.encode("utf-8")


def dumps(obj: Any, *, sort_keys: bool = False) -> str:
    """Serialize ``obj`` to a compact JSON ``str``.

    The output never contains raw newlines, so a payload always fits on a
    single SSE ``data:`` line.
    """
    return dumps_bytes(obj, sort_keys=sort_keys).decode("utf-8")
