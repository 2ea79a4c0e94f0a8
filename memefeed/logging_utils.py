from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Iterable

DEFAULT_FORMAT = (
    "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d "
    "(tid=%(threadName)s) | %(message)s"
)
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = (
    "asyncio",
    "werkzeug",
    "aiohttp.access",
)

_warn_once_lock = threading.Lock()
_warn_once_last_emit: dict[str, float] = {}

try:  # pragma: no cover - optional dependency
    import orjson as _ORJSON  # type: ignore[attr-defined]
except Exception:  # pragma: no cover - optional dependency
    _ORJSON = None


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - short summary sufficient
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .replace(tzinfo=None)
            .isoformat(timespec="milliseconds")
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
            "thread": record.threadName,
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info

        # ``extra=`` fields (feed name, subscriber counts, ...) ride along
        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = _normalize_for_log(value, max_string=512)

        if _ORJSON is not None:
            return _ORJSON.dumps(payload).decode()
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _parse_log_level(value: str | int | None) -> int:
    if value is None or value == "":
        return logging.INFO
    if isinstance(value, int):
        return value
    level = str(value).strip().upper()
    if level.isdigit():
        return int(level)
    resolved = logging.getLevelName(level)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    *,
    level: str | int | None = None,
    json_logs: bool | None = None,
    fmt: str | None = None,
    datefmt: str | None = None,
    quiet: Iterable[str] = _NOISY_LOGGERS,
) -> logging.Handler:
    """Install a single stdout handler on the root logger.

    ``level`` falls back to ``LOG_LEVEL`` and ``json_logs`` to ``LOG_JSON``.
    Calling this repeatedly reuses the handler installed by the first call.
    """

    resolved_level = _parse_log_level(level if level is not None else os.getenv("LOG_LEVEL"))
    if json_logs is None:
        env_json = os.getenv("LOG_JSON")
        json_logs = bool(env_json) and env_json.strip().lower() in {"1", "true", "yes", "on"}

    root = logging.getLogger()
    root.setLevel(resolved_level)

    sentinel_key = "_memefeed_stdout_handler"
    handler = getattr(root, sentinel_key, None)
    if not isinstance(handler, logging.StreamHandler) or handler not in root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        root.addHandler(handler)
        setattr(root, sentinel_key, handler)

    # basicConfig-style stderr handlers would duplicate every line
    for existing in list(root.handlers):
        if existing is handler or not isinstance(existing, logging.StreamHandler):
            continue
        if getattr(existing, "stream", None) in {sys.stderr, sys.__stderr__, sys.stdout, sys.__stdout__}:
            root.removeHandler(existing)
            with contextlib.suppress(Exception):  # pragma: no cover - best effort
                existing.close()

    handler.setLevel(resolved_level)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(_UTCFormatter(fmt or DEFAULT_FORMAT, datefmt=datefmt or DEFAULT_DATEFMT))

    # chatty third-party loggers only surface warnings
    for name in quiet:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    return handler


def warn_once_per(
    seconds: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Emit ``logger.warning`` for *message* at most once per *seconds* interval."""

    interval = max(0.0, seconds)
    now = time.monotonic()

    with _warn_once_lock:
        last = _warn_once_last_emit.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _warn_once_last_emit[key] = now

    target = logger or logging.getLogger()
    target.warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    """Clear cached emission timestamps for :func:`warn_once_per`."""

    with _warn_once_lock:
        _warn_once_last_emit.clear()


def _normalize_for_log(value: Any, *, max_string: int) -> Any:
    if isinstance(value, dict):
        return {
            str(k): _normalize_for_log(v, max_string=max_string)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_normalize_for_log(v, max_string=max_string) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str):
        if len(value) <= max_string:
            return value
        return f"{value[:max_string]}...({len(value)} chars)"
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    return str(value)


def serialize_for_log(value: Any, *, max_string: int = 256) -> str:
    """Return a JSON-formatted preview of *value* that is safe for logging."""
    try:
        normalized = _normalize_for_log(value, max_string=max_string)
        if _ORJSON is not None:
            return _ORJSON.dumps(normalized).decode()
        return json.dumps(normalized, ensure_ascii=True, sort_keys=True)
    except Exception:
        return repr(value)[:max_string]


__all__ = [
    "JsonFormatter",
    "configure_logging",
    "warn_once_per",
    "reset_warn_once_cache",
    "serialize_for_log",
]
