# Utility functions shared by the feed services and the client helpers.

from __future__ import annotations

from typing import Iterable, Mapping

import logging
import os
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

logger = logging.getLogger(__name__)


_TRUE_VALUES = {"1", "true", "yes", "y", "on", "enable", "enabled", "t"}
_FALSE_VALUES = {"0", "false", "no", "n", "off", "disable", "disabled", "f"}
_SECRET_QUERY_KEYS = {"api_key", "apikey", "token", "auth", "secret", "password", "key"}


def parse_bool_env(
    name: str,
    default: bool = False,
    *,
    environ: Mapping[str, str] | None = None,
    extra_true: Iterable[str] | None = None,
    extra_false: Iterable[str] | None = None,
    log_unknown: bool = False,
) -> bool:
    """Return the boolean value for environment variable ``name``.

    ``environ`` defaults to :data:`os.environ`.  Additional truthy/falsey
    spellings can be supplied via ``extra_true`` and ``extra_false``.
    Unknown values fall back to ``default`` and can optionally be logged.
    """

    source = os.environ if environ is None else environ
    val = source.get(name)
    if val is None:
        return default
    norm = val.strip().lower()
    true_values = _TRUE_VALUES | {str(s).strip().lower() for s in (extra_true or [])}
    false_values = _FALSE_VALUES | {str(s).strip().lower() for s in (extra_false or [])}
    if norm in true_values:
        return True
    if norm in false_values:
        return False
    if log_unknown:
        logger.debug(
            "Ignoring unknown boolean env %s=%r; using default=%s", name, val, default
        )
    return default


def env_float(
    name: str,
    default: float,
    *,
    environ: Mapping[str, str] | None = None,
    minimum: float | None = None,
) -> float:
    """Return ``name`` parsed as ``float`` or ``default`` when unset/invalid."""

    source = os.environ if environ is None else environ
    raw = source.get(name)
    try:
        value = float(raw) if raw not in {None, ""} else float(default)
    except (TypeError, ValueError):
        value = float(default)
    if minimum is not None and value < minimum:
        return float(minimum)
    return value


def env_int(
    name: str,
    default: int,
    *,
    environ: Mapping[str, str] | None = None,
    minimum: int | None = None,
) -> int:
    """Return ``name`` parsed as ``int`` or ``default`` when unset/invalid."""

    source = os.environ if environ is None else environ
    raw = source.get(name)
    try:
        value = int(str(raw).strip()) if raw not in {None, ""} else int(default)
    except (TypeError, ValueError):
        value = int(default)
    if minimum is not None and value < minimum:
        return int(minimum)
    return value


def redact_url(url: str) -> str:
    """Return ``url`` with secret-looking query parameters masked."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url
    query = [
        (key, "***" if key.lower() in _SECRET_QUERY_KEYS else value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query)))


__all__ = ["parse_bool_env", "env_float", "env_int", "redact_url"]
