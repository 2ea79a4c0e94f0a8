"""Configuration models and loader for the feed server."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .normalize import GMGN, JUPITER_RECENT, JUPITER_TOP_TRENDING, NORMALIZERS
from .util import env_float, env_int, parse_bool_env

logger = logging.getLogger(__name__)

CONFIG_ENV = "MEMEFEED_CONFIG"

_BROWSER_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://gmgn.ai/?chain=sol",
    "Origin": "https://gmgn.ai",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/126.0 Safari/537.36"
    ),
}


class ServerConfig(BaseModel):
    """HTTP listener and SSE delivery settings."""

    host: str = "127.0.0.1"
    port: int = Field(default=5000, ge=0, le=65535)
    keepalive: float = Field(default=15.0, gt=0)
    subscriber_queue: int = Field(default=64, ge=1)
    retry_ms: int = Field(default=3000, ge=0)


class FeedConfig(BaseModel):
    """Settings for one poll/broadcast pipeline."""

    name: str
    provider: str
    url: str
    params: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    interval: float = Field(default=5.0, gt=0)
    timeout: float = Field(default=10.0, gt=0)
    policy: Literal["replace", "merge"] = "replace"
    max_tokens: int = Field(default=500, ge=1)
    path: str
    admin_prefix: str | None = None
    extra: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        if value not in NORMALIZERS:
            raise ValueError(f"unknown provider {value!r}; expected one of {sorted(NORMALIZERS)}")
        return value

    @field_validator("path", "admin_prefix")
    @classmethod
    def _absolute_path(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value.startswith("/"):
            raise ValueError("paths must start with '/'")
        return value.rstrip("/") or "/"

    @property
    def admin_path(self) -> str:
        return self.admin_prefix or self.path

    def resolved_url(self) -> str:
        """Return :attr:`url` with ``{placeholders}`` filled from :attr:`extra`."""

        try:
            return self.url.format(**self.extra)
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigError(f"feed {self.name!r}: cannot expand url {self.url!r}: {exc}") from exc


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    feeds: List[FeedConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_feeds(self) -> "AppConfig":
        seen_names: set[str] = set()
        seen_paths: set[str] = set()
        seen_admin: set[str] = set()
        for feed in self.feeds:
            if feed.name in seen_names:
                raise ValueError(f"duplicate feed name {feed.name!r}")
            if feed.path in seen_paths:
                raise ValueError(f"duplicate feed path {feed.path!r}")
            if feed.admin_path in seen_admin:
                raise ValueError(f"duplicate admin prefix {feed.admin_path!r}")
            seen_names.add(feed.name)
            seen_paths.add(feed.path)
            seen_admin.add(feed.admin_path)
        return self

    def feed(self, name: str) -> FeedConfig:
        for feed in self.feeds:
            if feed.name == name:
                return feed
        raise KeyError(name)


def _default_feeds() -> Dict[str, Dict[str, Any]]:
    return {
        JUPITER_RECENT: {
            "name": JUPITER_RECENT,
            "provider": JUPITER_RECENT,
            "url": "https://lite-api.jup.ag/tokens/v2/recent",
            "interval": 5.0,
            "policy": "replace",
            "path": "/api/jupiter/recent",
        },
        JUPITER_TOP_TRENDING: {
            "name": JUPITER_TOP_TRENDING,
            "provider": JUPITER_TOP_TRENDING,
            "url": "https://lite-api.jup.ag/tokens/v2/toptrending/{timeframe}",
            "params": {"limit": 50},
            "interval": 15.0,
            "policy": "replace",
            "path": "/api/jupiter/top-trending",
            "extra": {"timeframe": "1h", "limit": 50},
        },
        GMGN: {
            "name": GMGN,
            "provider": GMGN,
            "url": "https://gmgn.ai/defi/quotation/v1/pairs/sol/new_pairs",
            "params": {"limit": 50, "orderby": "open_timestamp", "direction": "desc"},
            "headers": dict(_BROWSER_HEADERS),
            "interval": 5.0,
            "policy": "merge",
            "max_tokens": 500,
            "path": "/api/gmgn/tokens",
            "admin_prefix": "/api/gmgn",
        },
    }


def default_config() -> AppConfig:
    """Return the built-in configuration for the three feeds."""

    return AppConfig(feeds=[FeedConfig(**table) for table in _default_feeds().values()])


def _env_prefix(feed_name: str) -> str:
    name = feed_name.upper()
    if name.startswith("JUPITER_"):
        name = name[len("JUPITER_"):]
    return f"MEMEFEED_{name}_"


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as fh:
            return tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"failed to read config {path}: {exc}") from exc


def _apply_env(raw: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    server = dict(raw.get("server") or {})
    if environ.get("MEMEFEED_HOST"):
        server["host"] = environ["MEMEFEED_HOST"].strip()
    if environ.get("MEMEFEED_PORT"):
        server["port"] = env_int("MEMEFEED_PORT", int(server.get("port", 5000)), environ=environ)
    if environ.get("MEMEFEED_KEEPALIVE"):
        server["keepalive"] = env_float(
            "MEMEFEED_KEEPALIVE", float(server.get("keepalive", 15.0)), environ=environ
        )
    raw["server"] = server

    feeds: Dict[str, Dict[str, Any]] = raw["feeds"]
    for name, table in feeds.items():
        prefix = _env_prefix(name)
        if environ.get(prefix + "INTERVAL"):
            table["interval"] = env_float(prefix + "INTERVAL", float(table.get("interval", 5.0)), environ=environ)
        if environ.get(prefix + "TIMEOUT"):
            table["timeout"] = env_float(prefix + "TIMEOUT", float(table.get("timeout", 10.0)), environ=environ)
        if prefix + "ENABLED" in environ:
            table["enabled"] = parse_bool_env(
                prefix + "ENABLED", bool(table.get("enabled", True)), environ=environ, log_unknown=True
            )

    gmgn = feeds.get(GMGN)
    if gmgn is not None and environ.get("MEMEFEED_GMGN_MAX_TOKENS"):
        gmgn["max_tokens"] = env_int(
            "MEMEFEED_GMGN_MAX_TOKENS", int(gmgn.get("max_tokens", 500)), environ=environ, minimum=1
        )

    trending = feeds.get(JUPITER_TOP_TRENDING)
    if trending is not None:
        extra = dict(trending.get("extra") or {})
        params = dict(trending.get("params") or {})
        timeframe = (environ.get("MEMEFEED_TOP_TRENDING_TIMEFRAME") or "").strip()
        if timeframe:
            extra["timeframe"] = timeframe
        if environ.get("MEMEFEED_TOP_TRENDING_LIMIT"):
            limit = env_int(
                "MEMEFEED_TOP_TRENDING_LIMIT", int(extra.get("limit", 50)), environ=environ, minimum=1
            )
            extra["limit"] = limit
            params["limit"] = limit
        trending["extra"] = extra
        trending["params"] = params
    return raw


def load_config(path: str | os.PathLike[str] | None = None, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build the :class:`AppConfig` for this process.

    Layers, lowest precedence first: built-in defaults, the TOML file at
    ``path`` (or ``$MEMEFEED_CONFIG``), then ``MEMEFEED_*`` environment
    variables.  A ``[feeds.<name>]`` table overrides the matching built-in
    feed field by field; unknown names add new feeds.  Raises
    :class:`ConfigError` when the result does not validate.
    """

    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = {"server": {}, "feeds": _default_feeds()}

    source = path if path is not None else (env.get(CONFIG_ENV) or None)
    if source:
        data = _read_toml(Path(source).expanduser())
        if not isinstance(data.get("server", {}), dict) or not isinstance(data.get("feeds", {}), dict):
            raise ConfigError("[server] and [feeds] must be tables")
        raw["server"] = _deep_merge(raw["server"], data.get("server", {}))
        for name, table in (data.get("feeds") or {}).items():
            if not isinstance(table, dict):
                raise ConfigError(f"[feeds.{name}] must be a table")
            base = raw["feeds"].get(name, {"name": name})
            raw["feeds"][name] = _deep_merge(base, table)
            raw["feeds"][name].setdefault("name", name)
        logger.info("Loaded config overrides from %s", source)

    raw = _apply_env(raw, env)
    try:
        return AppConfig(server=raw["server"], feeds=list(raw["feeds"].values()))
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


__all__ = [
    "CONFIG_ENV",
    "ServerConfig",
    "FeedConfig",
    "AppConfig",
    "default_config",
    "load_config",
]
