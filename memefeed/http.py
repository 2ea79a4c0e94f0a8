from __future__ import annotations

import asyncio
import logging
import os
import time
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict
from urllib.parse import urlparse

import aiohttp

from .util import env_float, env_int, parse_bool_env

logger = logging.getLogger(__name__)


class HTTPError(Exception):
    """Raised when an upstream request returns a non-success status code."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class HostCircuitOpenError(RuntimeError):
    """Raised when a host circuit breaker blocks new requests."""


DEFAULT_USER_AGENT = "memefeed/1.0 (+https://local)"

# Connector limits are configurable via environment variables.
CONNECTOR_LIMIT = env_int("HTTP_CONNECTOR_LIMIT", 0, minimum=0)
CONNECTOR_LIMIT_PER_HOST = env_int("HTTP_CONNECTOR_LIMIT_PER_HOST", 0, minimum=0)

# Maintain a session per event loop to avoid cross-loop usage errors when the
# poll loop thread and callers' loops both issue requests.
_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = (
    weakref.WeakKeyDictionary()
)


async def get_session() -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""
    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or sess.closed:
        connector = aiohttp.TCPConnector(
            limit=CONNECTOR_LIMIT,
            limit_per_host=CONNECTOR_LIMIT_PER_HOST,
        )
        trust_env = parse_bool_env("HTTP_TRUST_ENV", False)
        if trust_env:
            logger.info("HTTP session will honor proxy settings from the environment")
        sess = aiohttp.ClientSession(
            connector=connector,
            headers={"User-Agent": os.getenv("HTTP_USER_AGENT", DEFAULT_USER_AGENT)},
            timeout=aiohttp.ClientTimeout(total=env_float("HTTP_TIMEOUT_SEC", 15.0, minimum=0.1)),
            trust_env=trust_env,
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close the session bound to the running loop, if any."""
    loop = asyncio.get_running_loop()
    sess = _SESSIONS.pop(loop, None)
    if sess is not None and not sess.closed:
        await sess.close()


# ---------------------------------------------------------------------------
# Host-level concurrency guards
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _HostConfig:
    host: str
    limit: int
    threshold: int
    cooldown: float


_HOST_RULES: tuple[_HostConfig, ...] = (
    _HostConfig("lite-api.jup.ag", limit=4, threshold=3, cooldown=20.0),
    _HostConfig("api.jup.ag", limit=4, threshold=3, cooldown=20.0),
    _HostConfig("gmgn.ai", limit=2, threshold=3, cooldown=30.0),
)


class _HostController:
    """Track concurrency and failures for a particular host."""

    __slots__ = ("config", "semaphore", "_failures", "_opened_until")

    def __init__(self, config: _HostConfig) -> None:
        self.config = config
        self.semaphore: asyncio.Semaphore = asyncio.Semaphore(max(1, config.limit))
        self._failures: list[float] = []
        self._opened_until: float = 0.0

    def allow(self) -> bool:
        now = time.monotonic()
        if self._opened_until and now < self._opened_until:
            return False
        if self._opened_until and now >= self._opened_until:
            self._opened_until = 0.0
            self._failures.clear()
        return True

    def record_success(self) -> None:
        self._failures.clear()
        self._opened_until = 0.0

    def record_failure(self) -> None:
        now = time.monotonic()
        self._failures.append(now)
        window_start = now - self.config.cooldown
        self._failures = [ts for ts in self._failures if ts >= window_start]
        if len(self._failures) >= self.config.threshold:
            self._opened_until = now + self.config.cooldown
            logger.warning(
                "Circuit open for host %s for %.0fs after %d failures",
                self.config.host,
                self.config.cooldown,
                len(self._failures),
            )

    def snapshot(self) -> dict[str, float | int | bool]:
        remaining = max(0.0, self._opened_until - time.monotonic()) if self._opened_until else 0.0
        return {
            "open": remaining > 0,
            "cooldown_remaining": remaining,
            "failure_count": len(self._failures),
        }


# Controllers hold an asyncio.Semaphore, so they are keyed per loop as well.
_HOST_CONTROLLERS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, _HostController]]" = (
    weakref.WeakKeyDictionary()
)


def _match_host_config(host: str) -> _HostConfig:
    host = host.lower()
    for rule in _HOST_RULES:
        if host == rule.host or host.endswith("." + rule.host):
            return rule
    default_limit = CONNECTOR_LIMIT_PER_HOST or 4
    return _HostConfig(host, limit=default_limit, threshold=3, cooldown=30.0)


def _controller_for(host: str) -> _HostController:
    loop = asyncio.get_running_loop()
    controllers = _HOST_CONTROLLERS.setdefault(loop, {})
    controller = controllers.get(host)
    if controller is None:
        controller = _HostController(_match_host_config(host))
        controllers[host] = controller
    return controller


def reset_host_controllers() -> None:
    """Forget breaker state for every loop (used by tests)."""

    _HOST_CONTROLLERS.clear()


@asynccontextmanager
async def host_request(url: str) -> AsyncIterator[_HostConfig]:
    """Context manager guarding a request to *url*'s host.

    Raises :class:`HostCircuitOpenError` while the host breaker is open.
    Exceptions raised inside the block count as host failures.
    """

    parsed = urlparse(url)
    host = (parsed.hostname or parsed.netloc).lower()
    if not host:
        yield _match_host_config("unknown")
        return
    controller = _controller_for(host)
    if not controller.allow():
        raise HostCircuitOpenError(f"circuit open for host {host}")
    async with controller.semaphore:
        try:
            yield controller.config
        except Exception:
            controller.record_failure()
            raise
        else:
            controller.record_success()


def host_breaker_state(url: str) -> dict[str, float | int | bool]:
    """Expose the breaker telemetry for *url*'s host on the running loop."""

    host = (urlparse(url).hostname or "").lower()
    return _controller_for(host).snapshot()


__all__ = [
    "HTTPError",
    "HostCircuitOpenError",
    "DEFAULT_USER_AGENT",
    "get_session",
    "close_session",
    "host_request",
    "host_breaker_state",
    "reset_host_controllers",
]
