from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .config import FeedConfig
from .http import HostCircuitOpenError, HTTPError, get_session, host_request
from .jsonutil import loads
from .logging_utils import serialize_for_log, warn_once_per
from .models import FetchResult
from .normalize import envelope_error
from .util import redact_url

logger = logging.getLogger(__name__)

FAILURE_LOG_INTERVAL = 60.0

SessionFactory = Callable[[], Awaitable[aiohttp.ClientSession]]


class UpstreamFetcher:
    """Perform one upstream HTTP call per poll tick for a single feed.

    :meth:`fetch` never raises for transport, status, decoding or provider
    errors; every outcome is reported as a :class:`FetchResult`.
    """

    def __init__(self, config: FeedConfig, *, session_factory: SessionFactory | None = None) -> None:
        self.config = config
        self.name = config.name
        self.url = config.resolved_url()
        self.params: Dict[str, str] = {key: str(value) for key, value in config.params.items()}
        self.headers: Dict[str, str] = dict(config.headers)
        self.timeout = aiohttp.ClientTimeout(total=config.timeout)
        self._session_factory = session_factory
        self._failing = False

    async def _session(self) -> aiohttp.ClientSession:
        factory = self._session_factory or get_session
        return await factory()

    async def _request(self) -> tuple[Any, int]:
        async with host_request(self.url):
            session = await self._session()
            async with session.get(
                self.url,
                params=self.params or None,
                headers=self.headers or None,
                timeout=self.timeout,
            ) as resp:
                status = resp.status
                if not 200 <= status < 300:
                    body = await resp.text()
                    raise HTTPError(status, f"HTTP {status}: {body[:200].strip() or resp.reason}")
                raw = await resp.read()
            payload = loads(raw)
            problem = envelope_error(payload)
            if problem:
                logger.debug("%s provider envelope: %s", self.name, serialize_for_log(payload))
                raise HTTPError(status, problem)
            return payload, status

    async def fetch(self) -> FetchResult:
        start = time.monotonic()
        status: Optional[int] = None
        try:
            payload, status = await self._request()
        except HTTPError as exc:
            return self._failed(str(exc), exc.status, start)
        except HostCircuitOpenError as exc:
            return self._failed(str(exc), None, start)
        except asyncio.TimeoutError:
            return self._failed(f"timeout after {self.config.timeout:g}s", None, start)
        except aiohttp.ClientError as exc:
            return self._failed(f"{type(exc).__name__}: {exc}", None, start)
        except ValueError as exc:
            return self._failed(f"malformed JSON: {exc}", status, start)

        elapsed = time.monotonic() - start
        if self._failing:
            logger.info("%s upstream recovered after %.2fs", self.name, elapsed)
            self._failing = False
        logger.debug("%s fetched %s in %.3fs (status=%s)", self.name, redact_url(self.url), elapsed, status)
        return FetchResult.success(payload, status=status, elapsed=elapsed)

    def _failed(self, message: str, status: Optional[int], start: float) -> FetchResult:
        self._failing = True
        warn_once_per(
            FAILURE_LOG_INTERVAL,
            f"memefeed.fetch:{self.name}",
            "%s fetch from %s failed: %s",
            self.name,
            redact_url(self.url),
            message,
            logger=logger,
        )
        return FetchResult.failure(message, status=status, elapsed=time.monotonic() - start)


__all__ = ["UpstreamFetcher", "FAILURE_LOG_INTERVAL"]
