from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Callable, Dict, Optional, Sequence
from urllib.parse import urlsplit

import aiohttp

from ..http import HTTPError
from ..logging_utils import configure_logging
from .reducer import DRIP_INTERVAL, FeedReducer
from .sse import SSEEvent, SSEParser
from .symbol_cache import SymbolCache, default_cache_path

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 3.0
SNAPSHOT_EVENTS = frozenset({"init", "update"})


class FeedSubscription:
    """Consume a feed's SSE stream into a :class:`FeedReducer`.

    Behaves like a browser ``EventSource``: it reconnects after
    ``reconnect_delay`` seconds (or the server's ``retry:`` hint) whenever
    the connection fails or ends, and reports each failure to ``on_error``.
    A second task drips one queued record into view every
    ``drip_interval`` seconds.
    """

    def __init__(
        self,
        url: str,
        reducer: FeedReducer | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        drip_interval: float = DRIP_INTERVAL,
        headers: Dict[str, str] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        on_event: Callable[[SSEEvent], None] | None = None,
    ) -> None:
        self.url = url
        self.reducer = reducer or FeedReducer()
        self.reconnect_delay = reconnect_delay
        self.drip_interval = drip_interval
        self.headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **(headers or {})}
        self.on_error = on_error
        self.on_event = on_event
        self._session = session
        self._owns_session = session is None
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False
        self.connections = 0
        self.events = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> "FeedSubscription":
        if self._tasks or self._closed:
            return self
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._listen(), name=f"sse:{self.url}"),
            loop.create_task(self._drip_loop(), name=f"drip:{self.url}"),
        ]
        return self

    def close(self) -> None:
        """Stop synchronously: no reducer transition happens after this returns."""

        if self._closed:
            return
        self._closed = True
        self.reducer.teardown()
        for task in self._tasks:
            task.cancel()

    async def aclose(self) -> None:
        self.close()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "FeedSubscription":
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _listen(self) -> None:
        while not self._closed:
            try:
                await self._consume()
                error: Exception = ConnectionError("stream closed by server")
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, HTTPError, ConnectionError) as exc:
                error = exc
            except Exception as exc:
                logger.exception("stream %s consumer failed", self.url)
                error = exc
            if self._closed:
                break
            self._report(error)
            await asyncio.sleep(self.reconnect_delay)

    async def _consume(self) -> None:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=10)
        async with session.get(self.url, headers=self.headers, timeout=timeout) as resp:
            if resp.status != 200:
                raise HTTPError(resp.status, f"HTTP {resp.status} from {self.url}")
            self.connections += 1
            logger.debug("connected to %s", self.url)
            parser = SSEParser()
            async for chunk in resp.content.iter_any():
                for event in parser.feed(chunk):
                    self._dispatch(event)
                if parser.retry is not None:
                    self.reconnect_delay = parser.retry / 1000.0
                if self._closed:
                    return

    def _dispatch(self, event: SSEEvent) -> None:
        if self._closed or event.event not in SNAPSHOT_EVENTS:
            return
        self.events += 1
        self.reducer.handle_message(event.data)
        callback = self.on_event
        if callback is not None:
            try:
                callback(event)
            except Exception:
                logger.exception("on_event callback failed for %s", self.url)

    async def _drip_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.drip_interval)
            self.reducer.drip()

    def _report(self, exc: Exception) -> None:
        logger.warning("stream %s interrupted: %s; retrying in %.1fs", self.url, exc, self.reconnect_delay)
        callback = self.on_error
        if callback is not None:
            try:
                callback(exc)
            except Exception:
                logger.exception("on_error callback failed for %s", self.url)


def _parse_cli_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tail a memefeed SSE stream and print the visible tokens.")
    parser.add_argument("url", help="Stream URL, e.g. http://127.0.0.1:5000/api/gmgn/tokens/stream")
    parser.add_argument("--limit", type=int, default=10, help="Rows to print per update (default: %(default)s)")
    parser.add_argument("--drip", type=float, default=DRIP_INTERVAL, help="Drip interval in seconds")
    parser.add_argument("--cache", default=None, help="Symbol cache file (default: per-feed file in the cache dir)")
    parser.add_argument("--no-cache", action="store_true", help="Do not persist the symbol cache")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


def _render(reducer: FeedReducer, limit: int) -> str:
    rows = []
    for token in reducer.visible[:limit]:
        price = token.get("usdPrice")
        price_text = f"{price:.8g}" if isinstance(price, (int, float)) else "-"
        rows.append(f"  {token.get('symbol') or '?':<12} {price_text:>14}  {token['id']}")
    header = f"visible={len(reducer.visible)} queued={len(reducer.queued)}"
    if reducer.is_stale:
        header += f" (stale: {reducer.error})"
    return "\n".join([header, *rows])


async def _watch(args: argparse.Namespace) -> None:
    cache: Optional[SymbolCache] = None
    if not args.no_cache:
        feed = urlsplit(args.url).path.strip("/").removesuffix("/stream").replace("/", "-") or "feed"
        cache = SymbolCache(args.cache or default_cache_path(feed))
        cache.load()

    def _print(reducer: FeedReducer) -> None:
        print(_render(reducer, args.limit), flush=True)

    reducer = FeedReducer(symbol_cache=cache, on_change=_print)
    subscription = FeedSubscription(args.url, reducer, drip_interval=args.drip)
    try:
        async with subscription:
            while True:
                await asyncio.sleep(30)
                if cache is not None:
                    cache.flush()
    finally:
        if cache is not None:
            cache.flush()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    configure_logging(level=args.log_level)
    try:
        asyncio.run(_watch(args))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main(sys.argv[1:]))
