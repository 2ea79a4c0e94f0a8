from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .models import format_timestamp
from .runtime import EventLoopThread

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[Any]]
_Handle = Union["asyncio.Task[None]", "concurrent.futures.Future[None]"]


class PollScheduler:
    """Invoke ``tick`` every ``interval`` seconds on an asyncio loop.

    The first tick runs immediately.  A tick never overlaps the previous
    one: when the previous tick is still in flight at the next deadline the
    new tick is skipped and counted in :attr:`skipped_ticks`.

    With a ``runtime`` the loop runs on that :class:`EventLoopThread` and
    :meth:`start`/:meth:`stop` may be called from any thread; without one
    they must be called from a running event loop.
    """

    def __init__(
        self,
        name: str,
        tick: Tick,
        interval: float,
        runtime: EventLoopThread | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = float(interval)
        self.runtime = runtime
        self._tick = tick
        self._lock = threading.Lock()
        self._handle: Optional[_Handle] = None
        self._inflight: Optional[asyncio.Task[Any]] = None
        self.ticks = 0
        self.skipped_ticks = 0
        self.failures = 0
        self.last_tick_at: Optional[float] = None
        self.last_tick_duration: Optional[float] = None
        self.started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        handle = self._handle
        return handle is not None and not handle.done()

    @property
    def in_flight(self) -> bool:
        task = self._inflight
        return task is not None and not task.done()

    def start(self) -> bool:
        """Start polling.  Returns ``False`` when already running."""

        with self._lock:
            if self.running:
                return False
            if self.runtime is not None:
                self._handle = self.runtime.submit(self._run())
            else:
                self._handle = asyncio.get_running_loop().create_task(self._run(), name=f"poll:{self.name}")
            self.started_at = time.time()
        logger.info("%s polling started (every %.1fs)", self.name, self.interval)
        return True

    def stop(self) -> bool:
        """Cancel the poll loop and any in-flight tick.  Returns ``False`` when idle."""

        with self._lock:
            handle = self._handle
            self._handle = None
            if handle is None or handle.done():
                return False
            handle.cancel()
        logger.info("%s polling stopped", self.name)
        return True

    async def run_once(self) -> bool:
        """Run one tick now.  Returns ``False`` if a tick is already in flight."""

        if self.in_flight:
            self.skipped_ticks += 1
            return False
        task = asyncio.get_running_loop().create_task(self._guarded_tick())
        self._inflight = task
        await task
        return True

    async def _guarded_tick(self) -> None:
        started = time.monotonic()
        self.last_tick_at = time.time()
        try:
            await self._tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("%s poll tick failed", self.name)
        finally:
            self.ticks += 1
            self.last_tick_duration = time.monotonic() - started

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        try:
            while True:
                if self.in_flight:
                    self.skipped_ticks += 1
                    logger.debug("%s tick skipped; previous tick still running", self.name)
                else:
                    self._inflight = loop.create_task(self._guarded_tick())
                deadline += self.interval
                delay = deadline - loop.time()
                if delay < 0:
                    deadline = loop.time()
                    delay = 0.0
                await asyncio.sleep(delay)
        finally:
            task = self._inflight
            if task is not None and not task.done():
                task.cancel()

    def status(self) -> Dict[str, Any]:
        def _ts(value: Optional[float]) -> Optional[str]:
            if value is None:
                return None
            return format_timestamp(datetime.fromtimestamp(value, tz=timezone.utc))

        return {
            "isPolling": self.running,
            "interval": self.interval,
            "ticks": self.ticks,
            "skippedTicks": self.skipped_ticks,
            "failedTicks": self.failures,
            "inFlight": self.in_flight,
            "lastTickAt": _ts(self.last_tick_at),
            "lastTickDuration": self.last_tick_duration,
            "startedAt": _ts(self.started_at),
        }


__all__ = ["PollScheduler"]
