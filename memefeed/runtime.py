from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import threading
from queue import Empty, Queue
from typing import Any, Coroutine, Optional, TypeVar

from .http import close_session

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventLoopThread:
    """Run an asyncio event loop in a daemon thread.

    Poll schedulers live on this loop while Flask serves requests on its own
    worker threads.  Work is handed over with :meth:`submit`, which is safe
    to call from any thread.
    """

    def __init__(self, name: str = "memefeed-loop") -> None:
        self.name = name
        self.loop: asyncio.AbstractEventLoop | None = None
        self.thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        thread = self.thread
        return thread is not None and thread.is_alive() and self.loop is not None

    def start(self, timeout: float = 5.0) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self.running:
                assert self.loop is not None
                return self.loop
            ready: Queue[Any] = Queue(maxsize=1)

            def _run() -> None:
                loop = asyncio.new_event_loop()
                asyncio.set_event_loop(loop)
                self.loop = loop
                ready.put(loop)
                try:
                    loop.run_forever()
                finally:
                    self._close_loop(loop)

            thread = threading.Thread(target=_run, name=self.name, daemon=True)
            self.thread = thread
            thread.start()
            try:
                loop = ready.get(timeout=timeout)
            except Empty as exc:
                raise RuntimeError(f"{self.name}: event loop did not start") from exc
            logger.debug("%s started", self.name)
            return loop

    def _close_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            with contextlib.suppress(Exception):
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        with contextlib.suppress(Exception):
            loop.run_until_complete(close_session())
        with contextlib.suppress(Exception):
            loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
        self.loop = None

    def submit(self, coro: Coroutine[Any, Any, T]) -> "concurrent.futures.Future[T]":
        """Schedule ``coro`` on the loop and return a concurrent future."""

        loop = self.loop
        if loop is None or not self.running:
            coro.close()
            raise RuntimeError(f"{self.name} is not running")
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def call(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """Run ``coro`` on the loop and block until it finishes."""

        return self.submit(coro).result(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            loop = self.loop
            thread = self.thread
            if loop is None or thread is None:
                return
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("%s did not stop within %.1fs", self.name, timeout)
            self.thread = None
        logger.debug("%s stopped", self.name)


__all__ = ["EventLoopThread"]
