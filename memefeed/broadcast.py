from __future__ import annotations

import itertools
import logging
import threading
import time
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Set

from .jsonutil import dumps

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keep-alive\n\n"

SSE_HEADERS: Mapping[str, str] = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}

_CLOSE = object()
_ids = itertools.count(1)


def format_sse(event: str, data: str, *, retry: Optional[int] = None, event_id: Optional[str] = None) -> str:
    """Render one Server-Sent-Events frame.

    Multi-line ``data`` is split over several ``data:`` lines as the SSE
    grammar requires.
    """

    lines = []
    if retry is not None:
        lines.append(f"retry: {int(retry)}")
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    for line in data.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


class Subscriber:
    """One open SSE connection and its pending frames."""

    __slots__ = ("id", "queue", "connected_at", "closed")

    def __init__(self, maxsize: int) -> None:
        self.id = next(_ids)
        self.queue: Queue[Any] = Queue(maxsize=maxsize)
        self.connected_at = time.time()
        self.closed = False

    def offer(self, frame: str) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(frame)
        except Full:
            return False
        return True

    def close(self) -> None:
        """Mark closed and wake the stream consumer."""

        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self.queue.put_nowait(_CLOSE)
                return
            except Full:
                try:
                    self.queue.get_nowait()
                except Empty:
                    pass


class BroadcastHub:
    """Fan one feed's snapshot out to every connected SSE client.

    ``payload_source`` returns the current wire payload.  Each change is
    serialized once and the same frame is queued for every subscriber.
    Subscribers are served by WSGI worker threads blocking on their queue,
    while :meth:`notify` is called from the poll loop thread.
    """

    def __init__(
        self,
        name: str,
        payload_source: Callable[[], Dict[str, Any]],
        *,
        keepalive: float = 15.0,
        queue_size: int = 64,
        retry_ms: Optional[int] = 3000,
    ) -> None:
        self.name = name
        self.keepalive = keepalive
        self.queue_size = queue_size
        self.retry_ms = retry_ms
        self._source = payload_source
        self._lock = threading.Lock()
        self._subscribers: Set[Subscriber] = set()
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscriber:
        """Register a subscriber whose first frame is ``init``.

        The ``init`` frame is queued under the hub lock, before any
        ``update`` produced by a concurrent :meth:`notify`.
        """

        subscriber = Subscriber(self.queue_size)
        with self._lock:
            subscriber.offer(format_sse("init", dumps(self._source()), retry=self.retry_ms))
            self._subscribers.add(subscriber)
            count = len(self._subscribers)
        logger.debug("%s: subscriber %d connected (%d open)", self.name, subscriber.id, count)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber not in self._subscribers:
                return
            self._subscribers.discard(subscriber)
            count = len(self._subscribers)
        subscriber.closed = True
        logger.debug("%s: subscriber %d disconnected (%d open)", self.name, subscriber.id, count)

    def notify(self, event: str = "update") -> int:
        """Queue the current payload for every subscriber.

        Subscribers whose queue is full or that are already closed are
        removed and closed.  Returns the number of successful deliveries.
        """

        delivered = 0
        stale: list[Subscriber] = []
        with self._lock:
            frame = format_sse(event, dumps(self._source()))
            for subscriber in list(self._subscribers):
                if subscriber.offer(frame):
                    delivered += 1
                else:
                    stale.append(subscriber)
            for subscriber in stale:
                self._subscribers.discard(subscriber)
            self.dropped += len(stale)
        for subscriber in stale:
            subscriber.close()
        if stale:
            logger.warning(
                "%s: dropped %d slow subscriber(s)",
                self.name,
                len(stale),
                extra={"feed": self.name, "delivered": delivered},
            )
        return delivered

    def stream(self, subscriber: Subscriber) -> Iterator[str]:
        """Yield SSE frames for ``subscriber`` until it is closed.

        A ``: keep-alive`` comment is yielded after ``keepalive`` idle
        seconds.  Closing the generator (client disconnect) unsubscribes.
        """

        try:
            while not subscriber.closed or not subscriber.queue.empty():
                try:
                    item = subscriber.queue.get(timeout=self.keepalive)
                except Empty:
                    yield KEEPALIVE_FRAME
                    continue
                if item is _CLOSE:
                    break
                yield item
        finally:
            self.unsubscribe(subscriber)

    def handle_stream(self) -> Iterator[str]:
        """Frame generator for a streaming response.

        The subscription is made on first iteration, so a response that is
        never iterated leaves nothing registered.
        """

        yield from self.stream(self.subscribe())

    def close_all(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscriber in subscribers:
            subscriber.close()


__all__ = [
    "BroadcastHub",
    "Subscriber",
    "format_sse",
    "KEEPALIVE_FRAME",
    "SSE_HEADERS",
]
