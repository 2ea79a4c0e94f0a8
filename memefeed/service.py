from __future__ import annotations

import logging
from functools import partial
from typing import Any, Dict, Iterator, Optional

from .broadcast import BroadcastHub
from .config import AppConfig, FeedConfig, ServerConfig
from .errors import UnknownFeedError
from .fetcher import UpstreamFetcher
from .models import FetchResult, Snapshot, format_timestamp
from .normalize import normalize_payload
from .runtime import EventLoopThread
from .scheduler import PollScheduler
from .snapshot import SnapshotStore

logger = logging.getLogger(__name__)


class FeedService:
    """Fetcher, snapshot store, poll scheduler and broadcast hub of one feed."""

    def __init__(
        self,
        config: FeedConfig,
        *,
        server: ServerConfig | None = None,
        runtime: EventLoopThread | None = None,
        fetcher: Any | None = None,
    ) -> None:
        server = server or ServerConfig()
        self.config = config
        self.name = config.name
        self.runtime = runtime
        self.fetcher = fetcher if fetcher is not None else UpstreamFetcher(config)
        self.store = SnapshotStore(
            partial(normalize_payload, config.provider),
            policy=config.policy,
            max_tokens=config.max_tokens,
            name=config.name,
        )
        self.hub = BroadcastHub(
            config.name,
            self.snapshot_payload,
            keepalive=server.keepalive,
            queue_size=server.subscriber_queue,
            retry_ms=server.retry_ms,
        )
        self.scheduler = PollScheduler(config.name, self.poll_once, config.interval, runtime)
        self.last_result: Optional[FetchResult] = None

    async def poll_once(self) -> Snapshot:
        """Fetch, apply the outcome to the store and notify subscribers."""

        result = await self.fetcher.fetch()
        self.last_result = result
        if result.ok:
            try:
                snapshot = self.store.apply_result(result.payload)
            except Exception as exc:
                logger.exception("%s: could not apply upstream payload", self.name)
                snapshot = self.store.apply_failure(f"normalize failed: {exc}")
        else:
            snapshot = self.store.apply_failure(result.error or "upstream error")
        delivered = self.hub.notify()
        logger.debug(
            "%s poll: %d token(s), error=%s, delivered to %d",
            self.name,
            len(snapshot.tokens),
            snapshot.error,
            delivered,
        )
        return snapshot

    def snapshot_payload(self) -> Dict[str, Any]:
        return self.store.get_snapshot().to_payload(self.config.extra)

    def start(self) -> bool:
        return self.scheduler.start()

    def stop(self) -> bool:
        return self.scheduler.stop()

    def refresh(self, timeout: float | None = None) -> bool:
        """Run one poll now on the runtime loop, blocking until it completes."""

        if self.runtime is None:
            raise RuntimeError(f"{self.name}: no runtime to run the poll on")
        return self.runtime.call(self.scheduler.run_once(), timeout)

    def clear(self) -> Snapshot:
        """Forget all tokens and push the empty snapshot to subscribers."""

        snapshot = self.store.clear()
        self.hub.notify()
        return snapshot

    def shutdown(self) -> None:
        self.stop()
        self.hub.close_all()

    def status(self) -> Dict[str, Any]:
        snapshot = self.store.get_snapshot()
        status: Dict[str, Any] = {
            "name": self.name,
            "provider": self.config.provider,
            "policy": self.config.policy,
            "path": self.config.path,
            "enabled": self.config.enabled,
        }
        status.update(self.scheduler.status())
        status.update(
            {
                "tokenCount": len(snapshot.tokens),
                "fetchedAt": format_timestamp(snapshot.fetched_at),
                "error": snapshot.error,
                "isStale": snapshot.is_stale,
                "version": snapshot.version,
                "subscribers": self.hub.subscriber_count,
                "droppedSubscribers": self.hub.dropped,
            }
        )
        last = self.last_result
        if last is not None:
            status["lastFetch"] = {
                "ok": last.ok,
                "status": last.status,
                "elapsed": round(last.elapsed, 4),
                "at": format_timestamp(last.fetched_at),
            }
        return status


class FeedRegistry:
    """Ordered collection of :class:`FeedService` objects keyed by name."""

    def __init__(self, services: Dict[str, FeedService] | None = None) -> None:
        self._services: Dict[str, FeedService] = dict(services or {})

    def add(self, service: FeedService) -> None:
        if service.name in self._services:
            raise ValueError(f"duplicate feed {service.name!r}")
        self._services[service.name] = service

    def get(self, name: str) -> FeedService:
        try:
            return self._services[name]
        except KeyError:
            raise UnknownFeedError(name) from None

    def __iter__(self) -> Iterator[FeedService]:
        return iter(list(self._services.values()))

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def start_all(self) -> list[str]:
        started = []
        for service in self:
            if service.config.enabled and service.start():
                started.append(service.name)
        return started

    def stop_all(self) -> None:
        for service in self:
            service.shutdown()


def build_services(
    config: AppConfig,
    runtime: EventLoopThread | None = None,
    *,
    fetchers: Dict[str, Any] | None = None,
) -> FeedRegistry:
    """Create one :class:`FeedService` per configured feed.

    ``fetchers`` substitutes the upstream fetcher of named feeds.
    """

    registry = FeedRegistry()
    overrides = fetchers or {}
    for feed in config.feeds:
        registry.add(
            FeedService(feed, server=config.server, runtime=runtime, fetcher=overrides.get(feed.name))
        )
    return registry


__all__ = ["FeedService", "FeedRegistry", "build_services"]
