from __future__ import annotations

import asyncio
from typing import Any, Iterator

import pytest

from memefeed import http
from memefeed.logging_utils import reset_warn_once_cache
from memefeed.models import FetchResult
from memefeed.runtime import EventLoopThread


@pytest.fixture(autouse=True)
def _reset_module_state() -> Iterator[None]:
    reset_warn_once_cache()
    http.reset_host_controllers()
    yield
    reset_warn_once_cache()
    http.reset_host_controllers()


@pytest.fixture
def runtime() -> Iterator[EventLoopThread]:
    loop_thread = EventLoopThread(name="test-loop")
    loop_thread.start()
    try:
        yield loop_thread
    finally:
        loop_thread.stop()


class ScriptedFetcher:
    """Fetcher double returning queued results, then repeating the last one."""

    def __init__(self, *results: FetchResult, delay: float = 0.0) -> None:
        self.results = list(results)
        self.delay = delay
        self.calls = 0

    def push(self, result: FetchResult) -> None:
        self.results.append(result)

    async def fetch(self) -> FetchResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.results) > 1:
            return self.results.pop(0)
        if self.results:
            return self.results[0]
        return FetchResult.failure("no scripted result")


def ok(payload: Any) -> FetchResult:
    return FetchResult.success(payload, status=200)


def failed(message: str = "boom") -> FetchResult:
    return FetchResult.failure(message)


@pytest.fixture
def scripted_fetcher():
    return ScriptedFetcher
