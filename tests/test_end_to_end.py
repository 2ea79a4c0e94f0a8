import asyncio

from conftest import ScriptedFetcher, failed, ok
from memefeed.client import FeedReducer, FeedSubscription
from memefeed.config import default_config
from memefeed.server import FeedServer
from memefeed.service import build_services


def _ids(records):
    return [r["id"] for r in records]


def test_poll_stream_and_drip(runtime):
    fetcher = ScriptedFetcher(
        ok({"tokens": [{"id": "m1", "symbol": "AAA"}, {"id": "m2", "symbol": "BBB"}]}),
        ok({"tokens": [{"id": "m1", "symbol": "AAA", "usdPrice": 1.23}, {"id": "m3", "symbol": "CCC"}]}),
        failed("HTTP 503: unavailable"),
    )
    services = build_services(default_config(), runtime, fetchers={"jupiter_recent": fetcher})
    service = services.get("jupiter_recent")
    server = FeedServer(services, host="127.0.0.1", port=0)
    server.start()

    async def run():
        events: asyncio.Queue = asyncio.Queue()
        reducer = FeedReducer()
        subscription = FeedSubscription(
            f"{server.url}/api/jupiter/recent/stream",
            reducer,
            drip_interval=3600,
            on_event=events.put_nowait,
        )

        async def next_event():
            return await asyncio.wait_for(events.get(), timeout=5)

        assert await asyncio.to_thread(service.refresh, 5) is True

        async with subscription:
            event = await next_event()
            assert event.event == "init"
            assert _ids(reducer.visible) == ["m1"]
            assert _ids(reducer.queued) == ["m2"]

            assert reducer.drip()["id"] == "m2"
            assert _ids(reducer.visible) == ["m2", "m1"]

            await asyncio.to_thread(service.refresh, 5)
            event = await next_event()
            assert event.event == "update"
            m1 = next(r for r in reducer.visible if r["id"] == "m1")
            assert m1["symbol"] == "AAA"
            assert m1["usdPrice"] == 1.23
            assert _ids(reducer.queued) == ["m3"]

            assert reducer.drip()["id"] == "m3"
            assert _ids(reducer.visible) == ["m3", "m2", "m1"]
            assert reducer.queued == []

            await asyncio.to_thread(service.refresh, 5)
            await next_event()
            assert reducer.is_stale
            assert reducer.error == "HTTP 503: unavailable"
            assert _ids(reducer.visible) == ["m3", "m2", "m1"]

        assert subscription.closed
        assert subscription.connections == 1
        assert reducer.drip() is None

    try:
        asyncio.run(run())
    finally:
        server.stop()
        services.stop_all()

    assert fetcher.calls == 3
