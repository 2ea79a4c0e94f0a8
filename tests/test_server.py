import asyncio
import json

import pytest

from conftest import ScriptedFetcher, ok
from memefeed import server as server_mod
from memefeed.config import default_config
from memefeed.server import create_app
from memefeed.service import build_services


@pytest.fixture
def registry():
    config = default_config()
    fetchers = {feed.name: ScriptedFetcher(ok([{"id": "m1", "symbol": "AAA"}])) for feed in config.feeds}
    services = build_services(config, fetchers=fetchers)
    yield services
    for service in services:
        service.hub.close_all()


@pytest.fixture
def client(registry):
    app = create_app(registry)
    app.testing = True
    return app.test_client()


def _first_frame(resp):
    chunk = next(iter(resp.response))
    return chunk.decode() if isinstance(chunk, bytes) else chunk


@pytest.mark.parametrize("path", ["/api/jupiter/recent", "/api/jupiter/top-trending", "/api/gmgn/tokens"])
def test_snapshot_endpoints_start_empty(client, path):
    resp = client.get(path)
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["tokens"] == []
    assert data["fetchedAt"] is None
    assert "error" not in data
    assert resp.headers["Cache-Control"] == "no-store"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_snapshot_after_poll(client, registry):
    asyncio.run(registry.get("jupiter_recent").poll_once())
    data = client.get("/api/jupiter/recent").get_json()
    assert [t["id"] for t in data["tokens"]] == ["m1"]
    assert data["fetchedAt"].endswith("Z")


def test_top_trending_includes_timeframe(client):
    data = client.get("/api/jupiter/top-trending").get_json()
    assert data["timeframe"] == "1h"
    assert data["limit"] == 50


def test_stream_sends_init_then_unsubscribes(client, registry):
    hub = registry.get("gmgn").hub
    resp = client.get("/api/gmgn/tokens/stream", buffered=False)
    try:
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        assert resp.headers["Cache-Control"] == "no-cache, no-transform"
        assert resp.headers["X-Accel-Buffering"] == "no"
        frame = _first_frame(resp)
        assert "event: init" in frame
        data_line = next(line for line in frame.splitlines() if line.startswith("data: "))
        assert json.loads(data_line[len("data: "):]) == {"tokens": [], "fetchedAt": None}
        assert hub.subscriber_count == 1
    finally:
        resp.close()
    assert hub.subscriber_count == 0


def test_admin_polling_lifecycle(client, registry, monkeypatch):
    service = registry.get("gmgn")
    calls = []
    monkeypatch.setattr(service, "start", lambda: calls.append("start") or True)
    monkeypatch.setattr(service, "stop", lambda: calls.append("stop") or True)

    resp = client.post("/api/gmgn/polling/start")
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["message"] == "Polling started"
    assert body["name"] == "gmgn"

    body = client.post("/api/gmgn/polling/stop").get_json()
    assert body["message"] == "Polling stopped"
    assert calls == ["start", "stop"]

    status = client.get("/api/gmgn/polling/status").get_json()
    assert status["name"] == "gmgn"
    assert "isPolling" in status


def test_admin_cache_clear(client, registry):
    service = registry.get("gmgn")
    asyncio.run(service.poll_once())
    body = client.post("/api/gmgn/cache/clear").get_json()
    assert body["success"] is True
    assert body["tokenCount"] == 0
    assert body["fetchedAt"] is None


def test_jupiter_admin_prefix(client):
    resp = client.post("/api/jupiter/recent/cache/clear")
    assert resp.status_code == 200
    assert client.get("/api/jupiter/top-trending/polling/status").status_code == 200


def test_admin_get_not_allowed(client):
    assert client.get("/api/gmgn/polling/start").status_code == 405


def test_unknown_feed_returns_404(client):
    resp = client.get("/api/feeds/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"success": False, "message": "unknown feed 'nope'"}
    assert client.post("/api/feeds/nope/cache/clear").status_code == 404


def test_generic_feed_admin(client, registry):
    resp = client.post("/api/feeds/jupiter_recent/polling/bogus")
    assert resp.status_code == 404
    status = client.get("/api/feeds/jupiter_recent").get_json()
    assert status["path"] == "/api/jupiter/recent"


def test_feeds_and_health(client):
    feeds = client.get("/api/feeds").get_json()["feeds"]
    assert [f["name"] for f in feeds] == ["jupiter_recent", "jupiter_top_trending", "gmgn"]
    health = client.get("/health").get_json()
    assert health["ok"] is True
    assert set(health["feeds"]) == {"jupiter_recent", "jupiter_top_trending", "gmgn"}
    assert health["feeds"]["gmgn"]["fetchedAt"] is None


def test_main_rejects_invalid_config(tmp_path, monkeypatch):
    bad = tmp_path / "bad.toml"
    bad.write_text("[server]\nport = -1\n")
    monkeypatch.setattr(server_mod, "configure_logging", lambda **kwargs: None)
    assert server_mod.main(["--config", str(bad)]) == 2
