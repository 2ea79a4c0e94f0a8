import json

from memefeed.client import symbol_cache as symbol_cache_mod
from memefeed.client.symbol_cache import SymbolCache


def test_remember_and_enrich():
    cache = SymbolCache()
    cache.remember({"id": "m1", "symbol": "AAA", "name": "Alpha", "usdPrice": 1})
    assert cache.get("m1") == {"symbol": "AAA", "name": "Alpha"}
    enriched = cache.enrich({"id": "m1", "usdPrice": 2})
    assert enriched == {"id": "m1", "usdPrice": 2, "symbol": "AAA", "name": "Alpha"}
    assert cache.enrich({"id": "unknown"}) == {"id": "unknown"}


def test_existing_fields_are_not_overwritten():
    cache = SymbolCache()
    cache.remember({"id": "m1", "symbol": "OLD"})
    assert cache.enrich({"id": "m1", "symbol": "NEW"})["symbol"] == "NEW"


def test_lru_bound():
    cache = SymbolCache(maxsize=2)
    for i in range(3):
        cache.remember({"id": f"m{i}", "symbol": f"S{i}"})
    assert len(cache) == 2
    assert cache.get("m0") is None


def test_flush_and_load_round_trip(tmp_path):
    path = tmp_path / "nested" / "symbols.json"
    cache = SymbolCache(path)
    cache.remember({"id": "m1", "symbol": "AAA", "icon": "a.png"})
    assert cache.flush() is True
    assert cache.flush() is False
    assert json.loads(path.read_text()) == {"m1": {"icon": "a.png", "symbol": "AAA"}}

    reloaded = SymbolCache(path)
    assert reloaded.load() == 1
    assert reloaded.get("m1") == {"symbol": "AAA", "icon": "a.png"}


def test_corrupt_file_is_ignored(tmp_path, caplog):
    path = tmp_path / "symbols.json"
    path.write_text("{not json")
    cache = SymbolCache(path)
    with caplog.at_level("WARNING"):
        assert cache.load() == 0
    assert "unreadable symbol cache" in caplog.text


def test_default_path_uses_cache_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("MEMEFEED_CACHE_DIR", str(tmp_path))
    assert symbol_cache_mod.default_cache_path("gmgn") == tmp_path / "symbols-gmgn.json"
