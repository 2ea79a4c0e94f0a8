import threading
from functools import partial

import pytest

from memefeed.models import Snapshot
from memefeed.normalize import GMGN, JUPITER_RECENT, normalize_payload
from memefeed.snapshot import SnapshotStore, merge_tokens


def _store(policy="replace", max_tokens=500):
    provider = GMGN if policy == "merge" else JUPITER_RECENT
    return SnapshotStore(partial(normalize_payload, provider), policy=policy, max_tokens=max_tokens)


def test_new_store_is_empty():
    snap = _store().get_snapshot()
    assert snap.tokens == ()
    assert snap.fetched_at is None
    assert snap.error is None
    assert snap.to_payload() == {"tokens": [], "fetchedAt": None}


def test_replace_policy_swaps_tokens():
    store = _store()
    store.apply_result([{"id": "m1", "symbol": "AAA"}, {"id": "m2", "symbol": "BBB"}])
    snap = store.apply_result([{"id": "m3", "symbol": "CCC"}])
    assert [t["id"] for t in snap.tokens] == ["m3"]
    assert snap.fetched_at is not None
    assert store.version == 2


def test_failure_keeps_tokens_and_marks_stale():
    store = _store()
    first = store.apply_result([{"id": "m1", "symbol": "AAA"}])
    snap = store.apply_failure("HTTP 502")
    assert snap.tokens == first.tokens
    assert snap.fetched_at == first.fetched_at
    assert snap.error == "HTTP 502"
    assert snap.is_stale
    payload = snap.to_payload()
    assert payload["error"] == "HTTP 502"
    assert payload["fetchedAt"].endswith("Z")


def test_failure_before_any_data_is_not_stale():
    snap = _store().apply_failure("timeout")
    assert snap.error == "timeout"
    assert snap.fetched_at is None
    assert not snap.is_stale


def test_success_clears_error():
    store = _store()
    store.apply_failure("boom")
    snap = store.apply_result([{"id": "m1"}])
    assert snap.error is None
    assert "error" not in snap.to_payload()


def test_clear_resets_fetched_at():
    store = _store()
    store.apply_result([{"id": "m1"}])
    snap = store.clear()
    assert snap.tokens == ()
    assert snap.fetched_at is None
    assert snap.error is None


def test_merge_policy_updates_in_place_and_appends():
    store = _store("merge")
    store.apply_result([{"address": "m1", "symbol": "AAA"}, {"address": "m2", "symbol": "BBB"}])
    snap = store.apply_result([{"address": "m1", "symbol": "AAA", "usd_price": 1.23}, {"address": "m3", "symbol": "CCC"}])
    assert [t["id"] for t in snap.tokens] == ["m1", "m2", "m3"]
    assert snap.tokens[0]["usdPrice"] == 1.23
    assert snap.tokens[1]["symbol"] == "BBB"


def test_merge_policy_evicts_oldest_over_cap():
    store = _store("merge", max_tokens=3)
    store.apply_result([{"address": f"m{i}"} for i in range(3)])
    snap = store.apply_result([{"address": "m3"}, {"address": "m4"}])
    assert [t["id"] for t in snap.tokens] == ["m2", "m3", "m4"]


def test_merge_tokens_does_not_mutate_inputs():
    existing = ({"id": "a", "x": 1},)
    merged = merge_tokens(existing, [{"id": "a", "x": 2}], 10)
    assert merged == [{"id": "a", "x": 2}]
    assert existing[0]["x"] == 1


def test_snapshot_is_immutable():
    snap = Snapshot()
    with pytest.raises(Exception):
        snap.error = "x"  # type: ignore[misc]


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        SnapshotStore(lambda payload: [], policy="append")  # type: ignore[arg-type]


def test_concurrent_readers_never_see_partial_state():
    store = _store()
    batches = [[{"id": f"b{n}-{i}"} for i in range(50)] for n in range(20)]
    errors = []

    def reader():
        for _ in range(500):
            snap = store.get_snapshot()
            prefixes = {t["id"].split("-")[0] for t in snap.tokens}
            if len(prefixes) > 1:
                errors.append(prefixes)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for batch in batches:
        store.apply_result(batch)
    for t in threads:
        t.join()
    assert not errors
    assert len(store.get_snapshot().tokens) == 50
