import json

import pytest

from memefeed.client.reducer import FeedReducer, ReducerState
from memefeed.client.symbol_cache import SymbolCache
from memefeed.errors import MalformedPayloadError


def snap(*tokens, error=None, fetched_at="2026-01-01T00:00:00.000Z"):
    payload = {"tokens": list(tokens), "fetchedAt": fetched_at}
    if error:
        payload["error"] = error
    return payload


def ids(records):
    return [r["id"] for r in records]


def _assert_invariants(reducer):
    visible_ids = ids(reducer.visible)
    queued_ids = ids(reducer.queued)
    assert len(visible_ids) == len(set(visible_ids))
    assert len(queued_ids) == len(set(queued_ids))
    assert not set(visible_ids) & set(queued_ids)
    assert len(visible_ids) <= reducer.max_visible
    assert len(queued_ids) <= reducer.max_queued


def test_first_snapshot_seeds_one_visible_rest_queued():
    reducer = FeedReducer()
    assert reducer.state is ReducerState.UNINITIALIZED
    reducer.apply_snapshot(snap({"id": "a"}, {"id": "b"}, {"id": "a"}, {"symbol": "noid"}, {"id": "c"}))
    assert reducer.state is ReducerState.SEEDED
    assert ids(reducer.visible) == ["a"]
    assert ids(reducer.queued) == ["b", "c"]
    assert reducer.fetched_at is not None


def test_empty_first_snapshot_seeds_nothing():
    reducer = FeedReducer()
    reducer.apply_snapshot(snap(fetched_at=None))
    assert reducer.visible == [] and reducer.queued == []
    reducer.apply_snapshot(snap({"id": "a"}))
    assert reducer.state is ReducerState.STEADY
    assert reducer.visible == []
    assert ids(reducer.queued) == ["a"]


def test_merge_updates_in_place_and_enqueues_new_ids():
    reducer = FeedReducer()
    reducer.apply_snapshot(snap({"id": "m1", "symbol": "AAA"}, {"id": "m2", "symbol": "BBB"}))
    reducer.apply_snapshot(snap({"id": "m1", "symbol": "AAA", "usdPrice": 1.23}, {"id": "m3", "symbol": "CCC"}))

    assert reducer.state is ReducerState.STEADY
    assert reducer.visible == [{"id": "m1", "symbol": "AAA", "usdPrice": 1.23}]
    assert reducer.queued == [{"id": "m2", "symbol": "BBB"}, {"id": "m3", "symbol": "CCC"}]


def test_merge_never_reseeds_or_adds_to_visible():
    reducer = FeedReducer()
    reducer.apply_snapshot(snap({"id": "a"}))
    reducer.apply_snapshot(snap({"id": "x"}, {"id": "y"}))
    assert ids(reducer.visible) == ["a"]


def test_merge_is_idempotent():
    reducer = FeedReducer()
    reducer.apply_snapshot(snap({"id": "a"}, {"id": "b"}))
    update = snap({"id": "a", "usdPrice": 2}, {"id": "c"}, {"id": "d"})
    reducer.apply_snapshot(update)
    once = (reducer.visible, reducer.queued)
    reducer.apply_snapshot(update)
    assert (reducer.visible, reducer.queued) == once


def test_drip_moves_head_fifo():
    reducer = FeedReducer()
    reducer.apply_snapshot(snap({"id": "a"}, {"id": "b"}, {"id": "c"}))
    moved = reducer.drip()
    assert moved["id"] == "b"
    assert ids(reducer.visible) == ["b", "a"]
    assert ids(reducer.queued) == ["c"]
    assert reducer.drip()["id"] == "c"
    assert reducer.drip() is None
    assert ids(reducer.visible) == ["c", "b", "a"]


def test_drip_trims_visible():
    reducer = FeedReducer(max_visible=3)
    reducer.apply_snapshot(snap(*[{"id": f"t{i}"} for i in range(6)]))
    for _ in range(5):
        reducer.drip()
    assert ids(reducer.visible) == ["t5", "t4", "t3"]
    _assert_invariants(reducer)


def test_queue_is_bounded_and_keeps_oldest():
    reducer = FeedReducer(max_visible=2)
    assert reducer.max_queued == 6
    reducer.apply_snapshot(snap(*[{"id": f"s{i}"} for i in range(10)]))
    assert ids(reducer.queued) == [f"s{i}" for i in range(1, 7)]
    reducer.apply_snapshot(snap({"id": "new"}))
    assert "new" not in ids(reducer.queued)
    _assert_invariants(reducer)


def test_default_bounds():
    reducer = FeedReducer()
    reducer.apply_snapshot(snap(*[{"id": f"s{i}"} for i in range(1000)]))
    assert len(reducer.queued) == 600
    for _ in range(300):
        reducer.drip()
    assert len(reducer.visible) == 200
    _assert_invariants(reducer)


def test_queued_entries_merge_in_place():
    reducer = FeedReducer()
    reducer.apply_snapshot(snap({"id": "a"}, {"id": "b", "symbol": "B"}))
    reducer.apply_snapshot(snap({"id": "b", "usdPrice": 5}))
    assert reducer.queued == [{"id": "b", "symbol": "B", "usdPrice": 5}]


def test_invariants_hold_over_mixed_sequence():
    reducer = FeedReducer(max_visible=5)
    for round_ in range(20):
        batch = [{"id": f"t{(round_ * 3 + k) % 17}", "n": round_} for k in range(6)]
        reducer.apply_snapshot(snap(*batch))
        if round_ % 2:
            reducer.drip()
        _assert_invariants(reducer)


def test_error_and_staleness_follow_latest_snapshot():
    reducer = FeedReducer()
    reducer.apply_snapshot(snap({"id": "a"}, error="HTTP 500"))
    assert reducer.error == "HTTP 500"
    assert reducer.is_stale
    reducer.apply_snapshot(snap({"id": "a"}))
    assert reducer.error is None
    assert not reducer.is_stale
    assert reducer.last_updated is not None


@pytest.mark.parametrize(
    "raw",
    ["not json", json.dumps([1, 2]), json.dumps({"tokens": "nope"})],
)
def test_malformed_messages_are_reported_and_ignored(raw):
    errors = []
    reducer = FeedReducer(on_error=errors.append)
    reducer.handle_message(json.dumps(snap({"id": "a"}, {"id": "b"})))
    before = (reducer.visible, reducer.queued, reducer.state)

    assert reducer.handle_message(raw) is False

    assert (reducer.visible, reducer.queued, reducer.state) == before
    assert len(errors) == 1
    assert isinstance(errors[0], MalformedPayloadError)


def test_teardown_stops_all_transitions():
    changes = []
    reducer = FeedReducer(on_change=lambda r: changes.append(r.state))
    reducer.apply_snapshot(snap({"id": "a"}, {"id": "b"}))
    reducer.teardown()
    assert reducer.apply_snapshot(snap({"id": "c"})) is False
    assert reducer.drip() is None
    assert reducer.handle_message(json.dumps(snap({"id": "d"}))) is False
    assert ids(reducer.visible) == ["a"]
    assert ids(reducer.queued) == ["b"]
    assert changes == [ReducerState.SEEDED]


def test_symbol_cache_fills_missing_display_fields():
    cache = SymbolCache()
    reducer = FeedReducer(symbol_cache=cache)
    reducer.apply_snapshot(snap({"id": "a", "symbol": "AAA", "icon": "a.png"}, {"id": "b"}))
    reducer.apply_snapshot(snap({"id": "a", "symbol": "", "usdPrice": 1}))
    assert reducer.visible == [{"id": "a", "symbol": "AAA", "icon": "a.png", "usdPrice": 1}]
