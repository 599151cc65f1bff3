import asyncio
import pytest

from usage_analytics.client import insert
from usage_analytics.config import Settings
from usage_analytics.datasets import API_REQUESTS, RATELIMITS, VERIFICATIONS
from usage_analytics.errors import CompilationError, ValidationError
from usage_analytics.pager import CursorPager
from usage_analytics.schemas import RatelimitDecision, Verification

T0 = 1_770_000_000_000

def decision(rid, t, identifier="u1", passed=True, latency=1.0, namespace_id="ns_1"):
    return RatelimitDecision(request_id=rid, time=t, workspace_id="ws_1", namespace_id=namespace_id,
                             identifier=identifier, passed=passed, latency=latency)

def load(store, events):
    asyncio.run(insert(store, "ratelimits_raw_v2", RatelimitDecision)(events))

def verification(rid, t, key_id="k1", outcome="VALID", tags=()):
    return Verification(request_id=rid, time=t, workspace_id="ws_1", key_space_id="ks_1",
                        key_id=key_id, outcome=outcome, tags=list(tags))

def load_verifications(store, events):
    asyncio.run(insert(store, "key_verifications_raw_v2", Verification)(events))

KS = {"key_space_id": "ks_1"}

def request(**kw):
    req = {"workspace_id": "ws_1", "scope": {"namespace_id": "ns_1"},
           "start_time": T0, "end_time": T0 + 3_600_000, "limit": 2}
    req.update(kw)
    return req

def walk(pager, **kw):
    seen, cursor, pages = [], None, 0
    while True:
        page = asyncio.run(pager.page(request(cursor=cursor, **kw)))
        seen.extend((r.time, r.request_id) for r in page.items)
        pages += 1
        if page.next_cursor is None:
            return seen, pages
        cursor = page.next_cursor.model_dump()

def test_pages_descend_without_gaps_or_duplicates(store):
    load(store, [decision("r1", T0 + 1), decision("r3", T0 + 2), decision("r2", T0 + 2),
                 decision("r4", T0 + 3), decision("r5", T0 + 4)])
    seen, pages = walk(CursorPager(store, RATELIMITS))
    assert seen == [(T0 + 4, "r5"), (T0 + 3, "r4"), (T0 + 2, "r3"), (T0 + 2, "r2"), (T0 + 1, "r1")]
    assert pages == 3

def test_full_last_page_then_empty_page(store):
    load(store, [decision(f"r{i}", T0 + i) for i in range(4)])
    seen, pages = walk(CursorPager(store, RATELIMITS))
    assert len(seen) == 4
    assert pages == 3

def test_explicit_time_asc(store):
    load(store, [decision(f"r{i}", T0 + i) for i in range(3)])
    seen, _ = walk(CursorPager(store, RATELIMITS), sorts=[{"column": "time", "direction": "asc"}])
    assert [rid for _, rid in seen] == ["r0", "r1", "r2"]

def test_newer_inserts_do_not_shift_later_pages(store):
    load(store, [decision(f"r{i}", T0 + i) for i in range(4)])
    pager = CursorPager(store, RATELIMITS)
    first = asyncio.run(pager.page(request()))
    load(store, [decision("late", T0 + 100)])
    second = asyncio.run(pager.page(request(cursor=first.next_cursor.model_dump())))
    assert [r.request_id for r in first.items] == ["r3", "r2"]
    assert [r.request_id for r in second.items] == ["r1", "r0"]

def test_rows_inserted_between_fetched_pages_are_not_repeated(store):
    load(store, [decision(f"r{i}", T0 + 10 * i) for i in range(6)])
    pager = CursorPager(store, RATELIMITS)
    first = asyncio.run(pager.page(request()))
    second = asyncio.run(pager.page(request(cursor=first.next_cursor.model_dump())))
    # lands between the last row of page 1 and the first row of page 2
    load(store, [decision("mid", T0 + 35)])
    third = asyncio.run(pager.page(request(cursor=second.next_cursor.model_dump())))
    fourth = asyncio.run(pager.page(request(cursor=third.next_cursor.model_dump())))

    seen = [r.request_id for p in (first, second, third, fourth) for r in p.items]
    assert seen == ["r5", "r4", "r3", "r2", "r1", "r0"]
    assert len(set(seen)) == len(seen)
    assert fourth.next_cursor is None

def test_filters_apply_to_logs(store):
    load(store, [decision("a", T0 + 1, passed=False), decision("b", T0 + 2), decision("c", T0 + 3, identifier="u2")])
    page = asyncio.run(CursorPager(store, RATELIMITS).page(request(limit=10, filters=[
        {"field": "status", "operator": "is", "value": "passed"},
        {"field": "identifier", "operator": "is", "value": "u1"},
    ])))
    assert [r.request_id for r in page.items] == ["b"]
    assert page.next_cursor is None

def test_invalid_page_requests(recorder):
    pager = CursorPager(recorder, RATELIMITS, Settings(max_page_size=100))
    with pytest.raises(ValidationError):
        asyncio.run(pager.page(request(limit=101)))
    with pytest.raises(ValidationError):
        asyncio.run(pager.page(request(limit=0)))
    with pytest.raises(ValidationError):
        asyncio.run(pager.page(request(cursor={"time": T0})))
    with pytest.raises(ValidationError):
        asyncio.run(pager.page(request(sorts=[{"column": "identifier", "direction": "asc"}])))
    assert recorder.calls == []

def test_cursor_predicate_sql(recorder):
    asyncio.run(CursorPager(recorder, RATELIMITS).page(request(cursor={"time": T0, "request_id": "r9"})))
    [(sql, params)] = recorder.calls
    assert "(time < $cursor_time::BIGINT OR (time = $cursor_time::BIGINT AND request_id < $cursor_request_id::VARCHAR))" in sql
    assert "ORDER BY time DESC, request_id DESC" in sql
    assert params["cursor_request_id"] == "r9"
    assert params["limit"] == 2

def test_overview_aggregates_per_identifier(store):
    load(store, [
        decision("a1", T0 + 1, latency=10.0),
        decision("a2", T0 + 2, latency=20.0),
        decision("a3", T0 + 3, passed=False, latency=30.0),
        decision("b1", T0 + 4, identifier="u2", passed=False, latency=5.0),
    ])
    page = asyncio.run(CursorPager(store, RATELIMITS).overview(request(limit=10)))
    by_id = {r.identifier: r for r in page.items}
    assert by_id["u1"].passed_count == 2
    assert by_id["u1"].blocked_count == 1
    assert by_id["u1"].avg_latency == pytest.approx(20.0)
    assert by_id["u1"].request_id == "a3"
    assert by_id["u2"].blocked_count == 1
    assert [r.identifier for r in page.items] == ["u2", "u1"]

def test_overview_derived_sort_forces_ascending(store, recorder):
    load(store, [decision("a1", T0 + 1, latency=10.0), decision("b1", T0 + 2, identifier="u2", latency=50.0)])
    sorts = [{"column": "avg_latency", "direction": "desc"}]
    page = asyncio.run(CursorPager(store, RATELIMITS).overview(request(limit=10, sorts=sorts)))
    assert [r.identifier for r in page.items] == ["u2", "u1"]

    asyncio.run(CursorPager(recorder, RATELIMITS).overview(request(sorts=sorts)))
    assert "ORDER BY time ASC, request_id ASC" in recorder.calls[0][0]

def test_overview_needs_a_keyed_dataset(recorder):
    with pytest.raises(CompilationError):
        asyncio.run(CursorPager(recorder, API_REQUESTS).overview(request(scope={})))
    assert recorder.calls == []

def test_overview_last_request_id_is_deterministic_on_time_ties(store):
    load(store, [decision("c", T0 + 1), decision("b", T0 + 5), decision("a", T0 + 5)])
    pager = CursorPager(store, RATELIMITS)
    pages = [asyncio.run(pager.overview(request(limit=10))) for _ in range(3)]
    assert {(p.items[0].time, p.items[0].request_id) for p in pages} == {(T0 + 5, "b")}

def test_key_overview_aggregates_per_key(store):
    load_verifications(store, [
        verification("v1", T0 + 1, tags=["x"]),
        verification("v2", T0 + 2, outcome="EXPIRED"),
        verification("v3", T0 + 3, tags=["b", "a"]),
        verification("v4", T0 + 4, key_id="k2", outcome="RATE_LIMITED"),
        verification("v5", T0 + 5, key_id="k3", tags=["a"]),
    ])
    page = asyncio.run(CursorPager(store, VERIFICATIONS).overview(request(scope=KS, limit=10, filters=[
        {"field": "keyId", "operator": "is", "value": "k1"},
        {"field": "keyId", "operator": "is", "value": "k2"},
    ])))
    assert [r.key_id for r in page.items] == ["k2", "k1"]
    k2, k1 = page.items
    assert (k1.time, k1.request_id, k1.valid_count, k1.error_count, k1.tags) == (T0 + 3, "v3", 2, 1, ["a", "b"])
    assert (k2.valid_count, k2.error_count, k2.tags) == (0, 1, [])
    assert page.next_cursor is None

def test_key_overview_derived_sort_forces_ascending(recorder):
    sorts = [{"column": "invalid", "direction": "desc"}]
    asyncio.run(CursorPager(recorder, VERIFICATIONS).overview(
        request(scope=KS, sorts=sorts, cursor={"time": T0, "request_id": "v9"})))
    [(sql, params)] = recorder.calls
    assert "PARTITION BY key_id ORDER BY time DESC, request_id DESC" in sql
    assert "(time > $cursor_time::BIGINT OR (time = $cursor_time::BIGINT AND request_id > $cursor_request_id::VARCHAR))" in sql
    assert "ORDER BY time ASC, request_id ASC" in sql
    assert params["key_space_id"] == "ks_1"

    with pytest.raises(ValidationError):
        asyncio.run(CursorPager(recorder, VERIFICATIONS).overview(request(scope=KS, sorts=[{"column": "passed"}])))

def test_key_overview_pages_past_the_first_page(store):
    # key k<i> has i + 1 valid verifications, the last one at T0 + 10 * i
    load_verifications(store, [
        verification(f"k{i}-{j}", T0 + 10 * i - j, key_id=f"k{i}")
        for i in range(5) for j in range(i + 1)
    ])
    pager = CursorPager(store, VERIFICATIONS)
    sorts = [{"column": "valid", "direction": "desc"}]
    pages, cursor = [], None
    while True:
        page = asyncio.run(pager.overview(request(scope=KS, sorts=sorts, cursor=cursor)))
        pages.append([(r.key_id, r.valid_count) for r in page.items])
        if page.next_cursor is None:
            break
        cursor = page.next_cursor.model_dump()
    assert pages == [[("k1", 2), ("k0", 1)], [("k3", 4), ("k2", 3)], [("k4", 5)]]
