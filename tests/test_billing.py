import asyncio
from datetime import datetime, timezone
import pytest

from usage_analytics.billing import RATELIMITS_TABLE, BillingAggregator
from usage_analytics.client import insert
from usage_analytics.errors import ValidationError
from usage_analytics.schemas import RatelimitDecision, Verification

def ms(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp()) * 1000

def seed(store):
    verifications = [
        Verification(request_id=f"v{i}", time=ms(2026, 2, 3 + i), workspace_id="ws_1", key_space_id="ks_1",
                     key_id="k", outcome=outcome)
        for i, outcome in enumerate(["VALID", "VALID", "EXPIRED", "VALID"])
    ] + [
        Verification(request_id="v9", time=ms(2026, 3, 1), workspace_id="ws_1", key_space_id="ks_2",
                     key_id="k", outcome="VALID"),
        Verification(request_id="other", time=ms(2026, 2, 3), workspace_id="ws_2", key_space_id="ks_1",
                     key_id="k", outcome="VALID"),
    ]
    decisions = [
        RatelimitDecision(request_id=f"d{i}", time=ms(2026, 2, 10), workspace_id="ws_1",
                          namespace_id=f"ns_{i % 2}", identifier="u", passed=i != 0)
        for i in range(5)
    ]
    asyncio.run(insert(store, "key_verifications_raw_v2", Verification)(verifications))
    asyncio.run(insert(store, "ratelimits_raw_v2", RatelimitDecision)(decisions))

def test_billable_counts(store):
    seed(store)
    billing = BillingAggregator(store)
    feb = {"workspace_id": "ws_1", "year": 2026, "month": 2}
    assert asyncio.run(billing.billable_verifications(feb)) == 3
    # passed decisions summed across both namespaces
    assert asyncio.run(billing.billable_ratelimits(feb)) == 4

def test_billing_is_idempotent(store):
    seed(store)
    billing = BillingAggregator(store)
    req = {"workspace_id": "ws_1", "year": 2026, "month": 3}
    assert asyncio.run(billing.billable_verifications(req)) == asyncio.run(billing.billable_verifications(req)) == 1

def test_missing_period_is_zero(store):
    billing = BillingAggregator(store)
    assert asyncio.run(billing.billable_verifications({"workspace_id": "ws_1", "year": 2020, "month": 1})) == 0
    assert asyncio.run(billing.billable_ratelimits({"workspace_id": "nobody", "year": 2026, "month": 2})) == 0

def test_month_out_of_range_rejected(recorder):
    billing = BillingAggregator(recorder)
    with pytest.raises(ValidationError):
        asyncio.run(billing.billable_verifications({"workspace_id": "ws_1", "year": 2026, "month": 13}))
    with pytest.raises(ValidationError):
        asyncio.run(billing.billable_ratelimits({"workspace_id": "ws_1", "year": 2026, "month": 0}))
    assert recorder.calls == []

def test_usage_breakdown(store):
    seed(store)
    usage = asyncio.run(BillingAggregator(store).usage("ws_1", (2026, 1), (2026, 3)))
    assert [(m.month, m.count) for m in usage.months] == [(1, 0), (2, 3), (3, 1)]
    assert usage.total == 4

    rl = asyncio.run(BillingAggregator(store).usage("ws_1", (2025, 12), (2026, 2), table=RATELIMITS_TABLE))
    assert [(m.year, m.month, m.count) for m in rl.months] == [(2025, 12, 0), (2026, 1, 0), (2026, 2, 4)]

def test_usage_rejects_inverted_range(recorder):
    with pytest.raises(ValidationError):
        asyncio.run(BillingAggregator(recorder).usage("ws_1", (2026, 3), (2026, 1)))
    with pytest.raises(ValidationError):
        asyncio.run(BillingAggregator(recorder).usage("ws_1", (2026, 0), (2026, 1)))
    assert recorder.calls == []
