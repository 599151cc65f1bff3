from __future__ import annotations
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel

from usage_analytics.filters import FilterField, FilterRegistry, STRING_OPERATORS
from usage_analytics.intervals import IntervalCatalog
from usage_analytics.schemas import (
    VERIFICATION_OUTCOMES,
    ApiRequest,
    ApiRequestLog,
    ApiRequestSeriesRow,
    KeyOverview,
    RatelimitDecision,
    RatelimitLog,
    RatelimitOverview,
    RatelimitSeriesRow,
    Verification,
    VerificationLog,
    VerificationSeriesRow,
)

def percentile(sorted_values: List[float], pct: float) -> float:
    if not sorted_values:
        return 0.0
    n = len(sorted_values)
    k = (pct / 100) * (n - 1)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return float(sorted_values[f])
    return sorted_values[f] * (c - k) + sorted_values[c] * (k - f)

@dataclass(frozen=True)
class Metric:
    name: str
    sql: str        # aggregate expression

@dataclass(frozen=True)
class Overview:
    """Per-key aggregate of raw events, paged like a log."""

    key: str
    aggregates: Tuple[Metric, ...]
    row: Type[BaseModel]
    derived_sorts: Mapping[str, str]    # sort column -> aggregate it orders by

def _counts(row: Dict[str, Any], names: Tuple[str, ...]) -> Dict[str, Any]:
    return {n: row[n] for n in names}

@dataclass(frozen=True)
class Dataset:
    name: str
    raw_table: str
    rollups: Mapping[str, str]
    scope: Tuple[str, ...]              # tenant columns bound on every query
    filters: FilterRegistry
    metrics: Tuple[Metric, ...]
    outputs: Tuple[str, ...]            # keys of each TimeseriesDataPoint.y
    series_row: Type[BaseModel]
    log_row: Type[BaseModel]
    event: Type[BaseModel]
    point: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    overview: Optional[Overview] = None
    catalog: IntervalCatalog = field(init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "catalog", IntervalCatalog.for_dataset(self.rollups))

    @property
    def log_columns(self) -> List[str]:
        return list(self.log_row.model_fields)

    def to_point(self, row: Dict[str, Any]) -> Dict[str, Any]:
        if self.point is not None:
            return self.point(row)
        return _counts(row, self.outputs)

    def zero_point(self) -> Dict[str, Any]:
        return {n: 0 for n in self.outputs}

def _rollups(prefix: str) -> Mapping[str, str]:
    return MappingProxyType({u: f"{prefix}_per_{u}_v2" for u in ("minute", "hour", "day", "month")})

def _outcome_metric(outcome: str) -> Metric:
    return Metric(outcome.lower(), f"coalesce(sum(count) FILTER (WHERE outcome = '{outcome}'), 0)")

VERIFICATIONS = Dataset(
    name="verifications",
    raw_table="key_verifications_raw_v2",
    rollups=_rollups("key_verifications"),
    scope=("workspace_id", "key_space_id"),
    filters=FilterRegistry([
        FilterField("keyId", "key_id", operators=("is", "contains")),
        FilterField("identity", "identity_id", operators=STRING_OPERATORS),
        FilterField("outcome", "outcome", valid_values=VERIFICATION_OUTCOMES),
        FilterField("tags", "tags", kind="tags", operators=STRING_OPERATORS),
    ]),
    metrics=(Metric("total", "coalesce(sum(count), 0)"),) + tuple(_outcome_metric(o) for o in VERIFICATION_OUTCOMES),
    outputs=("total",) + tuple(o.lower() for o in VERIFICATION_OUTCOMES),
    series_row=VerificationSeriesRow,
    log_row=VerificationLog,
    event=Verification,
    overview=Overview(
        key="key_id",
        aggregates=(
            Metric("valid_count", "count(*) FILTER (WHERE outcome = 'VALID')"),
            Metric("error_count", "count(*) FILTER (WHERE outcome <> 'VALID')"),
            Metric("tags", "coalesce(first(tags) FILTER (WHERE rn = 1), []::VARCHAR[])"),
        ),
        row=KeyOverview,
        derived_sorts=MappingProxyType({"valid": "valid_count", "invalid": "error_count"}),
    ),
)

RATELIMITS = Dataset(
    name="ratelimits",
    raw_table="ratelimits_raw_v2",
    rollups=_rollups("ratelimits"),
    scope=("workspace_id", "namespace_id"),
    filters=FilterRegistry([
        FilterField("identifier", "identifier", operators=STRING_OPERATORS),
        FilterField(
            "status", "passed", kind="bool",
            valid_values=("passed", "blocked"),
            transform=lambda v: v == "passed",
        ),
    ]),
    metrics=(
        Metric("passed", "coalesce(sum(count) FILTER (WHERE passed), 0)"),
        Metric("total", "coalesce(sum(count), 0)"),
    ),
    outputs=("passed", "total"),
    series_row=RatelimitSeriesRow,
    log_row=RatelimitLog,
    event=RatelimitDecision,
    overview=Overview(
        key="identifier",
        aggregates=(
            Metric("passed_count", "count(*) FILTER (WHERE passed)"),
            Metric("blocked_count", "count(*) FILTER (WHERE NOT passed)"),
            Metric("avg_latency", "coalesce(avg(latency), 0)::DOUBLE"),
            Metric("p99_latency", "coalesce(quantile_cont(latency, 0.99), 0)::DOUBLE"),
        ),
        row=RatelimitOverview,
        derived_sorts=MappingProxyType({
            "passed": "passed_count",
            "blocked": "blocked_count",
            "avg_latency": "avg_latency",
            "p99_latency": "p99_latency",
        }),
    ),
)

def _api_point(row: Dict[str, Any]) -> Dict[str, Any]:
    total = row["total"]
    # samples from each rollup row are partial states; merge, then rank
    samples = sorted(row["latency_samples"] or [])
    return {
        "success": row["success"],
        "warning": row["warning"],
        "error": row["error"],
        "total": total,
        "avg_latency": row["latency_sum"] / total if total else 0.0,
        "p50_latency": percentile(samples, 50),
        "p99_latency": percentile(samples, 99),
    }

def _status_class(lo: int) -> str:
    return f"coalesce(sum(count) FILTER (WHERE response_status BETWEEN {lo} AND {lo + 99}), 0)"

API_REQUESTS = Dataset(
    name="api_requests",
    raw_table="api_requests_raw_v2",
    rollups=_rollups("api_requests"),
    scope=("workspace_id",),
    filters=FilterRegistry([
        FilterField("host", "host", operators=STRING_OPERATORS),
        FilterField("method", "method"),
        FilterField("path", "path", operators=STRING_OPERATORS),
        FilterField("status", "(response_status // 100) * 100", kind="number", valid_values=(200, 400, 500)),
    ]),
    metrics=(
        Metric("success", _status_class(200)),
        Metric("warning", _status_class(400)),
        Metric("error", _status_class(500)),
        Metric("total", "coalesce(sum(count), 0)"),
        Metric("latency_sum", "coalesce(sum(latency_sum), 0)::DOUBLE"),
        Metric("latency_samples", "flatten(list(latency_samples))"),
    ),
    outputs=("success", "warning", "error", "total", "avg_latency", "p50_latency", "p99_latency"),
    series_row=ApiRequestSeriesRow,
    log_row=ApiRequestLog,
    event=ApiRequest,
    point=_api_point,
)

DATASETS: Mapping[str, Dataset] = MappingProxyType({
    d.name: d for d in (VERIFICATIONS, RATELIMITS, API_REQUESTS)
})
