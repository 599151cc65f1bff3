from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator

VERIFICATION_OUTCOMES = (
    "VALID",
    "RATE_LIMITED",
    "EXPIRED",
    "DISABLED",
    "FORBIDDEN",
    "USAGE_EXCEEDED",
    "INSUFFICIENT_PERMISSIONS",
)

VerificationOutcome = Literal[
    "VALID",
    "RATE_LIMITED",
    "EXPIRED",
    "DISABLED",
    "FORBIDDEN",
    "USAGE_EXCEEDED",
    "INSUFFICIENT_PERMISSIONS",
]

Operator = Literal["is", "contains", "startsWith", "endsWith"]

# ---- events (append-only, written once by the producing service) ----

class Verification(BaseModel):
    request_id: str = Field(min_length=1)
    time: int = Field(ge=0)
    workspace_id: str = Field(min_length=1)
    key_space_id: str = Field(min_length=1)
    key_id: str = Field(min_length=1)
    region: str = ""
    outcome: VerificationOutcome
    identity_id: str = ""
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _sorted_tags(cls, v: List[str]) -> List[str]:
        return sorted(v)

class RatelimitDecision(BaseModel):
    request_id: str = Field(min_length=1)
    time: int = Field(ge=0)
    workspace_id: str = Field(min_length=1)
    namespace_id: str = Field(min_length=1)
    identifier: str = Field(min_length=1)
    passed: bool
    latency: float = Field(default=0.0, ge=0)

class ApiRequest(BaseModel):
    request_id: str = Field(min_length=1)
    time: int = Field(ge=0)
    workspace_id: str = Field(min_length=1)
    host: str
    method: str
    path: str
    response_status: int = Field(ge=100, le=599)
    service_latency: float = Field(default=0.0, ge=0)

class Ack(BaseModel):
    table: str
    inserted: int

# ---- requests ----

class FilterClause(BaseModel):
    field: str
    operator: Operator
    value: Union[str, int]

class SortRule(BaseModel):
    column: str
    direction: Literal["asc", "desc"] = "desc"

class Cursor(BaseModel):
    time: Optional[int] = None
    request_id: Optional[str] = None

    @model_validator(mode="after")
    def _both_or_neither(self) -> "Cursor":
        if (self.time is None) != (self.request_id is None):
            raise ValueError("cursor needs both time and request_id, or neither")
        return self

    @property
    def is_first_page(self) -> bool:
        return self.time is None

class TimeseriesRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    # extra tenant ids the dataset scopes by, e.g. {"key_space_id": "ks_1"}
    scope: Dict[str, str] = Field(default_factory=dict)
    start_time: int = Field(ge=0)
    end_time: int = Field(ge=0)
    granularity: str
    filters: List[FilterClause] = Field(default_factory=list)

class LogsPageRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    scope: Dict[str, str] = Field(default_factory=dict)
    start_time: int = Field(ge=0)
    end_time: int = Field(ge=0)
    limit: int = Field(default=50, ge=1)
    cursor: Optional[Cursor] = None
    filters: List[FilterClause] = Field(default_factory=list)
    sorts: List[SortRule] = Field(default_factory=list)

class BillingRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    year: int = Field(ge=1970, le=9999)
    month: int = Field(ge=1, le=12)

# ---- results ----

class TimeseriesDataPoint(BaseModel):
    x: int
    y: Dict[str, Union[int, float]]

class LogsPage(BaseModel):
    items: List[Any]
    next_cursor: Optional[Cursor] = None

class MonthlyUsage(BaseModel):
    year: int
    month: int
    count: int

class BillingUsage(BaseModel):
    workspace_id: str
    total: int
    months: List[MonthlyUsage]

# ---- log rows as returned by the store ----

class VerificationLog(BaseModel):
    request_id: str
    time: int
    workspace_id: str
    key_space_id: str
    key_id: str
    identity_id: str
    region: str
    outcome: str
    tags: List[str]

class RatelimitLog(BaseModel):
    request_id: str
    time: int
    workspace_id: str
    namespace_id: str
    identifier: str
    passed: bool
    latency: float

class ApiRequestLog(BaseModel):
    request_id: str
    time: int
    workspace_id: str
    host: str
    method: str
    path: str
    response_status: int
    service_latency: float

class RatelimitOverview(BaseModel):
    identifier: str
    time: int
    request_id: str
    passed_count: int
    blocked_count: int
    avg_latency: float
    p99_latency: float

class KeyOverview(BaseModel):
    key_id: str
    time: int
    request_id: str
    valid_count: int
    error_count: int
    tags: List[str]

# ---- sparse timeseries rows (one per non-empty bucket) ----

class VerificationSeriesRow(BaseModel):
    x: int
    total: int
    valid: int
    rate_limited: int
    insufficient_permissions: int
    forbidden: int
    disabled: int
    expired: int
    usage_exceeded: int

class RatelimitSeriesRow(BaseModel):
    x: int
    passed: int
    total: int

class ApiRequestSeriesRow(BaseModel):
    x: int
    success: int
    warning: int
    error: int
    total: int
    latency_sum: float
    latency_samples: List[float]

class BillableMonthRow(BaseModel):
    year: int
    month: int
    count: int
