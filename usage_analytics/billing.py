from __future__ import annotations
import logging
from typing import Any, Mapping, Tuple, Union

from pydantic import BaseModel

from usage_analytics.client import QueryParams, Querier, query, validate_model
from usage_analytics.errors import SchemaMismatchError, ValidationError
from usage_analytics.schemas import BillableMonthRow, BillingRequest, BillingUsage, MonthlyUsage

logger = logging.getLogger(__name__)

VERIFICATIONS_TABLE = "billable_verifications_per_month_v2"
RATELIMITS_TABLE = "billable_ratelimits_per_month_v2"

class MonthParams(QueryParams):
    workspace_id: str
    year: int
    month: int

class RangeParams(QueryParams):
    workspace_id: str
    start: int
    end: int

class BillableCount(BaseModel):
    count: int

def _month_sql(table: str) -> str:
    # several rows may share a month (e.g. one per namespace); sum them all
    return (
        "SELECT coalesce(sum(count), 0) AS count\n"
        f"FROM {table}\n"
        "WHERE workspace_id = $workspace_id::VARCHAR\n"
        "  AND year = $year::BIGINT AND month = $month::BIGINT"
    )

def _range_sql(table: str) -> str:
    return (
        "SELECT year, month, coalesce(sum(count), 0) AS count\n"
        f"FROM {table}\n"
        "WHERE workspace_id = $workspace_id::VARCHAR\n"
        "  AND year * 12 + month - 1 BETWEEN $start::BIGINT AND $end::BIGINT\n"
        "GROUP BY year, month\n"
        "ORDER BY year, month"
    )

def _month_index(ym: Tuple[int, int], name: str) -> int:
    year, month = ym
    if not 1 <= month <= 12:
        raise ValidationError(f"{name}: month must be 1-12, got {month}", fields=[name])
    if year < 1970:
        raise ValidationError(f"{name}: year must be >= 1970, got {year}", fields=[name])
    return year * 12 + month - 1

class BillingAggregator:
    """Exact monthly counts of billable events, read from the monthly rollups."""

    def __init__(self, store: Querier):
        self.store = store

    async def _count(self, table: str, req: Union[BillingRequest, Mapping[str, Any]]) -> int:
        req = validate_model(BillingRequest, req)
        rows = await query(self.store, _month_sql(table), MonthParams, BillableCount)(req)
        if len(rows) > 1:
            raise SchemaMismatchError(f"expected one row from {table}, got {len(rows)}", row_index=1)
        count = rows[0].count if rows else 0
        logger.debug("%s %s/%04d-%02d = %d", table, req.workspace_id, req.year, req.month, count)
        return count

    async def billable_verifications(self, req: Union[BillingRequest, Mapping[str, Any]]) -> int:
        return await self._count(VERIFICATIONS_TABLE, req)

    async def billable_ratelimits(self, req: Union[BillingRequest, Mapping[str, Any]]) -> int:
        return await self._count(RATELIMITS_TABLE, req)

    async def usage(self, workspace_id: str, start: Tuple[int, int], end: Tuple[int, int],
                    table: str = VERIFICATIONS_TABLE) -> BillingUsage:
        """Per-month billable counts over an inclusive month range; months without rows report 0."""
        lo = _month_index(start, "start")
        hi = _month_index(end, "end")
        if lo > hi:
            raise ValidationError("start month is after end month", fields=["start", "end"])
        if table not in (VERIFICATIONS_TABLE, RATELIMITS_TABLE):
            raise ValidationError(f"not a billing table: {table!r}", fields=["table"])

        params = {"workspace_id": workspace_id, "start": lo, "end": hi}
        rows = await query(self.store, _range_sql(table), RangeParams, BillableMonthRow)(params)
        found = {r.year * 12 + r.month - 1: r.count for r in rows}

        months = []
        for idx in range(lo, hi + 1):
            year, m0 = divmod(idx, 12)
            months.append(MonthlyUsage(year=year, month=m0 + 1, count=found.get(idx, 0)))
        return BillingUsage(workspace_id=workspace_id, total=sum(m.count for m in months), months=months)
