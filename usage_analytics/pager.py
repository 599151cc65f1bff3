"""Keyset pagination over raw event logs.

Rows are ordered by `(time, request_id)`; the cursor is the key of the last
row of the previous page, so inserts that land behind the cursor never shift
later pages the way OFFSET would.
"""

from __future__ import annotations
import logging
from typing import Any, List, Mapping, Optional, Tuple, Union

from usage_analytics.client import QueryParams, Querier, extend_params, query, validate_model
from usage_analytics.config import Settings, settings as default_settings
from usage_analytics.datasets import Dataset
from usage_analytics.errors import CompilationError, ValidationError
from usage_analytics.filters import ParamBuilder
from usage_analytics.schemas import Cursor, LogsPage, LogsPageRequest, SortRule
from usage_analytics.timeseries import bind_scope

logger = logging.getLogger(__name__)

def keyset_predicate(direction: str, t: str, r: str) -> str:
    cmp = "<" if direction == "DESC" else ">"
    return f"(time {cmp} {t} OR (time = {t} AND request_id {cmp} {r}))"

class CursorPager:
    def __init__(self, store: Querier, dataset: Dataset, settings: Optional[Settings] = None):
        self.store = store
        self.dataset = dataset
        self.settings = settings or default_settings

    def _check(self, req: LogsPageRequest) -> None:
        if req.start_time > req.end_time:
            raise ValidationError("start_time must not be after end_time", fields=["start_time", "end_time"])
        if req.limit > self.settings.max_page_size:
            raise ValidationError(f"limit must be between 1 and {self.settings.max_page_size}", fields=["limit"])

    def _where(self, req: LogsPageRequest, pb: ParamBuilder) -> List[str]:
        clauses = self.dataset.filters.validate(req.filters)
        where = bind_scope(self.dataset, req.workspace_id, req.scope, pb)
        where.append(f"time >= {pb.bind('start', req.start_time, int)}")
        where.append(f"time < {pb.bind('end', req.end_time, int)}")
        where.append(self.dataset.filters.compile(clauses, pb).sql)
        return where

    def _cursor(self, cursor: Optional[Cursor], direction: str, pb: ParamBuilder) -> Optional[str]:
        if cursor is None or cursor.is_first_page:
            return None
        t = pb.bind("cursor_time", cursor.time, int)
        r = pb.bind("cursor_request_id", cursor.request_id, str)
        return keyset_predicate(direction, t, r)

    @staticmethod
    def _next_cursor(rows: List[Any], limit: int) -> Optional[Cursor]:
        if len(rows) < limit:
            return None
        last = rows[-1]
        return Cursor(time=last.time, request_id=last.request_id)

    @staticmethod
    def direction(sorts: List[SortRule], derived: Mapping[str, str]) -> Tuple[str, Optional[SortRule]]:
        """Traversal direction of the (time, request_id) key, plus the derived sort if any."""
        direction = "DESC"
        derived_rule = None
        for i, rule in enumerate(sorts):
            if rule.column == "time":
                direction = rule.direction.upper()
            elif rule.column in derived:
                derived_rule = rule
            else:
                raise ValidationError(f"cannot sort by {rule.column!r}", fields=[f"sorts.{i}.column"])
        if derived_rule is not None:
            # derived metrics have no stable key of their own
            direction = "ASC"
        return direction, derived_rule

    async def page(self, req: Union[LogsPageRequest, Mapping[str, Any]]) -> LogsPage:
        req = validate_model(LogsPageRequest, req)
        self._check(req)
        direction, _ = self.direction(req.sorts, {})

        pb = ParamBuilder()
        where = self._where(req, pb)
        keyset = self._cursor(req.cursor, direction, pb)
        if keyset:
            where.append(keyset)
        limit = pb.bind("limit", req.limit, int)

        cols = ", ".join(self.dataset.log_columns)
        sql = (
            f"SELECT {cols} FROM {self.dataset.raw_table}\n"
            f"WHERE {' AND '.join(where)}\n"
            f"ORDER BY time {direction}, request_id {direction}\n"
            f"LIMIT {limit}"
        )
        params = extend_params(QueryParams, pb.types, name=f"{self.dataset.name}_logs_params")
        logger.debug("logs %s sql=%s", self.dataset.name, sql)
        rows = await query(self.store, sql, params, self.dataset.log_row)(pb.values)
        return LogsPage(items=rows, next_cursor=self._next_cursor(rows, req.limit))

    async def overview(self, req: Union[LogsPageRequest, Mapping[str, Any]]) -> LogsPage:
        """One row per key: last event, per-key aggregates, paged on the last event's key.

        The last event of a key is the greatest `(time, request_id)`, so rows
        tied on time still resolve to one request_id.
        """
        ov = self.dataset.overview
        if ov is None:
            raise CompilationError(f"no overview for {self.dataset.name}")
        req = validate_model(LogsPageRequest, req)
        self._check(req)
        direction, derived = self.direction(req.sorts, ov.derived_sorts)

        pb = ParamBuilder()
        where = self._where(req, pb)
        keyset = self._cursor(req.cursor, direction, pb)
        limit = pb.bind("limit", req.limit, int)

        aggregates = "".join(f",\n    {m.sql} AS {m.name}" for m in ov.aggregates)
        sql = (
            "WITH events AS (\n"
            f"  SELECT *, row_number() OVER (PARTITION BY {ov.key} ORDER BY time DESC, request_id DESC) AS rn\n"
            f"  FROM {self.dataset.raw_table}\n"
            f"  WHERE {' AND '.join(where)}\n"
            "),\n"
            "overview AS (\n"
            f"  SELECT {ov.key},\n"
            "    max(time) AS time,\n"
            f"    max(request_id) FILTER (WHERE rn = 1) AS request_id{aggregates}\n"
            "  FROM events\n"
            f"  GROUP BY {ov.key}\n"
            ")\n"
            f"SELECT {', '.join(ov.row.model_fields)}\n"
            "FROM overview\n"
            f"WHERE {keyset or 'TRUE'}\n"
            f"ORDER BY time {direction}, request_id {direction}\n"
            f"LIMIT {limit}"
        )
        params = extend_params(QueryParams, pb.types, name=f"{self.dataset.name}_overview_params")
        logger.debug("overview %s sql=%s", self.dataset.name, sql)
        rows = await query(self.store, sql, params, ov.row)(pb.values)
        next_cursor = self._next_cursor(rows, req.limit)

        items = rows
        if derived is not None:
            col = ov.derived_sorts[derived.column]
            items = sorted(rows, key=lambda r: getattr(r, col), reverse=derived.direction == "desc")
        return LogsPage(items=items, next_cursor=next_cursor)
