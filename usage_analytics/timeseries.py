from __future__ import annotations
import logging
from typing import Any, List, Mapping, Optional, Union

from usage_analytics.client import QueryParams, Querier, extend_params, query, validate_model
from usage_analytics.config import Settings, settings as default_settings
from usage_analytics.datasets import Dataset
from usage_analytics.errors import SchemaMismatchError, ValidationError
from usage_analytics.filters import ParamBuilder
from usage_analytics.intervals import IntervalEntry, bucket_start, count_buckets, iter_buckets
from usage_analytics.schemas import FilterClause, TimeseriesDataPoint, TimeseriesRequest

logger = logging.getLogger(__name__)

def bind_scope(dataset: Dataset, workspace_id: str, scope: Mapping[str, str], pb: ParamBuilder) -> List[str]:
    """Tenant predicates for every scope column of the dataset."""
    extra = set(scope) - set(dataset.scope)
    if extra:
        raise ValidationError(f"{dataset.name} is not scoped by {sorted(extra)}", fields=[f"scope.{k}" for k in sorted(extra)])
    where = []
    for col in dataset.scope:
        if col == "workspace_id":
            value = workspace_id
        else:
            value = scope.get(col)
            if not value:
                raise ValidationError(f"{dataset.name} requires scope.{col}", fields=[f"scope.{col}"])
        where.append(f"{col} = {pb.bind(col, value, str)}")
    return where

class TimeseriesEngine:
    def __init__(self, store: Querier, dataset: Dataset, settings: Optional[Settings] = None):
        self.store = store
        self.dataset = dataset
        self.settings = settings or default_settings

    def compile(self, req: TimeseriesRequest, entry: IntervalEntry, clauses: List[FilterClause]) -> tuple:
        ds = self.dataset
        pb = ParamBuilder()
        where = bind_scope(ds, req.workspace_id, req.scope, pb)
        start = pb.bind("start", bucket_start(req.start_time, entry.interval), int)
        end = pb.bind("end", req.end_time, int)
        where.append(f"time >= epoch_ms({start})")
        where.append(f"time < epoch_ms({end})")
        where.append(ds.filters.compile(clauses, pb).sql)

        metrics = ",\n  ".join(f"{m.sql} AS {m.name}" for m in ds.metrics)
        sql = (
            f"SELECT epoch_ms(time_bucket({entry.interval.sql}, time, TIMESTAMP '1970-01-01')) AS x,\n"
            f"  {metrics}\n"
            f"FROM {entry.table}\n"
            f"WHERE {' AND '.join(where)}\n"
            f"GROUP BY x\n"
            f"ORDER BY x ASC"
        )
        return sql, pb

    async def timeseries(self, req: Union[TimeseriesRequest, Mapping[str, Any]]) -> List[TimeseriesDataPoint]:
        req = validate_model(TimeseriesRequest, req)
        if req.start_time > req.end_time:
            raise ValidationError("start_time must not be after end_time", fields=["start_time", "end_time"])
        entry = self.dataset.catalog.lookup(req.granularity)

        limit = self.settings.max_timeseries_points
        if count_buckets(req.start_time, req.end_time, entry.interval, limit=limit) > limit:
            raise ValidationError(
                f"range holds more than {limit} {req.granularity} buckets",
                fields=["start_time", "end_time", "granularity"],
            )
        clauses = self.dataset.filters.validate(req.filters)

        sql, pb = self.compile(req, entry, clauses)
        params = extend_params(QueryParams, pb.types, name=f"{self.dataset.name}_timeseries_params")
        logger.debug("timeseries %s/%s sql=%s", self.dataset.name, req.granularity, sql)
        rows = await query(self.store, sql, params, self.dataset.series_row)(pb.values)
        return self._fill(rows, req, entry)

    def _fill(self, rows: List[Any], req: TimeseriesRequest, entry: IntervalEntry) -> List[TimeseriesDataPoint]:
        by_x = {}
        for i, row in enumerate(rows):
            if row.x in by_x:
                raise SchemaMismatchError(f"duplicate bucket {row.x}", row_index=i)
            by_x[row.x] = (i, row)

        points: List[TimeseriesDataPoint] = []
        for b in iter_buckets(req.start_time, req.end_time, entry.interval):
            hit = by_x.pop(b, None)
            y = self.dataset.to_point(hit[1].model_dump()) if hit else self.dataset.zero_point()
            points.append(TimeseriesDataPoint(x=b, y=y))

        if by_x:
            i, row = min(by_x.values(), key=lambda t: t[0])
            raise SchemaMismatchError(f"bucket {row.x} is off the {req.granularity} grid", row_index=i)
        return points
