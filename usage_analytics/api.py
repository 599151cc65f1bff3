from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import orjson
from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import ORJSONResponse

from usage_analytics.billing import RATELIMITS_TABLE, VERIFICATIONS_TABLE, BillingAggregator
from usage_analytics.client import NoopStore, insert
from usage_analytics.config import Settings, settings as default_settings
from usage_analytics.datasets import DATASETS, Dataset
from usage_analytics.errors import AnalyticsError, CompilationError, SchemaMismatchError, StoreError, ValidationError
from usage_analytics.pager import CursorPager
from usage_analytics.timeseries import TimeseriesEngine
from usage_analytics.warehouse.duckdb_store import DuckDBStore

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ValidationError: 400,
    SchemaMismatchError: 500,
    CompilationError: 500,
    StoreError: 502,
}

def _dataset(name: str) -> Dataset:
    ds = DATASETS.get(name)
    if ds is None:
        raise ValidationError(f"unknown dataset {name!r}", fields=["dataset"])
    return ds

def parse_events(raw: bytes) -> List[Any]:
    """Accept a JSON array or newline-delimited JSON objects."""
    body = raw.strip()
    if not body:
        return []
    try:
        if body.startswith(b"["):
            events = orjson.loads(body)
        else:
            events = [orjson.loads(line) for line in body.splitlines() if line.strip()]
    except orjson.JSONDecodeError as e:
        raise ValidationError(f"malformed event payload: {e}", fields=["body"]) from e
    if not isinstance(events, list):
        raise ValidationError("expected a list of events", fields=["body"])
    return events

def create_app(store: Any = None, settings: Optional[Settings] = None) -> FastAPI:
    s = settings or default_settings
    app = FastAPI(title="Usage Analytics API", version="1.0.0", default_response_class=ORJSONResponse)
    app.state.store = store

    @app.on_event("startup")
    def _startup():
        logging.basicConfig(level=s.log_level.upper())
        if app.state.store is None:
            app.state.store = DuckDBStore(s.duckdb_path) if s.duckdb_path else NoopStore()
        logger.info("analytics api using %s", type(app.state.store).__name__)

    @app.on_event("shutdown")
    def _shutdown():
        if isinstance(app.state.store, DuckDBStore):
            app.state.store.close()

    @app.exception_handler(AnalyticsError)
    async def _analytics_error(request: Request, exc: AnalyticsError):
        status = STATUS_CODES.get(type(exc), 500)
        if status >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        body: Dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
        if isinstance(exc, ValidationError):
            body["fields"] = exc.fields
        return ORJSONResponse(status_code=status, content=body)

    @app.get("/health")
    def health():
        return {"ok": True, "store": type(app.state.store).__name__}

    @app.post("/v1/{dataset}.timeseries")
    async def timeseries(dataset: str, payload: Dict[str, Any] = Body(...)):
        ds = _dataset(dataset)
        points = await TimeseriesEngine(app.state.store, ds, s).timeseries(payload)
        return {"dataset": ds.name, "data": [p.model_dump() for p in points]}

    @app.post("/v1/{dataset}.logs")
    async def logs(dataset: str, payload: Dict[str, Any] = Body(...)):
        page = await CursorPager(app.state.store, _dataset(dataset), s).page(payload)
        return page.model_dump()

    @app.post("/v1/{dataset}.overview")
    async def overview(dataset: str, payload: Dict[str, Any] = Body(...)):
        ds = _dataset(dataset)
        if ds.overview is None:
            raise ValidationError(f"no overview for {ds.name}", fields=["dataset"])
        page = await CursorPager(app.state.store, ds, s).overview(payload)
        return page.model_dump()

    @app.post("/v1/{dataset}.events")
    async def ingest(dataset: str, request: Request):
        ds = _dataset(dataset)
        events = parse_events(await request.body())
        ack = await insert(app.state.store, ds.raw_table, ds.event)(events)
        return ack.model_dump()

    @app.get("/v1/billing.verifications")
    async def billing_verifications(workspace_id: str = Query(...), year: int = Query(...), month: int = Query(...)):
        req = {"workspace_id": workspace_id, "year": year, "month": month}
        count = await BillingAggregator(app.state.store).billable_verifications(req)
        return {**req, "count": count}

    @app.get("/v1/billing.ratelimits")
    async def billing_ratelimits(workspace_id: str = Query(...), year: int = Query(...), month: int = Query(...)):
        req = {"workspace_id": workspace_id, "year": year, "month": month}
        count = await BillingAggregator(app.state.store).billable_ratelimits(req)
        return {**req, "count": count}

    @app.get("/v1/billing.usage")
    async def billing_usage(
        workspace_id: str = Query(...),
        start_year: int = Query(...),
        start_month: int = Query(...),
        end_year: int = Query(...),
        end_month: int = Query(...),
        kind: str = Query("verifications"),
    ):
        tables = {"verifications": VERIFICATIONS_TABLE, "ratelimits": RATELIMITS_TABLE}
        if kind not in tables:
            raise ValidationError(f"unknown billing kind {kind!r}", fields=["kind"])
        usage = await BillingAggregator(app.state.store).usage(
            workspace_id, (start_year, start_month), (end_year, end_month), table=tables[kind],
        )
        return usage.model_dump()

    return app

app = create_app()
