from __future__ import annotations
import asyncio
import logging
import os
import re
from typing import Any, Dict, List

import duckdb
import pyarrow as pa

from usage_analytics.errors import StoreError

logger = logging.getLogger(__name__)

_PARAM_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")

UNITS = ("minute", "hour", "day", "month")

RAW_TABLES = {
    "key_verifications_raw_v2": """
    CREATE TABLE IF NOT EXISTS key_verifications_raw_v2 (
      request_id VARCHAR NOT NULL,
      time BIGINT NOT NULL,
      workspace_id VARCHAR NOT NULL,
      key_space_id VARCHAR NOT NULL,
      key_id VARCHAR NOT NULL,
      region VARCHAR,
      outcome VARCHAR NOT NULL,
      identity_id VARCHAR,
      tags VARCHAR[]
    );
    """,
    "ratelimits_raw_v2": """
    CREATE TABLE IF NOT EXISTS ratelimits_raw_v2 (
      request_id VARCHAR NOT NULL,
      time BIGINT NOT NULL,
      workspace_id VARCHAR NOT NULL,
      namespace_id VARCHAR NOT NULL,
      identifier VARCHAR NOT NULL,
      passed BOOLEAN NOT NULL,
      latency DOUBLE
    );
    """,
    "api_requests_raw_v2": """
    CREATE TABLE IF NOT EXISTS api_requests_raw_v2 (
      request_id VARCHAR NOT NULL,
      time BIGINT NOT NULL,
      workspace_id VARCHAR NOT NULL,
      host VARCHAR,
      method VARCHAR,
      path VARCHAR,
      response_status INTEGER,
      service_latency DOUBLE
    );
    """,
}

ARROW_SCHEMAS = {
    "key_verifications_raw_v2": pa.schema([
        ("request_id", pa.string()), ("time", pa.int64()), ("workspace_id", pa.string()),
        ("key_space_id", pa.string()), ("key_id", pa.string()), ("region", pa.string()),
        ("outcome", pa.string()), ("identity_id", pa.string()), ("tags", pa.list_(pa.string())),
    ]),
    "ratelimits_raw_v2": pa.schema([
        ("request_id", pa.string()), ("time", pa.int64()), ("workspace_id", pa.string()),
        ("namespace_id", pa.string()), ("identifier", pa.string()), ("passed", pa.bool_()),
        ("latency", pa.float64()),
    ]),
    "api_requests_raw_v2": pa.schema([
        ("request_id", pa.string()), ("time", pa.int64()), ("workspace_id", pa.string()),
        ("host", pa.string()), ("method", pa.string()), ("path", pa.string()),
        ("response_status", pa.int32()), ("service_latency", pa.float64()),
    ]),
}

def _rollup_views(unit: str) -> List[str]:
    bucket = f"date_trunc('{unit}', epoch_ms(time))"
    return [
        f"""
        CREATE OR REPLACE VIEW key_verifications_per_{unit}_v2 AS
        SELECT workspace_id, key_space_id, key_id, identity_id, outcome, tags,
               {bucket} AS time, count(*) AS count
        FROM key_verifications_raw_v2
        GROUP BY workspace_id, key_space_id, key_id, identity_id, outcome, tags, {bucket};
        """,
        f"""
        CREATE OR REPLACE VIEW ratelimits_per_{unit}_v2 AS
        SELECT workspace_id, namespace_id, identifier, passed,
               {bucket} AS time, count(*) AS count
        FROM ratelimits_raw_v2
        GROUP BY workspace_id, namespace_id, identifier, passed, {bucket};
        """,
        f"""
        CREATE OR REPLACE VIEW api_requests_per_{unit}_v2 AS
        SELECT workspace_id, host, method, path, response_status,
               {bucket} AS time, count(*) AS count,
               sum(service_latency) AS latency_sum,
               list(service_latency) AS latency_samples
        FROM api_requests_raw_v2
        GROUP BY workspace_id, host, method, path, response_status, {bucket};
        """,
    ]

BILLING_VIEWS = [
    """
    CREATE OR REPLACE VIEW billable_verifications_per_month_v2 AS
    SELECT workspace_id,
           year(epoch_ms(time)) AS year,
           month(epoch_ms(time)) AS month,
           count(*) AS count
    FROM key_verifications_raw_v2
    WHERE outcome = 'VALID'
    GROUP BY workspace_id, year(epoch_ms(time)), month(epoch_ms(time));
    """,
    """
    CREATE OR REPLACE VIEW billable_ratelimits_per_month_v2 AS
    SELECT workspace_id,
           year(epoch_ms(time)) AS year,
           month(epoch_ms(time)) AS month,
           count(*) AS count
    FROM ratelimits_raw_v2
    WHERE passed
    GROUP BY workspace_id, year(epoch_ms(time)), month(epoch_ms(time));
    """,
]

class DuckDBStore:
    """Local columnar store: raw event tables plus rollup views over them."""

    def __init__(self, db_path: str):
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.db_path = db_path
        self.con = duckdb.connect(db_path)
        self._init_schema()
        logger.info("duckdb store ready at %s", db_path)

    def _init_schema(self) -> None:
        for ddl in RAW_TABLES.values():
            self.con.execute(ddl)
        for unit in UNITS:
            for ddl in _rollup_views(unit):
                self.con.execute(ddl)
        for ddl in BILLING_VIEWS:
            self.con.execute(ddl)

    def _run_query(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        used = set(_PARAM_RE.findall(sql))
        missing = used - set(params)
        if missing:
            raise StoreError(f"unbound parameter(s): {sorted(missing)}")
        bound = {k: v for k, v in params.items() if k in used}
        cur = self.con.cursor()
        try:
            rel = cur.execute(sql, bound or None)
            cols = [d[0] for d in rel.description]
            return [dict(zip(cols, row)) for row in rel.fetchall()]
        except duckdb.Error as e:
            raise StoreError(f"query failed: {e}") from e
        finally:
            cur.close()

    def _run_insert(self, table: str, rows: List[Dict[str, Any]]) -> int:
        schema = ARROW_SCHEMAS.get(table)
        if schema is None:
            raise StoreError(f"unknown table {table!r}")
        batch = pa.Table.from_pylist([{k: r.get(k) for k in schema.names} for r in rows], schema=schema)
        cols = ", ".join(schema.names)
        cur = self.con.cursor()
        try:
            cur.register("incoming", batch)
            cur.execute(f"INSERT INTO {table} ({cols}) SELECT {cols} FROM incoming")
            cur.unregister("incoming")
        except duckdb.Error as e:
            raise StoreError(f"insert into {table} failed: {e}") from e
        finally:
            cur.close()
        return batch.num_rows

    async def query(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._run_query, sql, params)

    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        return await asyncio.to_thread(self._run_insert, table, rows)

    def close(self) -> None:
        self.con.close()
