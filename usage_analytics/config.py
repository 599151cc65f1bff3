from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    # Empty path = no store configured; the API falls back to the no-op store.
    duckdb_path: str = os.getenv("ANALYTICS_DUCKDB_PATH", "")

    max_page_size: int = int(os.getenv("ANALYTICS_MAX_PAGE_SIZE", "1000"))
    max_timeseries_points: int = int(os.getenv("ANALYTICS_MAX_TIMESERIES_POINTS", "5000"))

    log_level: str = os.getenv("ANALYTICS_LOG_LEVEL", "INFO")

settings = Settings()
