import pytest
from usage_analytics.warehouse.duckdb_store import DuckDBStore

class RecordingStore:
    """Answers every query with canned rows and remembers what it was asked."""

    def __init__(self, rows=None):
        self.rows = rows or []
        self.calls = []

    async def query(self, sql, params):
        self.calls.append((sql, params))
        return list(self.rows)

    async def insert(self, table, rows):
        self.calls.append((table, rows))
        return len(rows)

@pytest.fixture
def store(tmp_path):
    st = DuckDBStore(str(tmp_path / "analytics.duckdb"))
    yield st
    st.close()

@pytest.fixture
def recorder():
    return RecordingStore()
