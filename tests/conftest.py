# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import pytest
from typing import Any, Dict, List
from unittest.mock import MagicMock


# =============================================================================
# FAKE SUPABASE CLIENT
# =============================================================================

class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """In-memory stand-in for the postgrest query builder chain."""

    def __init__(self, client: "FakeSupabaseClient", table: str):
        self.client = client
        self.table_name = table
        self._filters = []
        self._range = None
        self._limit = None
        self._order = None
        self._action = "select"
        self._payload = None

    def select(self, *columns):
        self._action = "select"
        return self

    def eq(self, field, value):
        self._filters.append(lambda row: row.get(field) == value)
        return self

    def gte(self, field, value):
        self._filters.append(lambda row: row.get(field) is not None and str(row[field]) >= str(value))
        return self

    def order(self, field):
        self._order = field
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def upsert(self, payload):
        self._action = "upsert"
        self._payload = payload
        return self

    def delete(self):
        self._action = "delete"
        return self

    def execute(self):
        self.client.calls.append((self.table_name, self._action))
        if self.client.fail:
            raise ConnectionError("network unreachable")

        rows = self.client.tables.setdefault(self.table_name, [])
        key = self.client.key_for(self.table_name)

        if self._action == "upsert":
            payloads = self._payload if isinstance(self._payload, list) else [self._payload]
            for payload in payloads:
                existing = [i for i, r in enumerate(rows) if r.get(key) == payload.get(key)]
                if existing:
                    rows[existing[0]] = dict(payload)
                else:
                    rows.append(dict(payload))
            return FakeResponse(payloads)

        matched = [r for r in rows if all(f(r) for f in self._filters)]
        if self._action == "delete":
            self.client.tables[self.table_name] = [r for r in rows if r not in matched]
            return FakeResponse(matched)

        if self._order:
            matched = sorted(matched, key=lambda r: str(r.get(self._order, "")))
        if self._range:
            matched = matched[self._range[0]:self._range[1] + 1]
        if self._limit is not None:
            matched = matched[:self._limit]
        return FakeResponse([dict(r) for r in matched])


class FakeSupabaseClient:
    """
    Minimal Supabase client double holding rows per table.

    Set ``fail = True`` to make every request raise like a dropped network.
    """

    def __init__(self, tables: Dict[str, List[Dict[str, Any]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(r) for r in rows] for name, rows in (tables or {}).items()
        }
        self.fail = False
        self.calls = []

    @staticmethod
    def key_for(table: str) -> str:
        return "username" if table == "passwords" else "id"

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str) -> List[Dict[str, Any]]:
        return self.tables.get(name, [])


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit(monkeypatch):
    """Mock Streamlit for testing"""
    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.secrets = {}
    mock_st.cache_data = lambda f: f
    mock_st.cache_resource = lambda f: f

    monkeypatch.setattr("skilllab_core.errors.handlers.st", mock_st)
    monkeypatch.setattr("skilllab_core.config.st", mock_st)
    monkeypatch.setattr("skilllab_core.state.session.st", mock_st)

    yield mock_st


@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    mock_client.table.return_value.select.return_value.execute.return_value.data = []
    mock_client.table.return_value.upsert.return_value.execute.return_value = MagicMock()
    return mock_client


@pytest.fixture
def make_supabase():
    """Factory for fake clients pre-loaded with table rows."""
    return FakeSupabaseClient


@pytest.fixture
def fake_supabase():
    return FakeSupabaseClient()


# =============================================================================
# COMPONENT FIXTURES
# =============================================================================

@pytest.fixture
def cache():
    from skilllab_core.offline.local_cache import LocalCacheStore

    store = LocalCacheStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def connection():
    from skilllab_core.offline.connection_manager import ConnectionManager

    return ConnectionManager("https://example.supabase.co")


@pytest.fixture
def remote(fake_supabase, connection):
    from skilllab_core.data.supabase_client import RemoteStoreClient

    return RemoteStoreClient(fake_supabase, connection, page_size=50)


@pytest.fixture
def unconfigured_remote():
    """Remote client with no Supabase credentials (cache-only mode)."""
    from skilllab_core.data.supabase_client import RemoteStoreClient

    return RemoteStoreClient(None)


@pytest.fixture
def service(cache, remote):
    from skilllab_core.offline.data_access import DataAccessService

    svc = DataAccessService(cache, remote)
    yield svc
    svc.close(timeout=5)


@pytest.fixture
def offline_service(cache, unconfigured_remote):
    from skilllab_core.offline.data_access import DataAccessService

    svc = DataAccessService(cache, unconfigured_remote)
    yield svc
    svc.close(timeout=5)


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

@pytest.fixture
def student_payload():
    return {
        "name": "Amina Yusuf",
        "studentId": "SL-2024-001",
        "year": 2,
        "groupId": "group-3",
        "email": "amina@example.com",
    }


@pytest.fixture
def attendance_payload():
    return {
        "studentId": "student-1",
        "date": "2024-03-04",
        "status": "present",
        "trainerId": "trainer-1",
        "year": 1,
        "groupId": "group-1",
    }


@pytest.fixture
def assessment_payload():
    return {
        "studentId": "student-1",
        "assessmentName": "OSCE Station 1",
        "assessmentType": "exam",
        "date": "2024-03-04",
        "score": 17,
        "maxScore": 20,
        "week": 3,
        "trainerId": "trainer-1",
        "year": 1,
        "groupId": "group-1",
    }
