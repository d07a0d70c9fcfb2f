# =============================================================================
# tests/unit/test_session.py
# Unit Tests for Streamlit session wiring
# =============================================================================

import pytest

from skilllab_core.config import SyncSettings
from skilllab_core.state import session


@pytest.fixture
def memory_settings(mock_streamlit):
    mock_streamlit.session_state["sync_settings"] = SyncSettings(cache_path=":memory:")
    return mock_streamlit


def test_init_state_sets_defaults(mock_streamlit):
    session.init_state()
    assert set(session.SESSION_DEFAULTS) <= set(mock_streamlit.session_state)
    assert mock_streamlit.session_state["debug_mode"] is False


def test_data_service_is_created_once(memory_settings):
    first = session.get_data_service(live_updates=False)
    try:
        assert first.is_initialized
        assert len(first.get_groups()) == 30
        assert session.get_data_service() is first
    finally:
        session.end_session()


def test_auth_service_shares_cache(memory_settings):
    auth = session.get_auth_service()
    try:
        data_service = memory_settings.session_state["data_service"]
        assert auth.cache is data_service.cache
        assert auth.login("admin", "admin123").role == "admin"
    finally:
        session.end_session()


def test_end_session_clears_state(memory_settings):
    session.get_data_service(live_updates=False)
    session.end_session()
    assert "data_service" not in memory_settings.session_state
