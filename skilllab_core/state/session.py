import logging

import streamlit as st

from skilllab_core.auth.credentials import AuthService
from skilllab_core.config import SyncSettings, load_settings
from skilllab_core.offline.data_access import DataAccessService

logger = logging.getLogger(__name__)

# Central registry for session-state keys owned by the sync layer.
SESSION_DEFAULTS = {
    "sync_settings": None,
    "data_service": None,
    "auth_service": None,
    "current_user": None,
    "debug_mode": False,
}


def init_state():
    """Initialize session state with defaults."""
    for k, v in SESSION_DEFAULTS.items():
        if k not in st.session_state:
            st.session_state[k] = v


def get_settings() -> SyncSettings:
    init_state()
    if st.session_state["sync_settings"] is None:
        st.session_state["sync_settings"] = load_settings()
    return st.session_state["sync_settings"]


def get_data_service(live_updates: bool = True) -> DataAccessService:
    """
    Return this session's data service, creating and initializing it once.

    Each browser session gets its own service (and its own in-memory state);
    they share the on-disk cache.
    """
    init_state()
    service = st.session_state["data_service"]
    if service is None:
        service = DataAccessService.from_settings(get_settings())
        result = service.initialize(live_updates=live_updates)
        if not result:
            logger.warning(f"Starting from cached data only: {result.error}")
        st.session_state["data_service"] = service
    return service


def get_auth_service() -> AuthService:
    init_state()
    auth = st.session_state["auth_service"]
    if auth is None:
        data_service = get_data_service()
        auth = AuthService(data_service.cache, data_service.remote)
        st.session_state["auth_service"] = auth
    return auth


def end_session():
    """Close the session's services and drop them from session state."""
    service = st.session_state.get("data_service")
    if service is not None:
        service.close()

    for key in SESSION_DEFAULTS:
        if key in st.session_state:
            del st.session_state[key]
