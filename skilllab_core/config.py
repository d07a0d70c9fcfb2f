# =============================================================================
# skilllab_core/config.py
# Runtime settings for the sync layer (Streamlit secrets or environment)
# =============================================================================
"""
Settings loader.

Expected secrets.toml format:
    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"

    [sync]
    cache_path = "local_data/skilllab_cache.db"
    cache_capacity_chars = 5242880
    poll_interval = 15
    remote_timeout = 10

Values missing from secrets are read from the environment
(SUPABASE_URL, SUPABASE_KEY, SKILLLAB_CACHE_PATH,
SKILLLAB_CACHE_CAPACITY, SKILLLAB_POLL_INTERVAL, SKILLLAB_REMOTE_TIMEOUT),
after loading a .env file if one exists.
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging

import streamlit as st
from dotenv import load_dotenv

from skilllab_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PATH = Path(__file__).parent.parent / "local_data" / "skilllab_cache.db"

# Browsers give localStorage roughly 5M UTF-16 characters per origin
DEFAULT_CACHE_CAPACITY = 5 * 1024 * 1024

ENV_KEYS = {
    "supabase_url": "SUPABASE_URL",
    "supabase_key": "SUPABASE_KEY",
    "cache_path": "SKILLLAB_CACHE_PATH",
    "cache_capacity_chars": "SKILLLAB_CACHE_CAPACITY",
    "poll_interval": "SKILLLAB_POLL_INTERVAL",
    "remote_timeout": "SKILLLAB_REMOTE_TIMEOUT",
}


@dataclass
class SyncSettings:
    """Settings consumed by the cache, remote client and facade."""
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    cache_path: str = str(DEFAULT_CACHE_PATH)
    cache_capacity_chars: int = DEFAULT_CACHE_CAPACITY
    poll_interval: float = 15.0
    remote_timeout: float = 10.0
    page_size: int = 1000

    @property
    def remote_configured(self) -> bool:
        """True when both Supabase URL and key are present."""
        return bool(self.supabase_url and self.supabase_key)


def _read_secrets() -> Dict[str, Any]:
    """Flatten the [supabase] and [sync] secrets sections, if any."""
    values: Dict[str, Any] = {}
    try:
        if hasattr(st, "secrets") and "supabase" in st.secrets:
            values["supabase_url"] = st.secrets["supabase"].get("url")
            values["supabase_key"] = st.secrets["supabase"].get("key")
        if hasattr(st, "secrets") and "sync" in st.secrets:
            values.update(dict(st.secrets["sync"]))
    except Exception as e:
        # No secrets.toml present; Streamlit raises instead of returning empty
        logger.debug(f"Streamlit secrets not available: {e}")
        return {}
    return values


def _read_environment() -> Dict[str, Any]:
    load_dotenv()
    values = {}
    for field_name, env_key in ENV_KEYS.items():
        value = os.getenv(env_key)
        if value not in (None, ""):
            values[field_name] = value
    return values


def _coerce(values: Mapping[str, Any]) -> SyncSettings:
    settings = SyncSettings()

    for key in ("supabase_url", "supabase_key", "cache_path"):
        if values.get(key):
            setattr(settings, key, str(values[key]))

    numeric = {
        "cache_capacity_chars": int,
        "poll_interval": float,
        "remote_timeout": float,
        "page_size": int,
    }
    for key, cast in numeric.items():
        if key not in values or values[key] in (None, ""):
            continue
        try:
            parsed = cast(values[key])
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid value for {key}: {values[key]!r}",
                config_key=key,
                expected_type=cast.__name__,
            )
        if parsed <= 0:
            raise ConfigurationError(
                f"{key} must be positive, got {parsed}",
                config_key=key,
                expected_type=cast.__name__,
            )
        setattr(settings, key, parsed)

    return settings


def load_settings(overrides: Optional[Mapping[str, Any]] = None) -> SyncSettings:
    """
    Build settings from Streamlit secrets and the environment.

    Secrets win over the environment key by key; a blank secret does not
    hide the environment value.

    Args:
        overrides: Explicit values that win over both sources

    Returns:
        SyncSettings instance
    """
    secrets = {k: v for k, v in _read_secrets().items() if v not in (None, "")}
    values = {**_read_environment(), **secrets}
    if overrides:
        values = {**values, **overrides}

    settings = _coerce(values)
    if not settings.remote_configured:
        logger.info("Supabase credentials not configured - running cache-only")
    return settings
