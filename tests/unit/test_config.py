# =============================================================================
# tests/unit/test_config.py
# Unit Tests for settings loading
# =============================================================================

import pytest

from skilllab_core.config import DEFAULT_CACHE_CAPACITY, ENV_KEYS, SyncSettings, load_settings
from skilllab_core.errors import ConfigurationError


@pytest.fixture
def clean_env(monkeypatch):
    for env_key in ENV_KEYS.values():
        monkeypatch.delenv(env_key, raising=False)
    monkeypatch.setattr("skilllab_core.config.load_dotenv", lambda: None)
    return monkeypatch


def test_defaults_are_cache_only(mock_streamlit, clean_env):
    settings = load_settings()

    assert settings.remote_configured is False
    assert settings.cache_capacity_chars == DEFAULT_CACHE_CAPACITY
    assert settings.poll_interval == 15.0


def test_streamlit_secrets(mock_streamlit, clean_env):
    mock_streamlit.secrets = {
        "supabase": {"url": "https://example.supabase.co", "key": "anon"},
        "sync": {"poll_interval": "5", "cache_capacity_chars": 1000},
    }
    settings = load_settings()

    assert settings.remote_configured
    assert settings.poll_interval == 5.0
    assert settings.cache_capacity_chars == 1000


def test_environment_fallback(mock_streamlit, clean_env):
    clean_env.setenv("SUPABASE_URL", "https://env.supabase.co")
    clean_env.setenv("SUPABASE_KEY", "env-key")
    clean_env.setenv("SKILLLAB_REMOTE_TIMEOUT", "3")

    settings = load_settings()

    assert settings.supabase_url == "https://env.supabase.co"
    assert settings.remote_timeout == 3.0


def test_overrides_win(mock_streamlit, clean_env):
    clean_env.setenv("SKILLLAB_CACHE_PATH", "/tmp/from-env.db")
    settings = load_settings({"cache_path": ":memory:"})
    assert settings.cache_path == ":memory:"


@pytest.mark.parametrize("value", ["abc", "0", "-5"])
def test_invalid_numbers(mock_streamlit, clean_env, value):
    clean_env.setenv("SKILLLAB_POLL_INTERVAL", value)
    with pytest.raises(ConfigurationError) as exc:
        load_settings()
    assert exc.value.details["config_key"] == "poll_interval"


def test_remote_configured_needs_both():
    assert SyncSettings(supabase_url="https://x.supabase.co").remote_configured is False


def test_environment_fills_gaps_in_secrets(mock_streamlit, clean_env):
    mock_streamlit.secrets = {"sync": {"poll_interval": "5"}}
    clean_env.setenv("SUPABASE_URL", "https://env.supabase.co")
    clean_env.setenv("SUPABASE_KEY", "env-key")

    settings = load_settings()

    assert settings.remote_configured
    assert settings.supabase_url == "https://env.supabase.co"
    assert settings.poll_interval == 5.0


def test_secrets_win_over_environment(mock_streamlit, clean_env):
    mock_streamlit.secrets = {"supabase": {"url": "https://secret.supabase.co", "key": "anon"}}
    clean_env.setenv("SUPABASE_URL", "https://env.supabase.co")

    assert load_settings().supabase_url == "https://secret.supabase.co"
