# =============================================================================
# tests/unit/test_logging.py
# Unit Tests for logging configuration
# =============================================================================

import logging

import pytest

from skilllab_core.logging import LogContext, get_logger, setup_logging
from skilllab_core.logging import config as log_config


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(log_config, "LOG_DIR", tmp_path / "logs")
    yield tmp_path / "logs"
    logging.basicConfig(force=True, handlers=[logging.NullHandler()])


def test_setup_logging_writes_file(log_dir):
    setup_logging(log_filename="sync.log")
    get_logger("skilllab_core.test").info("cache opened")

    for handler in logging.getLogger().handlers:
        handler.flush()
    content = (log_dir / "sync.log").read_text()
    assert "| skilllab_core.test | INFO | cache opened" in content


def test_noisy_loggers_are_quieted(log_dir):
    setup_logging(log_to_file=False)
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("supabase").level == logging.WARNING


def test_log_context_reports_failure(caplog):
    logger = get_logger("skilllab_core.test")

    with caplog.at_level(logging.INFO, logger="skilllab_core.test"):
        with pytest.raises(ValueError):
            with LogContext(logger, "Merging students"):
                raise ValueError("bad record")

    messages = [r.getMessage() for r in caplog.records]
    assert "Merging students... started" in messages
    assert any(m.startswith("Merging students... failed") for m in messages)
