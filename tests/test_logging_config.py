"""
test_logging_config.py — Tests for freightintel/logging_config.py

Verifies Loguru setup, stdlib logging interception, level and JSON
switches from settings, and the optional file sink.

Called by: pytest
Depends on: freightintel/logging_config.py
"""

import logging
from unittest.mock import patch

import pytest
from loguru import logger

from freightintel.config import settings
from freightintel.logging_config import setup_logging


@pytest.fixture(autouse=True)
def _clean_loguru():
    """Remove all handlers before/after each test for isolation."""
    logger.remove()
    yield
    logger.remove()


def test_setup_logging_adds_handler():
    assert len(logger._core.handlers) == 0
    setup_logging()
    assert len(logger._core.handlers) > 0


def test_stdlib_logging_intercepted():
    """After setup, SQLAlchemy-style stdlib records go through Loguru."""
    setup_logging()

    # setup calls logger.remove() internally, so add the sink after
    messages = []
    logger.add(lambda m: messages.append(str(m)), format="{message}")

    logging.getLogger("freightintel.test").warning("intercepted message")

    assert any("intercepted message" in m for m in messages)


def test_noisy_loggers_quietened():
    setup_logging()
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_log_level_from_settings():
    with patch.object(settings, "log_level", "warning"), patch("loguru.logger.add") as mock_add:
        setup_logging()
    assert mock_add.call_args_list[0].kwargs["level"] == "WARNING"


def test_json_mode_uses_serialize():
    with patch.object(settings, "log_json", True), patch("loguru.logger.add") as mock_add:
        setup_logging()
    serialize_calls = [c for c in mock_add.call_args_list if c.kwargs.get("serialize") is True]
    assert len(serialize_calls) >= 1


def test_production_defaults_to_json():
    with patch.object(settings, "app_env", "production"), patch("loguru.logger.add") as mock_add:
        setup_logging()
    assert mock_add.call_args_list[0].kwargs.get("serialize") is True


def test_file_sink(tmp_path):
    log_file = tmp_path / "freightintel.log"
    with patch.object(settings, "log_file", str(log_file)):
        setup_logging()
    logger.info("to the file")
    logger.complete()
    assert "to the file" in log_file.read_text()
