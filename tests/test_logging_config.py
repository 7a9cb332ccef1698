"""Tests for market_data_aggregator.core.logging_config."""

import json
import logging

import pytest
from pythonjsonlogger.json import JsonFormatter

from market_data_aggregator.core.config import load_settings
from market_data_aggregator.core.logging_config import (
    build_logging_config, create_logger, setup_logging
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestBuildLoggingConfig:
    def test_json_uses_json_formatter(self):
        config = build_logging_config("INFO", "json")

        assert config["formatters"]["json"]["()"] is JsonFormatter
        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["loggers"]["httpx"] == {"level": "WARNING"}

    def test_text_uses_plain_format(self):
        config = build_logging_config("DEBUG", "text")

        assert "()" not in config["formatters"]["text"]
        assert config["root"]["level"] == "DEBUG"


def test_create_logger_is_namespaced():
    assert create_logger("services.cache").name == "market_data_aggregator.services.cache"
    assert create_logger("market_data_aggregator.main").name == "market_data_aggregator.main"


def test_json_records_carry_extra_fields():
    setup_logging(load_settings({"log_level": "info", "log_format": "json"}))
    handler = logging.getLogger().handlers[0]

    record = logging.LogRecord("market_data_aggregator.test", logging.WARNING, __file__, 1,
                               "Provider failed", None, None)
    record.provider = "finnhub"
    payload = json.loads(handler.format(record))

    assert payload["message"] == "Provider failed"
    assert payload["level"] == "WARNING"
    assert payload["provider"] == "finnhub"
    assert logging.getLogger("httpcore").level == logging.WARNING
