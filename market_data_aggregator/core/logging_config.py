"""
Logging configuration for Market Data Aggregator.
JSON output goes through python-json-logger; structured fields such as
provider, symbol and error are passed with ``extra={...}`` and end up as
top-level keys of each record.
"""

import logging
import logging.config
import sys
from typing import Any, Dict, Optional

from pythonjsonlogger.json import JsonFormatter

from .config import Settings, get_settings

ROOT_LOGGER_NAME = "market_data_aggregator"

JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Third-party loggers that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def build_logging_config(log_level: str, log_format: str) -> Dict[str, Any]:
    """dictConfig mapping for the requested level and format ("json" or "text")."""
    if log_format == "json":
        formatter = {
            "()": JsonFormatter,
            "fmt": JSON_FORMAT,
            "datefmt": DATE_FORMAT,
            "rename_fields": {"asctime": "timestamp", "levelname": "level", "name": "logger"},
        }
    else:
        formatter = {"format": TEXT_FORMAT, "datefmt": DATE_FORMAT}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {log_format: formatter},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": log_format,
                "stream": sys.stdout
            }
        },
        "root": {"handlers": ["console"], "level": log_level},
        "loggers": {
            name: {"level": "WARNING"} for name in QUIET_LOGGERS
        }
    }


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure the root logger from settings. Safe to call more than once."""
    settings = settings or get_settings()
    logging.config.dictConfig(build_logging_config(settings.log_level, settings.log_format))


def create_logger(module_name: str) -> logging.Logger:
    """Logger under the service namespace for a module."""
    if module_name == ROOT_LOGGER_NAME or module_name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(module_name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{module_name}")
