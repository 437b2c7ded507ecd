"""Logging utilities."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record):
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(level: str = "INFO", log_format: str = "text",
                  logger_name: str = "modelhost") -> logging.Logger:
    """Install a stdout handler on the package logger.

    Calling it again replaces the previously installed handler instead of
    stacking a second one.
    """
    log_level = getattr(logging, level.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Invalid log level: {level}")

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.set_name("modelhost-stdout")

    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        if existing.get_name() == "modelhost-stdout":
            logger.removeHandler(existing)
    logger.setLevel(log_level)
    logger.addHandler(handler)

    return logger
