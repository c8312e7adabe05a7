"""
Chat Sync Core - Logging Configuration
Centralized logger setup shared by every service module
"""

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

from pythonjsonlogger import json as json_log

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "aiohttp", "asyncio")

_handler: Optional[logging.Handler] = None


class JsonFormatter(json_log.JsonFormatter):
    """Single-line JSON log records with an ISO-8601 UTC timestamp"""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname


def setup_logging(level: str = "INFO", log_format: Optional[str] = None) -> logging.Handler:
    """
    Configure the root logger.

    Calling it again swaps the handler installed by the previous call,
    handlers added by anything else are left alone.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        log_format: "text" or "json" (defaults to LOG_FORMAT env var)
    """
    global _handler

    log_format = (log_format or os.getenv("LOG_FORMAT", "text")).lower()

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        ))

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    _handler = handler

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler


def get_logger(name: str) -> logging.Logger:
    """Get a named logger"""
    return logging.getLogger(name)
