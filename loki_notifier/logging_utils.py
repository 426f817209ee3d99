#!/usr/bin/env python3
"""
Loki Notifier - Logging Utilities

Structured logging for the notifier service. Production deployments log NDJSON
(one JSON object per line) so the notifier's own logs can be shipped back into
Loki; development uses a readable text format.

Key Features:
- NDJSON format, enabled by LOG_JSON_ENABLED or a production environment
- Correlation ID injection from request handlers and dispatch workers
- Thread-safe

Usage:
    from loki_notifier.logging_utils import setup_json_logging, get_logger

    # At service startup
    setup_json_logging(service_name="loki-notifier", version="1.0.0", level="INFO")

    # In modules
    logger = get_logger(__name__)
    logger.info("Dispatched alert", extra={"chat_id": -100123})

Environment Variables:
    LOG_JSON_ENABLED: Force JSON logging on or off (default: follow environment)
    LOG_LEVEL: Logging level override
    POD_NAME: Kubernetes pod name for metadata
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TEXT_LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"

_TRUE_VALUES = ("true", "1", "yes", "on")

# LogRecord attributes that are not user-supplied `extra` fields
_RESERVED_RECORD_KEYS = frozenset([
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
])


class CorrelationID:
    """Thread-local storage for correlation IDs."""
    _storage = threading.local()

    @staticmethod
    def set(cid: str) -> None:
        CorrelationID._storage.id = cid

    @staticmethod
    def get() -> str:
        return getattr(CorrelationID._storage, 'id', 'system')

    @staticmethod
    def clear() -> None:
        CorrelationID._storage.id = 'system'


class CorrelationIdFilter(logging.Filter):
    """Automatically adds correlation ID to all log records."""
    def filter(self, record):
        if not getattr(record, "correlation_id", None):
            record.correlation_id = CorrelationID.get()
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formatter that outputs logs as NDJSON (newline-delimited JSON).

    Fields included:
    - timestamp: ISO 8601 format with timezone
    - level, message, logger, module, function, line, thread
    - service, version, pod_name
    - correlation_id: Request or job correlation ID ("system" otherwise)
    - error: Exception details (if exception present)
    - any `extra={}` fields passed to the log call
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.thread,
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        if record.exc_info:
            exc_type, exc_value = record.exc_info[:2]
            log_entry["error"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": self.formatException(record.exc_info),
            }

        log_entry.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RESERVED_RECORD_KEYS
        )

        # Values json cannot encode (objects, sets, bytes) are written as str()
        return json.dumps(log_entry, default=str)


def json_logging_enabled(environment: Optional[str] = None) -> bool:
    """
    LOG_JSON_ENABLED wins when set; otherwise JSON is used in production.
    """
    explicit = os.getenv("LOG_JSON_ENABLED")
    if explicit is not None and explicit.strip() != "":
        return explicit.strip().lower() in _TRUE_VALUES
    return (environment or "").lower() == "production"


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
    environment: Optional[str] = None,
) -> logging.Logger:
    """
    Configure root logging for the service.

    Idempotent: existing root handlers are replaced.

    Args:
        service_name: Name of the service
        version: Service version string
        level: Logging level name (LOG_LEVEL env overrides it)
        environment: Deployment environment; "production" selects JSON output

    Returns:
        Configured root logger
    """
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    handler.addFilter(CorrelationIdFilter())

    json_enabled = json_logging_enabled(environment)
    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))

    logger.addHandler(handler)

    if json_enabled:
        logger.info(f"JSON logging enabled for service={service_name} version={version}")
    else:
        logger.info(f"Standard logging enabled for service={service_name}")

    return logger


def get_logger(name: str = __name__) -> logging.Logger:
    """
    Get a named logger instance.

    The logger inherits the configuration set up by setup_json_logging().
    """
    return logging.getLogger(name)
