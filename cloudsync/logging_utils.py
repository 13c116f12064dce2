"""
Structured JSON logging for sync operations.

Every record the engine emits for a verb call carries the document it is
about (collection, key) and where the call stands (verb, phase, attempts,
outcome). The JSON formatter groups those under a single "sync" object so
log pipelines can follow one document's history without knowing which
component logged it.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

PACKAGE_LOGGER = "cloudsync"

# Record attributes grouped under "sync" in JSON output
SYNC_FIELDS = ("collection", "key", "verb", "phase", "attempts", "outcome")

_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def sync_context(record: logging.LogRecord) -> dict[str, Any]:
    """Sync fields attached to a record, in SYNC_FIELDS order."""
    return {name: getattr(record, name) for name in SYNC_FIELDS if hasattr(record, name)}


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats records as single-line JSON objects.

    Output keys:
    - timestamp: ISO 8601 in UTC, from the record's creation time
    - level, logger, message
    - sync: collection / key / verb / phase / attempts / outcome, when present
    - exception: formatted traceback, when present
    Any other extra attribute is copied to the top level, stringified if it
    is not JSON serializable.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = sync_context(record)
        if context:
            log_obj["sync"] = context

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in SYNC_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_obj[key] = value
            except (TypeError, ValueError):
                log_obj[key] = str(value)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
) -> logging.Logger:
    """
    Send a logger's records to stdout as JSON lines.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger,
            None for the root logger)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Replace rather than stack handlers on repeat calls
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger.addHandler(handler)
    logger.setLevel(level)

    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """
    Get a logger under the package namespace.

    Accepts a component name ('engine') or a module name that is already
    inside the package ('cloudsync.stores.cosmos').
    """
    if name == PACKAGE_LOGGER or name.startswith(f"{PACKAGE_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps a verb call's context on every record.

    Fields passed per call through ``extra`` win over the bound ones, so a
    call can report its current phase without rebinding.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs
