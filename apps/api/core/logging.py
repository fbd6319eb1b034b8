"""
Structured logging configuration for the stream pipeline.

JSON lines in production (or LOG_FORMAT=json), plain text otherwise.
Stream services attach request context through `extra`:

    logger.warning("derived mode failed", extra={"activity_id": 42, "processing_mode": "derived"})

and the JSON formatter lifts those keys into the top-level record.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict
from core.config import settings

# Record attributes copied into JSON output when a service sets them via extra=
STREAM_CONTEXT_FIELDS = ("activity_id", "processing_mode", "operation", "tool_call_id", "error_kind")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with stream request context when present."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for name in STREAM_CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Free-form payload: extra={"extra_fields": {...}}
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging() -> logging.Logger:
    """Install a single stdout handler on the root logger; returns it."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # HTTP and model clients log every request at INFO
    for name in ("urllib3", "httpx", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
