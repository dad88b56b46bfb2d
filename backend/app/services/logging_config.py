"""Structured logging configuration for the road progress backend."""
import logging
import json
import sys
from datetime import datetime, timezone

# Record attributes lifted into the JSON line when a caller passes them via ``extra``
EXTRA_FIELDS = (
    "duration_ms",
    "request_id",
    "http_method",
    "http_path",
    "http_status",
    "group_key",
    "keeper_id",
    "removed_ids",
    "entry_ids",
    "violation_count",
)


class JSONFormatter(logging.Formatter):
    """JSON structured log formatter for production."""
    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True):
    """Configure application logging."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
        ))

    root.handlers = [handler]

    # Suppress noisy loggers
    for name in ["uvicorn.access", "sqlalchemy.engine", "celery.app.trace"]:
        logging.getLogger(name).setLevel(logging.WARNING)
