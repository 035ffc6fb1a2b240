"""Structured logging configuration for commit-mirror.

- JSON structured logging with StructuredFormatter
- Logger hierarchy under the commit_mirror namespace
- Environment variable control (MIRROR_LOG_LEVEL, MIRROR_LOG_FORMAT)
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER = "commit_mirror"

# Extras with these keys are redacted in JSON output
SENSITIVE_KEYS = {
    "password",
    "token",
    "secret",
    "api_key",
    "apikey",
    "authorization",
    "signature",
    "webhook_secret",
    "notion_api_key",
    "github_token",
}

# Attributes every LogRecord carries; anything else came in through extra=
_STANDARD_FIELDS = frozenset(
    {
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
        "exc_info",
        "exc_text",
        "stack_info",
        "taskName",
    }
)


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """JSON log formatter.

    Outputs one JSON object per line with:
    - timestamp: UTC ISO 8601 format with 'Z' suffix
    - level: Log level name
    - logger: Logger name (commit_mirror hierarchy)
    - message: Log message (event name or %-formatted text)
    - context: extras passed via ``extra=``, secrets redacted
    - exception: formatted traceback when exc_info is set
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            k: ("[REDACTED]" if k.lower() in SENSITIVE_KEYS else v)
            for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }
        if extras:
            log_data["context"] = extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=_json_default)


class TextFormatter(logging.Formatter):
    """Human-readable formatter, selected with MIRROR_LOG_FORMAT=text."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Configure logging for all commit_mirror loggers.

    Args:
        level: Optional log level override. If not provided, uses MIRROR_LOG_LEVEL
               environment variable (default: INFO).

    Environment Variables:
        MIRROR_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR). Default: INFO
        MIRROR_LOG_FORMAT: Output format (json, text). Default: json
    """
    if level is None:
        level = os.getenv("MIRROR_LOG_LEVEL", "INFO")

    log_level = getattr(logging, level.upper(), logging.INFO)

    log_format = os.getenv("MIRROR_LOG_FORMAT", "json").lower()
    formatter = TextFormatter() if log_format == "text" else StructuredFormatter()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)

    # Only add a handler once; configure_logging() runs on every import
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    else:
        for handler in logger.handlers:
            handler.setFormatter(formatter)

    logger.propagate = False
