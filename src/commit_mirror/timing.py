"""Timing utilities for structured logging.

Uses time.perf_counter() for sub-millisecond precision timing.
"""

import logging
import time
from contextlib import contextmanager
from typing import Optional


@contextmanager
def timed_operation(
    operation: str,
    logger: logging.Logger,
    level: int = logging.INFO,
    extra: Optional[dict] = None,
):
    """Context manager for timing operations with structured logging.

    Logs ``{operation}_completed`` with ``duration_ms`` on success, or
    ``{operation}_failed`` with the error on failure, then re-raises.

    Args:
        operation: Operation name (used in log message as {operation}_completed)
        logger: Logger instance to use for logging
        level: Log level for success case (default: INFO)
        extra: Optional dict of extra context to include in log

    Example:
        >>> logger = logging.getLogger("commit_mirror.coordinator")
        >>> with timed_operation("sync_repository", logger, extra={"repository": "acme/widgets"}):
        ...     pass

    Logs on success:
        {"timestamp": "...", "level": "INFO", "message": "sync_repository_completed",
         "context": {"repository": "acme/widgets", "duration_ms": 145.23, "status": "success"}}
    """
    start = time.perf_counter()
    _extra = extra or {}

    try:
        yield

        duration_ms = (time.perf_counter() - start) * 1000
        logger.log(
            level,
            f"{operation}_completed",
            extra={
                **_extra,
                "duration_ms": round(duration_ms, 2),
                "status": "success",
            },
        )

    except Exception as e:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.error(
            f"{operation}_failed",
            extra={
                **_extra,
                "duration_ms": round(duration_ms, 2),
                "status": "failed",
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        raise
