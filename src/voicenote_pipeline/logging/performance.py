"""Performance measurement logging."""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog


@asynccontextmanager
async def log_performance(
    logger: structlog.stdlib.BoundLogger, operation: str, **extra: Any
) -> AsyncGenerator[None, None]:
    """Async context manager that logs the duration of an awaited operation."""
    start = time.perf_counter()
    try:
        yield
    except BaseException:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.warning("operation_failed", operation=operation, duration_ms=elapsed_ms, **extra)
        raise
    else:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "operation_completed",
            operation=operation,
            duration_ms=elapsed_ms,
            **extra,
        )
