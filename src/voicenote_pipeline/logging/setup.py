"""
Structlog configuration for pipeline workers.

``setup_logging`` runs once per process. Every line carries the service name
plus any process fields given at setup (the queue driver, for example); lines
emitted while a job runs also carry the identifiers bound by
``bind_job_context``. Records from stdlib loggers (redis, aiohttp, uvicorn)
go through the same processors and renderer.
"""

import logging
import sys
from collections.abc import Generator
from contextlib import contextmanager

import structlog

from voicenote_pipeline.logging.processors import add_process_fields, censor_sensitive_data

# Client and server libraries that log every request; held at WARNING unless
# the pipeline itself runs at DEBUG.
NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "redis", "uvicorn.access")


def _shared_processors(service_name: str, process_fields: dict[str, object]) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        add_process_fields(service=service_name, **process_fields),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        censor_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "dev":
        return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
    **process_fields: object,
) -> None:
    """
    Configure structlog and stdlib logging for the worker process.

    Args:
        service_name: Bound as ``service`` on every line.
        log_level: Root level name; unknown names fall back to INFO.
        log_format: ``json`` for one object per line, ``dev`` for console output.
        **process_fields: Extra fields bound to every line, e.g. ``queue_driver``.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    shared_processors = _shared_processors(service_name, process_fields)

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(log_format),
        ],
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET if level <= logging.DEBUG else logging.WARNING)


def get_logger(**initial_bindings: object) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger."""
    return structlog.get_logger(**initial_bindings)


@contextmanager
def bind_job_context(**bindings: object) -> Generator[None, None, None]:
    """Bind job identifiers to every log line emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(**bindings)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
