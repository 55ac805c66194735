"""Structured logging configuration using *structlog*."""

from __future__ import annotations

import logging
import sys

import structlog


def _renderer(json_output: bool) -> list:
    if json_output:
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer()]


def setup_logging(level: str = "INFO", *, json_output: bool | None = None) -> None:
    """Configure *structlog* processors and stdlib integration.

    Call once at application startup.  Output goes to stderr: a console
    renderer on a TTY, JSON lines otherwise (or as forced by
    *json_output*).  ``warnings.warn`` output, such as ingestion
    :class:`~wearable_telemetry.errors.DataLoss`, is routed through stdlib
    logging at the same level.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    if json_output is None:
        json_output = not sys.stderr.isatty()

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric)
    logging.captureWarnings(True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *_renderer(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
