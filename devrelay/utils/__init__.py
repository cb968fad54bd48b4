"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

from devrelay.config import settings


def setup_logging(level: str | None = None, fmt: str | None = None, service: str | None = None) -> None:
    """Configure structlog for devrelay.

    Logs go to stderr so command output on stdout stays clean. ``fmt`` is
    ``json`` (one object per line, tracebacks as dicts) or ``console``.
    ``service`` is bound into the context of every event logged from this
    process afterwards, so API and compute worker logs can be told apart.
    """
    name = (level or settings.log_level).upper()
    log_level = logging.getLevelNamesMapping().get(name, logging.INFO)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if (fmt or settings.log_format) == "json":
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    if service:
        structlog.contextvars.bind_contextvars(service=service)


def preview(text: str, limit: int = 120) -> str:
    """Single-line excerpt of ``text`` for log fields."""
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."
