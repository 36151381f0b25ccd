"""Structured logging for the service, with per-request context."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import structlog

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
stage_var: ContextVar[str] = ContextVar("stage", default="")

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# httpx logs every request at INFO; one line per poll is too much
QUIET_LOGGERS = ("httpx", "httpcore")

_handler: Optional[logging.Handler] = None


@contextmanager
def request_context(request_id: str, stage: str = "") -> Iterator[None]:
    """
    Tag every event logged inside the block with a BLT request.

    The previous context is restored on exit, so nested blocks and
    concurrent tasks do not see each other's request.
    """
    request_token = request_id_var.set(request_id)
    stage_token = stage_var.set(stage)
    try:
        yield
    finally:
        stage_var.reset(stage_token)
        request_id_var.reset(request_token)


def set_stage(stage: str) -> None:
    """Update the stage of the current request context."""
    stage_var.set(stage)


def add_request_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)
    return event_dict


def add_timestamp(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def configure_logging(
    level: str = "info",
    format_type: str = "json",
    stream: Any = None,
) -> None:
    """
    Configure structlog and route standard-library loggers through it.

    uvicorn and httpx log through ``logging``; their records get the same
    renderer, timestamps and request context as the service's own events.

    Args:
        level: Log level (debug, info, warn, error)
        format_type: Output format ('json' or 'text')
        stream: Output stream (default: sys.stderr)
    """
    global _handler

    stream = stream or sys.stderr
    log_level = LEVELS.get(level.lower(), logging.INFO)

    shared: list[structlog.types.Processor] = [
        structlog.stdlib.add_log_level,
        add_timestamp,
        add_request_context,
    ]
    if format_type == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    root.setLevel(log_level)
    _handler = handler

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=shared + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(stream),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger, bound to a component name when given."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger


configure_logging()
