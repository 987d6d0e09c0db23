"""Structured logging configuration."""

from __future__ import annotations

import logging
from typing import Any

import structlog
from opentelemetry.trace import get_current_span


def _add_trace_id(
    _logger: structlog.typing.WrappedLogger,
    _name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Inject ``trace_id`` from the current span into log records."""

    span = get_current_span()
    ctx = span.get_span_context()
    if ctx.trace_id:
        event_dict["trace_id"] = f"{ctx.trace_id:032x}"
    return event_dict


def _service_tagger(service_name: str) -> structlog.typing.Processor:
    def _add_service(
        _logger: structlog.typing.WrappedLogger,
        _name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return _add_service


def setup_logging(
    service_name: str,
    level: int | str = logging.INFO,
    *,
    json_output: bool = True,
) -> None:
    """Configure structlog for a service.

    JSON lines are emitted by default; ``json_output=False`` switches to the
    human-friendly console renderer for local runs.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    renderer: structlog.typing.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            _service_tagger(service_name),
            _add_trace_id,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=level)


def get_logger(*args: Any, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Return a configured structlog logger."""

    return structlog.get_logger(*args, **kwargs)
