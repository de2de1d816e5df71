"""Structured logging for meditrack.

Call sites use plain ``logging.getLogger(__name__)``; :func:`configure_logging`
routes every stdlib record through structlog's ``ProcessorFormatter``.
Records carry the signed-in identity (from a ContextVar) and, inside a span,
the OpenTelemetry trace and span ids.

Formats: ``text`` renders coloured console lines, ``json`` renders JSON
lines. With ``log_root`` set, JSON lines are also appended to
``{log_root}/meditrack.log`` at DEBUG level.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

LOG_FILE_NAME = "meditrack.log"

_identity_context: ContextVar[str | None] = ContextVar("meditrack_identity", default=None)

# Third-party loggers capped at WARNING whatever the root level.
_NOISE_LOGGERS = ("asyncio",)


def set_identity_context(identity: str | None) -> None:
    _identity_context.set(identity)


def get_identity_context() -> str | None:
    return _identity_context.get()


def add_identity_context(_logger: object, _method: str, event_dict: dict) -> dict:
    event_dict["identity"] = get_identity_context()
    return event_dict


def add_otel_context(_logger: object, _method: str, event_dict: dict) -> dict:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_identity_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(
    handler: logging.Handler, renderer: structlog.types.Processor, timestamp_fmt: str
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=_pre_chain(timestamp_fmt),
        )
    )
    return handler


def configure_logging(
    level: str = "INFO", fmt: str = "text", log_root: Path | None = None
) -> None:
    """Install the meditrack handlers on the root logger, replacing any present."""
    if fmt == "json":
        renderer, timestamp_fmt = structlog.processors.JSONRenderer(), "iso"
    else:
        renderer, timestamp_fmt = structlog.dev.ConsoleRenderer(), "%H:%M:%S"

    handlers = [_handler(logging.StreamHandler(sys.stderr), renderer, timestamp_fmt)]
    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_root / LOG_FILE_NAME)
        file_handler.setLevel(logging.DEBUG)
        handlers.append(_handler(file_handler, structlog.processors.JSONRenderer(), "iso"))

    root = logging.getLogger()
    for old in root.handlers:
        if isinstance(old, logging.FileHandler):
            old.close()
    root.handlers[:] = handlers
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # structlog.get_logger() callers go through the same stdlib handlers.
    structlog.configure(
        processors=[
            *_pre_chain(timestamp_fmt),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
