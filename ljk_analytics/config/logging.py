"""
Logging Configuration for LJK Exam Analytics

Structured logging over the standard library root logger. Context bound
with ``structlog.contextvars`` (``request_id`` in the API middleware,
``event_key`` and ``event_type`` in the dispatcher) is merged into every
record, including records emitted by concurrent sub-updates of one event.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter
from structlog.types import EventDict, Processor

from ljk_analytics.config.settings import Settings, get_settings


# Library loggers routed through our handler, with the level they are capped at
# (None follows the configured level)
LIBRARY_LOGGERS: Dict[str, Optional[int]] = {
    "uvicorn": None,
    "uvicorn.error": None,
    "uvicorn.access": logging.WARNING,
    "aiokafka": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


def drop_color_message_key(_, __, event_dict: EventDict) -> EventDict:
    """uvicorn duplicates its message under ``color_message``"""
    event_dict.pop("color_message", None)
    return event_dict


def service_context(settings: Settings) -> Processor:
    """Stamp every record with the service name and environment"""

    def add_service(_, __, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        return event_dict

    return add_service


def shared_processors(settings: Settings) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso"),
        service_context(settings),
        drop_color_message_key,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(log_level: Optional[str] = None, stream: Any = None) -> None:
    """
    Configure structured logging for the API, the stream consumer and the
    replay flows.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        stream: Output stream, stdout by default
    """
    settings = get_settings()
    level = log_level or settings.monitoring.log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    processors = shared_processors(settings)

    structlog.configure(
        processors=processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if settings.monitoring.log_format == "json":
        renderer = JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream is None and sys.stdout.isatty())

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(ProcessorFormatter(processor=renderer, foreign_pre_chain=processors))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    for name, cap in LIBRARY_LOGGERS.items():
        library_logger = logging.getLogger(name)
        library_logger.handlers = [handler]
        library_logger.setLevel(max(numeric_level, cap or numeric_level))
        library_logger.propagate = False

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=settings.monitoring.log_format,
    )
