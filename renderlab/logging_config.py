"""
Structured logging configuration.

Configures structlog to emit one JSON object per line on **stdout** with
the fields every log consumer can rely on: ``timestamp`` (ISO 8601 UTC),
``level`` (uppercase), ``event``, ``service_name``, and, inside a request,
``correlation_id`` (bound by ``CorrelationIdMiddleware`` through
``structlog.contextvars``).

Standard library loggers used by third-party packages (Uvicorn, httpx)
go through the same processor chain, so their records come out as the
same JSON.  Uvicorn's own access log is silenced because
``CorrelationIdMiddleware`` already logs every request with its
correlation ID and duration.
"""

import logging
import sys

import structlog

SERVICE_NAME = "renderlab-api"

_SILENCED_STANDARD_LIBRARY_LOGGERS = ("uvicorn.access",)


def _add_service_name(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    event_dict["service_name"] = SERVICE_NAME
    return event_dict


def _uppercase_level(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure structlog and the root logger for JSON output on stdout.

    Unknown level names fall back to INFO.  Call once during application
    startup, before any log messages are emitted; calling it again
    replaces the previous handler rather than adding a second one.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_service_name,
        structlog.stdlib.add_log_level,
        _uppercase_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for silenced_logger_name in _SILENCED_STANDARD_LIBRARY_LOGGERS:
        logging.getLogger(silenced_logger_name).disabled = True
