"""
Centralized logging configuration using structlog

Structured events from the price stream and records from stdlib loggers
(websockets, uvicorn) go through the same processors and renderer, so the
service emits a single JSON (or console) stream.
"""

import sys
import logging
from typing import Optional
import structlog
from structlog.processors import JSONRenderer

from ..config.settings import settings

# Transport libraries that log every frame / keepalive at DEBUG
NOISY_LOGGERS = ("websockets", "asyncio")


def configure_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    service_name: Optional[str] = None
) -> None:
    """
    Configure logging for the service

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'text')
        service_name: Bound as 'service' on every event
    """
    level = log_level or settings.log_level
    format_type = log_format or settings.log_format
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if format_type == "json":
        renderer = JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    ))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)

    noisy_level = logging.WARNING if numeric_level > logging.DEBUG else logging.NOTSET
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    if service_name:
        structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str, **initial_context) -> structlog.stdlib.BoundLogger:
    """
    Get a logger with optional context bound to every event

    The logger stays lazy until first use, so module-level loggers created
    before configure_logging() still pick up the final configuration.

    Example:
        logger = get_logger(__name__, component="connection")
        logger.info("price_stream_connected", url="wss://prices.example.com")
    """
    return structlog.get_logger(name, **initial_context)
