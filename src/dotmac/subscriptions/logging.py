"""
Structured logging setup using structlog directly.
"""

import logging

import structlog

from dotmac.subscriptions.settings import Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """
    Setup structured logging with structlog.

    Uses the observability section of the settings.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.observability.log_level.value)
    logging.basicConfig(format="%(message)s", level=level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

