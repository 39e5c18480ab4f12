"""Structured logging setup.

Events are emitted through structlog on top of the standard library
logging machinery, so log levels and handlers configured for the host
process (uvicorn, pytest) keep working.

Example:
    >>> from overviews.core import config, logging
    >>> logging.configure_logging(config.get_settings())
    >>> logger = structlog.get_logger(__name__)
    >>> logger.info("Overview created", table="_vovw_5_cities", z=5)
"""

import logging

import structlog

from overviews.core import config


def configure_logging(settings: config.Settings) -> None:
    """Configure structlog and the root stdlib logger.

    Args:
        settings: Application settings providing level and renderer choice.
    """
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    renderer: structlog.typing.Processor
    if settings.log_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
