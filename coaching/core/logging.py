"""Structured logging configuration using structlog.

Console output in development, one JSON object per line otherwise. Service modules
keep using ``logging.getLogger(__name__)``; their records go through the same
structlog processors as loggers obtained from :func:`get_logger`.

Example:
    >>> from coaching.core.config import settings
    >>> setup_logging(settings)
    >>> logger = get_logger(__name__)
    >>> logger.info("Monthly fees generated", generated_count=12)
"""

import logging
import sys
from typing import TYPE_CHECKING, List

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from coaching.core.config import Settings


def setup_logging(settings: "Settings") -> None:
    """Configure structlog and route standard library logging through it.

    Args:
        settings: Application settings providing log_level and environment.
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development:
        renderer_chain: List[Processor] = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    else:
        renderer_chain = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Records from logging.getLogger() get the shared processors via foreign_pre_chain
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *renderer_chain,
            ],
        )
    )

    root = logging.getLogger()
    for existing in [h for h in root.handlers if isinstance(h.formatter, structlog.stdlib.ProcessorFormatter)]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)

    for logger_name in [
        "uvicorn.access",
        "httpx",
        "httpcore",
        "sqlalchemy",
        "aiosqlite",
        "asyncio",
    ]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("coaching").setLevel(log_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for key/value events, e.g. ``logger.info("Fee created", fee_id=...)``."""
    return structlog.get_logger(name)


def bind_context(**kwargs: object) -> None:
    """Attach key/values to every log line emitted in the current context (request)."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
