"""Logging configuration for the library.

Log events are emitted through `structlog` with snake case event names and
key/value context, e.g. `logger.info("flush_completed", inserted=3)`.
`configure()` sets up the processor chain, and `install_query_logging()`
attaches a listener to an engine that logs every SQL statement and its
parameters as a `query` event.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import event

from sqla_populate import settings

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine
    from structlog.types import Processor

__all__ = ["configure", "install_query_logging"]

logger = structlog.get_logger()


def configure(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog.

    Args:
        level: Minimum level name, defaults to `settings.log.LEVEL`.
        fmt: `"console"` or `"json"`, defaults to `settings.log.FORMAT`.
    """
    level = (level or settings.log.LEVEL).upper()
    fmt = fmt or settings.log.FORMAT

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def install_query_logging(engine: Engine) -> None:
    """Log each statement executed on `engine` at debug level."""

    @event.listens_for(engine, "before_cursor_execute")
    def _log_query(  # pylint: disable=too-many-arguments
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        logger.debug("query", statement=statement, parameters=parameters, executemany=executemany)
