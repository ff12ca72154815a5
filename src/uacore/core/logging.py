"""Structured logging configuration using structlog.

Call configure_logging() once at program startup, before the first client is
created. The output format follows UACORE_LOG_FORMAT:
  - "console" (default): colored, human-readable development output
  - "json": one JSON object per line for log shippers

Every record emitted while a client is connecting or connected carries the
endpoint it belongs to (see bound_endpoint()).
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from uacore.core.config import Settings, get_settings


def configure_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    settings: Settings | None = None,
) -> None:
    """Configure structlog and route stdlib logging through it.

    Explicit arguments win over settings; settings default to get_settings().

    Args:
        log_format: "console" for dev-friendly output, "json" for log shippers.
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
        settings: Settings to take defaults from.
    """
    settings = settings or get_settings()
    log_format = log_format or settings.log_format
    log_level = log_level or settings.log_level

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # asyncio reports every cancelled socket at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)


@contextmanager
def bound_endpoint(endpoint: str) -> Iterator[None]:
    """Attach `endpoint=<url>` to every log record emitted inside the block.

    Tasks created inside the block inherit the binding through contextvars.
    """
    with structlog.contextvars.bound_contextvars(endpoint=endpoint):
        yield
