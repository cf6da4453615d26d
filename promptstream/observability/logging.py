"""
Logging configuration for the generation pipeline.

Uses structlog for structured JSON logging, pretty output when debugging.
"""

import logging
import sys
from typing import Any

import structlog

from ..config import Settings


def configure_logging(settings: Settings) -> None:
    """
    Configure structured logging for the application.

    Logs go to stderr so they never interleave with the streamed answer.
    """
    is_dev = settings.log_level == "DEBUG"

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    if is_dev:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.log_level),
    )

    # Quiet the model stack unless we are debugging
    for name in ("vllm", "transformers", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(
            logging.DEBUG if is_dev else logging.WARNING
        )

    logger = structlog.get_logger()
    logger.debug(
        "Logging configured",
        level=settings.log_level,
        format="json" if not is_dev else "console",
    )
