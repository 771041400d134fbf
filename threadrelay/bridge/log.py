"""Logging configuration using loguru.

Intercepts stdlib logging so that uvicorn, httpx and the agent SDK all flow
through loguru with a unified format.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Libraries whose INFO output drowns relay lifecycle messages.
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")
SDK_LOGGERS = ("claude_agent_sdk",)


class _InterceptHandler(logging.Handler):
    """Forward stdlib records to loguru, keeping the original call-site."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", *, debug: bool = False) -> None:
    """Make loguru the only sink for the relay process.

    ``debug`` forces DEBUG regardless of ``level`` and lets the agent SDK's
    own records through.
    """
    level = "DEBUG" if debug else level.upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    quiet = NOISY_LOGGERS if debug else NOISY_LOGGERS + SDK_LOGGERS
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("threadrelay logging ready (level={}, debug={})", level, debug)
