"""Loguru setup for the CLI.

Everything is written to stderr; stdout is reserved for tables, URL
summaries and ``env --export`` output that other tools consume.  The docker
SDK and urllib3 log through the stdlib ``logging`` module, so their records
are re-emitted through loguru to share one format.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

QUIET_LOGGERS = ("docker", "urllib3")
"""Library loggers capped at WARNING; their INFO output is per-request noise."""

_FORMAT = "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <level>{message}</level>"
_DEBUG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}:{line}</cyan> | <level>{message}</level>"
)


class _StdlibBridge(logging.Handler):
    """Re-emit stdlib ``logging`` records through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging's own frames so {name}:{line} points at the library caller.
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a stderr sink at *level*.

    DEBUG adds the emitting module and line to every message.
    """
    level = level.upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=_DEBUG_FORMAT if level == "DEBUG" else _FORMAT)

    logging.basicConfig(handlers=[_StdlibBridge()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Log level set to {}", level)
