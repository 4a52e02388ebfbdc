"""Logging setup for distros-core.

Modules log through ``logging.getLogger(__name__)``; this installs a single
rich handler on the package logger so output matches the CLI console.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "distros_core"

# LOG_LEVEL values used by the CI jobs
_LEVEL_ALIASES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


def parse_level(level: str | None) -> int:
    """Map a LOG_LEVEL string to a logging level, defaulting to INFO."""
    if not level:
        return logging.INFO
    return _LEVEL_ALIASES.get(level.strip().lower(), logging.INFO)


def configure_logging(level: str | None = None, console: Console | None = None) -> logging.Logger:
    """Attach a RichHandler to the package logger.

    Calling it again replaces the handler instead of stacking duplicates.

    Args:
        level: LOG_LEVEL string (debug, info, warn, error)
        console: Console to write to, stderr by default

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.setLevel(parse_level(level))
    logger.propagate = False
    return logger
