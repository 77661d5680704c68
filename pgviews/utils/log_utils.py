"""
Logging setup for pgviews.

Every module logs through ``get_logger(__name__)``, which yields a child of
the ``pgviews`` logger. Output goes to stdout in a pipe-separated format;
the level comes from PGVIEWS_LOG_LEVEL (default INFO).
"""

import logging
import os
import sys
from typing import Optional

ROOT_LOGGER = "pgviews"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s"

# Libraries that are chatty at INFO/DEBUG.
_QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "sqlglot": logging.ERROR,
}

_configured = False


def _level_from_env(default: int) -> int:
    name = os.getenv("PGVIEWS_LOG_LEVEL", "").upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def setup_logging(level: Optional[int] = None, format_string: str = LOG_FORMAT) -> logging.Logger:
    """Configure stdout logging once; later calls just return the root pgviews logger."""
    global _configured

    if not _configured:
        logging.basicConfig(
            level=level if level is not None else _level_from_env(logging.INFO),
            format=format_string,
            handlers=[logging.StreamHandler(sys.stdout)],
        )
        for name, quiet_level in _QUIET_LOGGERS.items():
            logging.getLogger(name).setLevel(quiet_level)
        _configured = True

    return logging.getLogger(ROOT_LOGGER)


def get_logger(name: str) -> logging.Logger:
    """
    Logger for a module, always under ``pgviews``.

    ``get_logger(__name__)`` inside pgviews.views.compiler and
    ``get_logger("views.compiler")`` return the same logger.
    """
    setup_logging()
    prefix = ROOT_LOGGER + "."
    if name.startswith(prefix):
        name = name[len(prefix):]
    return logging.getLogger(prefix + name)
