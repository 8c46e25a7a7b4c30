"""
ThreadRAG - Logging
====================
Package-level logging for every ``threadrag.*`` module.

All loggers are children of the ``threadrag`` logger, which owns the only
handler (stdout, ``asctime | level | name | message``).  Module loggers
propagate to it, so the level can be changed in one place at runtime,
e.g. by the CLI's ``--verbose`` flag.

Verbosity:
  • ``settings.LOG_LEVEL`` when set
  • otherwise ``"dev"`` → DEBUG, ``"prod"`` → WARNING

Component tags (``[INGEST]``, ``[EMBED]``, ``[WRITE]``, ``[RETRIEVE]``,
``[RAG]``, ``[ARCHIVE]``, ``[THREAD]``) prefix the message text.

Usage:
    from threadrag.src.utils.logger import get_logger
    logger = get_logger(__name__)
    logger.info("[INGEST] Document '%s' → %d chunk(s).", doc_id, n)
"""

import logging
import sys
import threading

from threadrag.config.settings import settings

ROOT_LOGGER_NAME = "threadrag"

_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configure_lock = threading.Lock()


def default_level() -> int:
    """Level from ``LOG_LEVEL`` if set, else from ``ENV``."""
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL)
    return _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)


def _root() -> logging.Logger:
    """Return the ``threadrag`` logger, attaching its stdout handler once."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        with _configure_lock:
            if not root.handlers:
                handler = logging.StreamHandler(sys.stdout)
                handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
                root.addHandler(handler)
                root.setLevel(default_level())
                root.propagate = False
    return root


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return the logger for *name* under the ``threadrag`` hierarchy.

    Names outside the package (``__main__`` when a script runs directly)
    are nested as ``threadrag.<name>``.  *level* pins this one logger;
    otherwise it inherits the package level.
    """
    _root()
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


def set_level(level: int | str) -> None:
    """Change the level of every ``threadrag`` logger that has no pinned level."""
    _root().setLevel(level)
