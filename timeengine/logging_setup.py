"""Package logging.

Library modules only call ``get_logger``; the HTTP entrypoint calls
``configure_logging`` once to route ``timeengine.*`` records to stderr.
"""

from __future__ import annotations

import logging

from timeengine.config import get_log_level

PACKAGE_LOGGER = "timeengine"
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def configure_logging() -> None:
    logger = logging.getLogger(PACKAGE_LOGGER)
    if any(type(handler) is logging.StreamHandler for handler in logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.handlers = [h for h in logger.handlers if not isinstance(h, logging.NullHandler)]
    logger.addHandler(handler)
    logger.setLevel(get_log_level())
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if not package_logger.handlers:
        package_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
