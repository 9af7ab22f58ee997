from __future__ import annotations

import logging
import os
import sys

PACKAGE_LOGGER = "balance_tracker"
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def configure_logging(level: int | str | None = None) -> logging.Logger:
    """Attach one stderr handler to the package logger.

    Safe to call repeatedly; ``level`` defaults to ``BALANCE_TRACKER_LOG_LEVEL``
    and then INFO.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    if level is None:
        level = os.getenv("BALANCE_TRACKER_LOG_LEVEL", "INFO")
    logger.setLevel(level.strip().upper() if isinstance(level, str) else level)

    if not any(getattr(handler, "_balance_tracker", False) for handler in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._balance_tracker = True
        logger.addHandler(handler)
        logger.propagate = False
    return logger
