"""
Logging setup shared by every shielded_pool module.

Modules call get_logger("<area>") at import time; the application calls
configure_logging() once at startup. Library users that never call it get a
NullHandler and no output.
"""
from __future__ import annotations

import logging
from typing import Optional

from shielded_pool.config import LOG_LEVEL

ROOT_LOGGER = "shielded_pool"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

logging.getLogger(ROOT_LOGGER).addHandler(logging.NullHandler())

_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stream handler to the package root logger (idempotent)."""
    global _configured
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel((level or LOG_LEVEL).upper())
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
