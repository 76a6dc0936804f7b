"""
Logging setup shared by the service modules.

Modules grab a named logger with get_logger(); the process entrypoint calls
configure_logging() once. Nothing here ever formats key material.
"""
import logging
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_ROOT_NAME = "privacy_cash"
_configured = False


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(f"{_ROOT_NAME}.{name}")
    logger.addHandler(logging.NullHandler())
    return logger


def configure_logging(level: str = LOG_LEVEL) -> logging.Logger:
    """Attach a single stderr handler to the package logger; safe to call twice."""
    global _configured
    root = logging.getLogger(_ROOT_NAME)
    root.setLevel(level)
    if not _configured:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        _configured = True
    return root
