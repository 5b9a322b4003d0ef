"""Logging setup for the Tromero client.

The library only ever logs to the "tromero" logger and attaches no handlers
on import; applications call setup_logging() (Tromero.from_env() does) to get
console or rotating-file output.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "tromero"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(log_path: str | None = None, level: str | None = None) -> logging.Logger:
    """
    Route the "tromero" logger to the console, or to log_path (1 MB x 3 files).

    level defaults to LOG_LEVEL; DISABLE silences logging entirely.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper().strip()
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    open_error = None
    handler: logging.Handler
    if log_path:
        try:
            handler = RotatingFileHandler(log_path, maxBytes=1_048_576, backupCount=3, encoding="utf-8")
        except OSError as e:
            handler, open_error = logging.StreamHandler(), e
    else:
        handler = logging.StreamHandler()

    # Colors only make sense on a terminal
    use_color = not isinstance(handler, RotatingFileHandler) and os.getenv(
        "LOG_COLOR", "true"
    ).lower() in ("true", "1", "yes")
    if use_color:
        handler.setFormatter(colorlog.ColoredFormatter("%(log_color)s" + LOG_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

    if open_error is not None:
        logger.warning("Cannot write log file %r (%s); logging to console.", log_path, open_error)
    return logger


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
