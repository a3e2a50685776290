"""Logging setup for the LLM gateway and secret masking for log lines."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "llm_gateway"
DEFAULT_LOG_PATH = "llm-gateway.log"
LOG_MAX_BYTES = 1_048_576
LOG_BACKUPS = 3

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
COLOR_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s"
LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(log_path: str | None = None) -> logging.Logger:
    """
    Configure the ``llm_gateway`` logger from LOG_LEVEL and LOG_COLOR.

    Records go to a rotating file at ``log_path`` (1 MB, 3 backups). If the
    file cannot be opened the logger writes to stderr and says so.
    LOG_LEVEL=DISABLE silences everything.
    """
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    path = log_path or DEFAULT_LOG_PATH
    open_error: OSError | None = None
    try:
        handler: logging.Handler = RotatingFileHandler(
            path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
        )
    except OSError as e:
        handler, open_error = logging.StreamHandler(), e

    handler.setFormatter(_formatter(_color_enabled()))
    logger.addHandler(handler)
    if open_error is not None:
        logger.warning("Cannot open log file %r (%s); logging to stderr", path, open_error)
    return logger


def _color_enabled() -> bool:
    return os.getenv("LOG_COLOR", "true").strip().lower() in ("true", "1", "yes")


def _formatter(color: bool) -> logging.Formatter:
    if not color:
        return logging.Formatter(PLAIN_FORMAT)
    return colorlog.ColoredFormatter(COLOR_FORMAT, log_colors=LEVEL_COLORS, reset=True)


def mask_secret(s: str | None, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a server API key for logging: ``sk-abc...wxyz``."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
