# src/polyflat/logging_config.py
"""
Logging configuration for polyflat.

Provides:
- A console handler on stderr (coloured on a TTY)
- A context manager for timed operations
"""
from __future__ import annotations

import logging
import sys
import time
from contextlib import contextmanager
from typing import Optional, TextIO

APP_LOGGER = "polyflat"


# ============================================================================
# Custom Formatters
# ============================================================================

class ColoredFormatter(logging.Formatter):
    """
    Colored formatter for console output.
    """

    COLORS = {
        logging.DEBUG: '\033[36m',      # Cyan
        logging.INFO: '\033[32m',       # Green
        logging.WARNING: '\033[33m',    # Yellow
        logging.ERROR: '\033[31m',      # Red
        logging.CRITICAL: '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


# ============================================================================
# Logger Setup
# ============================================================================

def setup_logging(
    level: int = logging.INFO,
    stream: Optional[TextIO] = None,
    enable_colors: bool = True,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Level for the console handler
        stream: Destination stream (default: sys.stderr)
        enable_colors: Use colored output when the stream is a TTY

    Returns:
        The "polyflat" logger. Calling this again re-targets the existing
        handler instead of adding a second one.
    """
    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(level)
    stream = stream if stream is not None else sys.stderr

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
            if isinstance(h, logging.StreamHandler):
                h.setStream(stream)
        return logger

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)

    fmt = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    if enable_colors and hasattr(stream, "isatty") and stream.isatty():
        handler.setFormatter(ColoredFormatter(fmt, datefmt='%H:%M:%S'))
    else:
        handler.setFormatter(logging.Formatter(fmt, datefmt='%H:%M:%S'))

    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = APP_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


# ============================================================================
# Context Managers
# ============================================================================

@contextmanager
def log_timing(
    operation_name: str,
    logger: Optional[logging.Logger] = None,
    level: int = logging.DEBUG
):
    """
    Context manager for logging operation timing.

    Usage:
        with log_timing("Fitting red channel"):
            solve_channel(A, b)
    """
    _logger = logger or get_logger()
    _logger.log(level, "Starting: %s", operation_name)

    start_time = time.perf_counter()
    try:
        yield
    except Exception as e:
        duration_ms = (time.perf_counter() - start_time) * 1000
        _logger.error("Failed: %s after %.2fms: %s", operation_name, duration_ms, e)
        raise
    duration_ms = (time.perf_counter() - start_time) * 1000
    _logger.log(level, "Completed: %s in %.2fms", operation_name, duration_ms)
