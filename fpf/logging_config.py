"""
Centralized logging configuration for fpf.

Console output goes to stderr: stdout carries candidate rows for the
selector and must stay clean.
"""

import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Optional


# Global logger instance
_logger: Optional[logging.Logger] = None
_perf_lock = threading.Lock()

PERF_LOGGER_NAME = "fpf.perf"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
    propagate: bool = False,
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        verbose: Enable verbose (DEBUG) output
        quiet: Suppress console output (file only)
        propagate: Allow log propagation (useful for testing)

    Returns:
        Configured logger instance
    """
    global _logger

    if verbose or os.environ.get("FPF_DEBUG", "0") == "1":
        effective_level = "DEBUG"
    elif quiet:
        effective_level = "WARNING"
    else:
        effective_level = level.upper()

    logger = logging.getLogger("fpf")
    logger.setLevel(getattr(logging, effective_level))
    logger.handlers.clear()

    if not quiet:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, effective_level))
        console_formatter = ColoredFormatter(
            "%(levelname_colored)s %(message)s",
            use_colors=sys.stderr.isatty()
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    log_file = log_file or os.environ.get("FPF_LOG_FILE") or None
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        file_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    logger.propagate = propagate

    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """
    Get the configured logger instance.

    If logging hasn't been set up, initializes with defaults.
    """
    global _logger
    if _logger is None:
        _logger = setup_logging()
    return _logger


class ColoredFormatter(logging.Formatter):
    """
    Formatter with colored output for different log levels.
    """

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[1;31m', # Bold Red
    }
    RESET = '\033[0m'

    def __init__(self, fmt: str, use_colors: bool = True):
        super().__init__(fmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        if self.use_colors:
            color = self.COLORS.get(record.levelname, '')
            record.levelname_colored = f"{color}{record.levelname}{self.RESET}"
        else:
            record.levelname_colored = record.levelname

        return super().format(record)


def perf_trace_enabled() -> bool:
    """Check FPF_PERF_TRACE."""
    value = os.environ.get("FPF_PERF_TRACE", "").strip().lower()
    return value in ("1", "true", "yes", "on")


def log_stage(stage: str, started: float, detail: str = "") -> None:
    """
    Emit a perf-trace line for a pipeline stage.

    Args:
        stage: Stage name (search, merge, mark, rank, limit, ...)
        started: time.monotonic() value captured when the stage began
        detail: Optional qualifier, usually a backend id
    """
    if not perf_trace_enabled():
        return
    duration_ms = int((time.monotonic() - started) * 1000)
    get_logger()
    logger = logging.getLogger(PERF_LOGGER_NAME)

    with _perf_lock:
        if detail:
            logger.info("perf-trace stage=%s detail=%s duration_ms=%d", stage, detail, duration_ms)
        else:
            logger.info("perf-trace stage=%s duration_ms=%d", stage, duration_ms)
