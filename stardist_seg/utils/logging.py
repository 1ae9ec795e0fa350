"""
Logging for StarDist detection runs.

Every module logs through ``get_logger(__name__)``. Applications call
``setup_logging`` once; library code never configures handlers itself.

Detection progress ("Detecting nuclei for 12 tiles", "Resolving cell
overlaps", ...) goes through a ``ProgressLog``, which logs at INFO when
verbose progress was requested and at DEBUG otherwise.

Usage:
    from stardist_seg.utils.logging import get_logger, setup_logging

    logger = get_logger(__name__)
    setup_logging(level="INFO", log_file="/path/to/output/detect.log")
"""

import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from shapely.geometry.base import BaseGeometry

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

LEVEL_COLORS = {
    'DEBUG': '\033[36m',
    'INFO': '\033[32m',
    'WARNING': '\033[33m',
    'ERROR': '\033[31m',
    'CRITICAL': '\033[35m',
}


class ColoredFormatter(logging.Formatter):
    """Colors the level name for terminal output."""

    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelname)
        if color is None:
            return super().format(record)
        # Other handlers see the same record, so color a copy
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


_loggers: dict[str, logging.Logger] = {}
_initialized = False


def get_logger(name: str) -> logging.Logger:
    """Cached ``logging.getLogger(name)``; pass ``__name__``."""
    if name not in _loggers:
        _loggers[name] = logging.getLogger(name)
    return _loggers[name]


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    console: bool = True,
    colored: bool = True,
    format_string: str = LOG_FORMAT,
) -> logging.Logger:
    """
    Configure the root logger.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        level: Logging level name or number
        log_file: Explicit path to a log file
        log_dir: Directory for a timestamped ``stardist_<time>.log``
            (ignored if ``log_file`` is given)
        console: Log to stdout
        colored: Color the level name when stdout is a terminal
        format_string: Record format

    Returns:
        Root logger
    """
    global _initialized

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if _initialized:
        root_logger.handlers.clear()

    if console:
        handler = logging.StreamHandler(sys.stdout)
        use_color = colored and sys.stdout.isatty()
        handler.setFormatter(ColoredFormatter(format_string) if use_color
                             else logging.Formatter(format_string))
        handler.setLevel(level)
        root_logger.addHandler(handler)

    log_path = None
    if log_file:
        log_path = Path(log_file)
    elif log_dir:
        log_path = Path(log_dir) / f"stardist_{datetime.now():%Y%m%d_%H%M%S}.log"
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode='a')
        file_handler.setFormatter(logging.Formatter(format_string))
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)
        root_logger.info(f"Logging to file: {log_path}")

    _initialized = True
    return root_logger


class ProgressLog:
    """
    Progress messages for one detector.

    Args:
        logger: Logger to write to
        verbose: Log at INFO instead of DEBUG
    """

    def __init__(self, logger: logging.Logger, verbose: bool = False):
        self.logger = logger
        self.level = logging.INFO if verbose else logging.DEBUG

    def __call__(self, message: str) -> None:
        self.logger.log(self.level, message)


def _describe(value: Any) -> str:
    if isinstance(value, BaseGeometry):
        bounds = ", ".join(f"{b:.1f}" for b in value.bounds) if not value.is_empty else "empty"
        return f"{value.geom_type} ({bounds})"
    if isinstance(value, float):
        return f"{value:.4g}"
    if isinstance(value, (list, tuple)) and len(value) > 5:
        return f"[{len(value)} items]"
    if isinstance(value, dict) and len(value) > 5:
        return f"{{{len(value)} keys}}"
    return str(value)


def log_parameters(logger: logging.Logger, params: dict, title: str = "Parameters",
                   level: int = logging.INFO) -> None:
    """
    Log parameters as a block, one ``key: value`` line each.

    Geometries are shown by type and bounds, long lists and dicts by size.
    """
    rule = '=' * 50
    logger.log(level, rule)
    logger.log(level, title)
    logger.log(level, rule)
    for key, value in params.items():
        logger.log(level, f"  {key}: {_describe(value)}")
    logger.log(level, rule)


def format_duration(duration_seconds: float) -> str:
    if duration_seconds >= 3600:
        return f"{duration_seconds / 3600:.1f} hours"
    if duration_seconds >= 60:
        return f"{duration_seconds / 60:.1f} minutes"
    return f"{duration_seconds:.1f} seconds"


class ProcessingTimer:
    """
    Times a block, logging its start and end at ``level``.

    Set ``count`` inside the block to have the number of results reported
    on completion. A block that raises is logged at ERROR and re-raised.

    Usage:
        with ProcessingTimer(logger, "StarDist detection", noun="nuclei") as timer:
            objects = run()
            timer.count = len(objects)
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO,
                 noun: str = "objects"):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.noun = noun
        self.count: Optional[int] = None
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.log(self.level, f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.logger.error(f"Failed: {self.operation} after {self.duration:.1f}s - {exc_val}")
            return False
        message = f"Completed: {self.operation} in {format_duration(self.duration)}"
        if self.count is not None:
            message += f" ({self.count} {self.noun})"
        self.logger.log(self.level, message)
        return False
