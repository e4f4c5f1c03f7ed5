#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Logging setup for the chart pipeline.

Console output is colored by level when attached to a terminal:
- DEBUG: Cyan
- INFO: Green
- WARNING: Yellow
- ERROR: Red
- CRITICAL: Bold Red

An optional log file receives the same records without color codes.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

DEFAULT_FORMAT = '%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s'
DEFAULT_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Libraries that log every HTTP round trip at INFO/DEBUG
NOISY_LOGGERS = ("urllib3", "requests")


def _is_terminal(stream: TextIO) -> bool:
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


class ColoredFormatter(logging.Formatter):
    """Formatter that wraps the level name in ANSI colors."""

    # SGR color number per level; CRITICAL is also bold
    LEVEL_COLORS = {
        logging.DEBUG: 36,
        logging.INFO: 32,
        logging.WARNING: 33,
        logging.ERROR: 31,
        logging.CRITICAL: 31,
    }
    BOLD_LEVELS = frozenset({logging.CRITICAL})

    def __init__(self, fmt: str = DEFAULT_FORMAT, datefmt: Optional[str] = DEFAULT_DATEFMT,
                 use_colors: bool = True, stream: Optional[TextIO] = None):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and _is_terminal(stream if stream is not None else sys.stderr)

    def colorize(self, levelno: int, text: str) -> str:
        color = self.LEVEL_COLORS.get(levelno)
        if color is None:
            return text
        prefix = f"1;{color}" if levelno in self.BOLD_LEVELS else str(color)
        return f"\033[{prefix}m{text}\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)
        plain = record.levelname
        record.levelname = self.colorize(record.levelno, plain)
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, quiet_http: bool = True) -> None:
    """
    Configure the root logger for a pipeline run

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path of a plain-text log file
        quiet_http: Raise HTTP library loggers to WARNING
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ColoredFormatter(stream=console.stream))
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(fmt=DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT))
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if quiet_http:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

