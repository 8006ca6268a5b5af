"""Logging utilities for gh-actions-scaler runtime components."""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union


_HANDLER_NAME = "_ghscaler_stream_handler"

# "off" sits above CRITICAL so nothing gets through.
_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 10,
}


def parse_log_level(value: Union[str, int, None], default: int = logging.INFO) -> int:
    """Translate ``trace|debug|info|warn|error|off`` into a :mod:`logging` level."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    key = value.strip().lower()
    if key not in _LEVELS:
        raise ValueError(f"Unknown log level '{value}'. Expected one of: trace, debug, info, warn, error, off")
    return _LEVELS[key]


def configure_runtime_logging(level: int = logging.INFO, formatter: Optional[logging.Formatter] = None) -> None:
    """Ensure that runtime processes emit logs to stdout with a consistent format."""
    root_logger = logging.getLogger()
    if formatter is None:
        formatter = logging.Formatter("[%(levelname)s] %(message)s")

    existing = None
    for handler in root_logger.handlers:
        if getattr(handler, _HANDLER_NAME, False):
            existing = handler
            break

    if existing is None:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(formatter)
        setattr(stream_handler, _HANDLER_NAME, True)
        root_logger.addHandler(stream_handler)
    else:
        existing.setFormatter(formatter)
        existing.setLevel(level)

    if root_logger.level > level or root_logger.level == logging.NOTSET:
        root_logger.setLevel(level)


def install_stdout_logger(level: int = logging.INFO, *, include_timestamp: bool = True, prefix: str = "ghscaler") -> None:
    """Attach a stream handler for the CLI with optional timestamp."""
    fmt = "%(asctime)s %(levelname)s: %(message)s" if include_timestamp else "%(levelname)s: %(message)s"
    formatter = logging.Formatter(fmt, datefmt="%Y-%m-%d %H:%M:%S")
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger = logging.getLogger(prefix)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def demote_ray_logging(level: int = logging.ERROR) -> None:
    for name in ("ray", "ray.ray_logger", "aiogrpc"):
        logging.getLogger(name).setLevel(level)
