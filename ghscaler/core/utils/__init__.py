"""Utility helpers for gh-actions-scaler."""

from .durations import format_duration, parse_duration  # noqa: F401
from .logging import (  # noqa: F401
    configure_runtime_logging,
    demote_ray_logging,
    install_stdout_logger,
    parse_log_level,
)

__all__ = [
    "configure_runtime_logging",
    "demote_ray_logging",
    "format_duration",
    "install_stdout_logger",
    "parse_duration",
    "parse_log_level",
]
