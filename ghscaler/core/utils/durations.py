"""Duration strings such as ``90s``, ``1m`` or ``1h30m``."""

from __future__ import annotations

import re
from typing import Union

_DURATION_RE = re.compile(r"^(?:(?P<h>\d+)h)?(?:(?P<m>\d+)m)?(?:(?P<s>\d+(?:\.\d+)?)s)?$")


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Convert a duration into seconds.

    Bare numbers are seconds. Raises ``ValueError`` for anything else.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be non-negative, got {value}")
        return float(value)

    text = str(value).strip().lower()
    if not text:
        raise ValueError("Empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ValueError(f"Duration must be non-negative, got {value}")
        return seconds

    match = _DURATION_RE.match(text)
    if match is None or not any(match.groupdict().values()):
        raise ValueError(f"Invalid duration '{value}'. Expected e.g. '30s', '1m' or '1h30m'")
    hours = int(match.group("h") or 0)
    minutes = int(match.group("m") or 0)
    secs = float(match.group("s") or 0)
    return hours * 3600 + minutes * 60 + secs


def format_duration(seconds: float) -> str:
    whole = int(seconds)
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)
