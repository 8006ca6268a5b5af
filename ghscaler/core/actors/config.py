"""
Shared configuration dataclasses for actors.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ActorConfig:
    """
    Hosting options of the autoscaler actor.

    ``state_path`` is the fleet snapshot file; ``None`` disables persistence.
    """

    name: str
    log_level: int = 20
    stop_timeout: float = 60.0
    state_path: str | None = None
