"""
Ray actor implementations that host the reconciliation engine.
"""

from .autoscaler import AutoscalerActor  # noqa: F401
from .config import ActorConfig  # noqa: F401
from .head import AutoscalerHead  # noqa: F401

__all__ = [
    "ActorConfig",
    "AutoscalerActor",
    "AutoscalerHead",
]
