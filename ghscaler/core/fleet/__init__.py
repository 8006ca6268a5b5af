"""
Fleet state ownership and persistence.
"""

from .store import FleetStore  # noqa: F401
from .tracker import FleetStateTracker  # noqa: F401

__all__ = ["FleetStateTracker", "FleetStore"]
