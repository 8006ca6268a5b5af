"""
Pure planning functions: queue demand and runner placement.
"""

from __future__ import annotations

from .demand import plan_demand
from .placement import PlacementPolicy, plan_placement

__all__ = [
    "PlacementPolicy",
    "plan_demand",
    "plan_placement",
]
