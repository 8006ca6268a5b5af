"""
Demand planner: how many runners the fleet should hold for a queue snapshot.
"""

from __future__ import annotations

from ghscaler.core.entities import GlobalBounds, QueueSnapshot


def plan_demand(snapshot: QueueSnapshot, bounds: GlobalBounds) -> int:
    """
    One runner per queued job, clamped to ``[bounds.min_runners, bounds.max_runners]``.

    Running jobs are not counted: they already occupy a Busy runner that the
    fleet tracker accounts for.

    Raises:
        ConfigurationError: if the bounds themselves are invalid.
    """
    bounds.validate()
    queued = max(0, int(snapshot.queued))
    return max(bounds.min_runners, min(bounds.max_runners, queued))
