"""
Common type definitions shared across planners, the tracker and collaborators.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional

from ghscaler.core.entities.machine import Machine
from ghscaler.core.entities.runner import Runner
from ghscaler.core.errors import ConfigurationError


@dataclass(frozen=True)
class QueueSnapshot:
    """Normalized view of the GitHub Actions job queue, replaced wholesale each cycle."""

    queued: int
    running: int
    timestamp: float
    busy_runners: FrozenSet[str] = frozenset()

    @classmethod
    def empty(cls, timestamp: Optional[float] = None) -> "QueueSnapshot":
        return cls(queued=0, running=0, timestamp=time.time() if timestamp is None else timestamp)


@dataclass(frozen=True)
class GlobalBounds:
    min_runners: int = 0
    max_runners: int = 64

    def validate(self) -> None:
        if self.min_runners < 0 or self.max_runners < 0:
            raise ConfigurationError(
                f"Global runner bounds must be non-negative (min={self.min_runners}, max={self.max_runners})."
            )
        if self.min_runners > self.max_runners:
            raise ConfigurationError(
                f"Invalid global runner bounds: min ({self.min_runners}) is greater than max ({self.max_runners})."
            )


@dataclass(frozen=True)
class ProbeResult:
    reachable: bool
    running_runner_ids: FrozenSet[str] = frozenset()
    error: Optional[str] = None

    @classmethod
    def unreachable(cls, error: str) -> "ProbeResult":
        return cls(reachable=False, error=error)


@dataclass(frozen=True)
class FleetError:
    """Operator-visible record of a failed remote operation."""

    timestamp: float
    entity_id: str
    operation: str
    message: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "message": self.message,
        }


@dataclass(frozen=True)
class FleetState:
    """Point-in-time copy of the fleet handed to the placement planner."""

    machines: Mapping[str, Machine] = field(default_factory=dict)
    runners: Mapping[str, Runner] = field(default_factory=dict)
    taken_at: float = 0.0

    def machine_ids(self) -> List[str]:
        return sorted(self.machines)

    def runners_on(self, machine_id: str) -> List[Runner]:
        return sorted(
            (runner for runner in self.runners.values() if runner.machine_id == machine_id),
            key=lambda runner: runner.id,
        )

    def runner_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {machine_id: 0 for machine_id in self.machines}
        for runner in self.runners.values():
            if runner.counts_toward_target:
                counts[runner.machine_id] = counts.get(runner.machine_id, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            "taken_at": self.taken_at,
            "machines": [self.machines[key].to_dict() for key in self.machine_ids()],
            "runners": [self.runners[key].to_dict() for key in sorted(self.runners)],
        }
