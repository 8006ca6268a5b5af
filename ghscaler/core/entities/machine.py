"""
Machine entity definitions.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ghscaler.core.entities.resource_spec import ResourceSpec
from ghscaler.core.errors import ConfigurationError


class MachineState(str, Enum):
    """Lifecycle states of a machine tracked by the fleet."""

    UNPROVISIONED = "unprovisioned"
    PROVISIONING = "provisioning"
    READY = "ready"
    UNREACHABLE = "unreachable"
    DRAINING = "draining"
    DECOMMISSIONING = "decommissioning"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class RunnerBounds:
    """Inclusive ``[min_runners, max_runners]`` range for a machine."""

    min_runners: int = 1
    max_runners: int = 16

    def validate(self, scope: str = "runners") -> None:
        if self.min_runners < 0 or self.max_runners < 0:
            raise ConfigurationError(
                f"Runner bounds for {scope} must be non-negative "
                f"(min={self.min_runners}, max={self.max_runners})."
            )
        if self.min_runners > self.max_runners:
            raise ConfigurationError(
                f"Invalid runner bounds for {scope}: min ({self.min_runners}) is greater than max ({self.max_runners})."
            )


@dataclass
class Machine:
    """
    A host that runs zero or more runner containers.

    ``connection`` is opaque to the core; it is only handed to the remote
    execution and provisioning collaborators.
    """

    id: str
    connection: Any = None
    bounds: RunnerBounds = field(default_factory=RunnerBounds)
    resources: ResourceSpec = field(default_factory=ResourceSpec)
    runner_resources: ResourceSpec = field(default_factory=ResourceSpec)
    idle_timeout: float = 0.0
    state: MachineState = MachineState.UNPROVISIONED
    dynamic: bool = False
    last_probe_at: Optional[float] = None
    last_error: Optional[str] = None
    idle_since: Optional[float] = None

    def effective_max(self) -> int:
        """``max_runners`` capped by the capacity hints, never below ``min_runners``."""
        upper = self.bounds.max_runners
        fit = self.resources.fit_count(self.runner_resources)
        if fit is not None:
            upper = min(upper, fit)
        return max(self.bounds.min_runners, upper)

    @property
    def accepts_new_runners(self) -> bool:
        return self.state == MachineState.READY

    def copy(self) -> "Machine":
        return dataclasses.replace(
            self,
            resources=self.resources.copy(),
            runner_resources=self.runner_resources.copy(),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "dynamic": self.dynamic,
            "min_runners": self.bounds.min_runners,
            "max_runners": self.bounds.max_runners,
            "idle_timeout": self.idle_timeout,
            "resources": self.resources.to_dict(),
            "runner_resources": self.runner_resources.to_dict(),
            "last_probe_at": self.last_probe_at,
            "last_error": self.last_error,
            "idle_since": self.idle_since,
        }
