"""
Domain entities used throughout the gh-actions-scaler runtime.
"""

from .actions import (  # noqa: F401
    Action,
    ActionKind,
    ActionResult,
    CreateRunner,
    DecommissionMachine,
    DestroyRunner,
    Plan,
    ProvisionMachine,
    describe_action,
)
from .machine import Machine, MachineState, RunnerBounds  # noqa: F401
from .resource_spec import ResourceSpec  # noqa: F401
from .runner import Runner, RunnerState, make_runner_id, parse_runner_slot  # noqa: F401
from .types import FleetError, FleetState, GlobalBounds, ProbeResult, QueueSnapshot  # noqa: F401

__all__ = [
    "Action",
    "ActionKind",
    "ActionResult",
    "CreateRunner",
    "DecommissionMachine",
    "DestroyRunner",
    "Plan",
    "ProvisionMachine",
    "describe_action",
    "Machine",
    "MachineState",
    "RunnerBounds",
    "ResourceSpec",
    "Runner",
    "RunnerState",
    "make_runner_id",
    "parse_runner_slot",
    "FleetError",
    "FleetState",
    "GlobalBounds",
    "ProbeResult",
    "QueueSnapshot",
]
