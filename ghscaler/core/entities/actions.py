"""
Reconciliation actions and plans.

Each action kind is its own frozen dataclass carrying only the data it needs;
``kind`` is the tag the executor dispatches on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

from ghscaler.core.entities.machine import RunnerBounds
from ghscaler.core.entities.resource_spec import ResourceSpec


class ActionKind(str, Enum):
    CREATE_RUNNER = "create_runner"
    DESTROY_RUNNER = "destroy_runner"
    PROVISION_MACHINE = "provision_machine"
    DECOMMISSION_MACHINE = "decommission_machine"


@dataclass(frozen=True)
class CreateRunner:
    machine_id: str
    runner_id: str
    slot: int

    kind: ClassVar[ActionKind] = ActionKind.CREATE_RUNNER

    @property
    def entity_id(self) -> str:
        return self.runner_id


@dataclass(frozen=True)
class DestroyRunner:
    machine_id: str
    runner_id: str

    kind: ClassVar[ActionKind] = ActionKind.DESTROY_RUNNER

    @property
    def entity_id(self) -> str:
        return self.runner_id


@dataclass(frozen=True)
class ProvisionMachine:
    machine_id: str
    template: Mapping[str, Any] = field(default_factory=dict)
    bounds: RunnerBounds = field(default_factory=lambda: RunnerBounds(0, 4))
    idle_timeout: float = 0.0
    resources: ResourceSpec = field(default_factory=ResourceSpec)
    runner_resources: ResourceSpec = field(default_factory=ResourceSpec)

    kind: ClassVar[ActionKind] = ActionKind.PROVISION_MACHINE

    @property
    def entity_id(self) -> str:
        return self.machine_id


@dataclass(frozen=True)
class DecommissionMachine:
    machine_id: str

    kind: ClassVar[ActionKind] = ActionKind.DECOMMISSION_MACHINE

    @property
    def entity_id(self) -> str:
        return self.machine_id


Action = Union[CreateRunner, DestroyRunner, ProvisionMachine, DecommissionMachine]


def describe_action(action: Action) -> str:
    if isinstance(action, (CreateRunner, DestroyRunner)):
        return f"{action.kind.value}({action.machine_id}/{action.runner_id})"
    return f"{action.kind.value}({action.machine_id})"


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one attempt of an action against a collaborator."""

    success: bool
    error: Optional[BaseException] = None
    connection: Any = None
    attempts: int = 1

    @classmethod
    def ok(cls, connection: Any = None, attempts: int = 1) -> "ActionResult":
        return cls(success=True, connection=connection, attempts=attempts)

    @classmethod
    def failure(cls, error: BaseException, attempts: int = 1) -> "ActionResult":
        return cls(success=False, error=error, attempts=attempts)

    @property
    def message(self) -> str:
        if self.error is None:
            return ""
        return f"{type(self.error).__name__}: {self.error}"


@dataclass(frozen=True)
class Plan:
    """Ordered actions for one cycle plus the per-machine targets they aim for."""

    desired: int
    actions: Tuple[Action, ...] = ()
    targets: Dict[str, int] = field(default_factory=dict)
    shortfall: int = 0

    def __len__(self) -> int:
        return len(self.actions)

    def of_kind(self, kind: ActionKind) -> Tuple[Action, ...]:
        return tuple(action for action in self.actions if action.kind == kind)

    def for_machine(self, machine_id: str) -> Tuple[Action, ...]:
        return tuple(action for action in self.actions if action.machine_id == machine_id)

    def to_dict(self) -> dict:
        return {
            "desired": self.desired,
            "targets": dict(self.targets),
            "shortfall": self.shortfall,
            "actions": [describe_action(action) for action in self.actions],
        }
