"""
Runner entity definitions.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RunnerState(str, Enum):
    """Lifecycle states of a runner container."""

    REQUESTED = "requested"
    CREATING = "creating"
    IDLE = "idle"
    BUSY = "busy"
    STOPPING = "stopping"
    DESTROYED = "destroyed"
    ERRORED = "errored"


ACTIVE_STATES = frozenset({RunnerState.REQUESTED, RunnerState.CREATING, RunnerState.IDLE, RunnerState.BUSY})


def make_runner_id(prefix: str, machine_id: str, slot: int) -> str:
    """Deterministic container identity: ``<prefix>-<machine>-<slot>``."""
    return f"{prefix}-{machine_id}-{slot}"


def parse_runner_slot(prefix: str, machine_id: str, runner_id: str) -> Optional[int]:
    """Inverse of :func:`make_runner_id`; ``None`` when the id belongs to someone else."""
    head = f"{prefix}-{machine_id}-"
    if not runner_id.startswith(head):
        return None
    tail = runner_id[len(head):]
    if not tail.isdigit():
        return None
    return int(tail)


@dataclass
class Runner:
    """A self-hosted runner container living on ``machine_id``."""

    id: str
    machine_id: str
    slot: int
    state: RunnerState = RunnerState.REQUESTED
    idle_since: Optional[float] = None
    creation_attempts: int = 0
    failed: bool = False
    stop_requested: bool = False
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """Destroyed runners and permanently failed ones no longer take part in placement."""
        return self.state == RunnerState.DESTROYED or self.failed

    @property
    def retryable(self) -> bool:
        return self.state == RunnerState.ERRORED and not self.failed and not self.stop_requested

    @property
    def counts_toward_target(self) -> bool:
        return self.state in ACTIVE_STATES or self.retryable

    @property
    def needs_create(self) -> bool:
        """Requested but never started, or errored and still within its creation attempts."""
        return (self.state == RunnerState.REQUESTED and not self.failed) or self.retryable

    def copy(self) -> "Runner":
        return dataclasses.replace(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "machine_id": self.machine_id,
            "slot": self.slot,
            "state": self.state.value,
            "idle_since": self.idle_since,
            "creation_attempts": self.creation_attempts,
            "failed": self.failed,
            "stop_requested": self.stop_requested,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Runner":
        return cls(
            id=str(payload["id"]),
            machine_id=str(payload["machine_id"]),
            slot=int(payload["slot"]),
            state=RunnerState(payload.get("state", RunnerState.REQUESTED.value)),
            idle_since=payload.get("idle_since"),
            creation_attempts=int(payload.get("creation_attempts", 0) or 0),
            failed=bool(payload.get("failed", False)),
            stop_requested=bool(payload.get("stop_requested", False)),
            last_error=payload.get("last_error"),
        )
