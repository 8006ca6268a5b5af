"""
Collaborator interfaces consumed by the reconciliation engine.

Concrete implementations live in :mod:`ghscaler.integrations`; tests replace
them with in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping

from ghscaler.core.entities import Machine, ProbeResult, QueueSnapshot


class JobSource(ABC):
    """Produces queue snapshots. Raises ``TransientError`` when it cannot."""

    @abstractmethod
    def get_queue_snapshot(self) -> QueueSnapshot:
        """Return the current queued/running job counts."""


class RemoteExecutor(ABC):
    """
    Runs runner containers on machines.

    Methods return normally on success and raise ``RemoteConnectionError`` or
    ``CommandError`` on failure.
    """

    @abstractmethod
    def create_runner(self, machine: Machine, runner_id: str) -> None:
        """Start a container named ``runner_id``; an existing running one counts as success."""

    @abstractmethod
    def destroy_runner(self, machine: Machine, runner_id: str) -> None:
        """Remove the container named ``runner_id``; a missing one counts as success."""

    @abstractmethod
    def probe(self, machine: Machine) -> ProbeResult:
        """Report reachability and the ids of running runner containers."""


class CloudProvisioner(ABC):
    """Creates and removes machines. Raises ``ProvisioningError`` on failure."""

    @abstractmethod
    def provision_machine(self, machine_id: str, template: Mapping[str, Any]) -> Any:
        """Create a machine and return its connection descriptor."""

    @abstractmethod
    def decommission_machine(self, machine: Machine) -> None:
        """Remove a machine created by :meth:`provision_machine`."""
