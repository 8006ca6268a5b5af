"""
Exception taxonomy shared by the reconciliation engine and its collaborators.
"""

from __future__ import annotations

from concurrent.futures import Future
from typing import Optional


class ScalerError(Exception):
    """Base class for every error raised by gh-actions-scaler."""


class TransientError(ScalerError):
    """The job source could not produce a queue snapshot (network, auth, bad payload)."""


class RemoteError(ScalerError):
    """A remote operation against a machine failed."""


class RemoteConnectionError(RemoteError, ConnectionError):
    """The machine could not be reached or the SSH session could not be established."""


class CommandError(RemoteError):
    """A remote command exited with a non-zero status."""

    def __init__(self, command: str, exit_status: int, output: str = "", *, host: Optional[str] = None):
        self.command = command
        self.exit_status = exit_status
        self.output = output
        self.host = host
        indented = "".join(f"    {line}\n" for line in output.splitlines())
        prefix = f"[{host}] " if host else ""
        super().__init__(
            f"{prefix}Failed to execute the command (exit status {exit_status}):\n\n"
            f"    {command}\n\nOutput:\n\n{indented}"
        )


class ActionTimeoutError(RemoteError):
    """
    A remote call exceeded the configured per-action timeout.

    ``pending`` is the abandoned call when it was already running and could not
    be cancelled.
    """

    def __init__(self, message: str, *, pending: Optional[Future] = None):
        super().__init__(message)
        self.pending = pending


class ProvisioningError(ScalerError):
    """The cloud provisioning collaborator failed to create or remove a machine."""


class ConfigurationError(ScalerError):
    """Invalid configuration, including bounds the planners refuse to work with."""


class InvariantViolation(ScalerError):
    """Internal fleet state is inconsistent; the reconciliation loop must stop."""


__all__ = [
    "ScalerError",
    "TransientError",
    "RemoteError",
    "RemoteConnectionError",
    "CommandError",
    "ActionTimeoutError",
    "ProvisioningError",
    "ConfigurationError",
    "InvariantViolation",
]
