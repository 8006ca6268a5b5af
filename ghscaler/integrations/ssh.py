"""
SSH transport for runner containers, built on paramiko.

Each operation opens its own SSH session, runs one or more ``docker`` commands
and closes the session. Containers are named after the runner id, which makes
create and destroy idempotent.
"""

from __future__ import annotations

import base64
import hashlib
import io
import logging
import shlex
from typing import Callable, List, Optional, Sequence, Tuple

import paramiko

from ghscaler.core.config import GithubRunnerConfig, SshConfig
from ghscaler.core.entities import Machine, ProbeResult
from ghscaler.core.errors import CommandError, RemoteConnectionError
from ghscaler.core.protocols import RemoteExecutor

logger = logging.getLogger(__name__)

RUNNER_LABEL = "self-hosted-runner"
MACHINE_LABEL = "ghscaler.machine"

_REDACTED = "********"


def join_command(args: Sequence[str]) -> str:
    """Quote every argument for the remote POSIX shell."""
    return " ".join(shlex.quote(arg) for arg in args)


def host_key_fingerprint(key: paramiko.PKey) -> str:
    """OpenSSH-style ``SHA256:<base64>`` fingerprint of a host key."""
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


class FingerprintPolicy(paramiko.MissingHostKeyPolicy):
    """Accept the server only when its host key matches the pinned fingerprint."""

    def __init__(self, expected: str):
        self.expected = expected.strip()
        if not self.expected.startswith("SHA256:"):
            self.expected = "SHA256:" + self.expected

    def missing_host_key(self, client, hostname, key):
        actual = host_key_fingerprint(key)
        if actual.rstrip("=") != self.expected.rstrip("="):
            raise paramiko.SSHException(
                f"Host key fingerprint mismatch for {hostname}: expected {self.expected}, got {actual}"
            )


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse an in-memory OpenSSH/PEM private key of any type paramiko supports."""
    errors: List[str] = []
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase or None)
        except paramiko.PasswordRequiredException as exc:
            raise RemoteConnectionError("The private key is encrypted but no passphrase was given") from exc
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{key_class.__name__}: {exc}")
    raise RemoteConnectionError("Unsupported or malformed private key (" + "; ".join(errors) + ")")


class SshRemoteExecutor(RemoteExecutor):
    """Runs the runner containers with ``docker`` over SSH."""

    def __init__(
        self,
        runners: GithubRunnerConfig,
        access_token: str,
        *,
        connect_timeout: float = 30.0,
        command_timeout: Optional[float] = 300.0,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        self.runners = runners
        self._access_token = access_token
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._client_factory = client_factory

    @classmethod
    def from_config(cls, config) -> "SshRemoteExecutor":
        # A command never outlives the executor's per-action timeout.
        return cls(
            config.github.runners,
            config.github.personal_access_token,
            command_timeout=config.executor.action_timeout or None,
        )

    # ------------------------------------------------------------------
    # RemoteExecutor

    def create_runner(self, machine: Machine, runner_id: str) -> None:
        with self._session(machine) as session:
            state = session.container_state(runner_id)
            if state == "running":
                logger.info("[%s] Container %s is already running", session.host, runner_id)
                return
            if state is not None:
                logger.info("[%s] Removing stale container %s (%s)", session.host, runner_id, state)
                session.run(["docker", "rm", "--force", runner_id])

            logger.info("[%s] Pulling the container image '%s' ..", session.host, self.runners.image)
            session.run(["docker", "pull", self.runners.image])
            logger.info("[%s] Creating and starting container %s ..", session.host, runner_id)
            args, display = self._run_args(machine, runner_id)
            container_id = session.run(args, display=display)
            logger.info("[%s] Started container %s: %s", session.host, runner_id, container_id[:12])

    def destroy_runner(self, machine: Machine, runner_id: str) -> None:
        with self._session(machine) as session:
            try:
                session.run(["docker", "rm", "--force", runner_id])
            except CommandError as exc:
                if "No such container" not in exc.output:
                    raise
                logger.debug("[%s] Container %s was already gone", session.host, runner_id)
            else:
                logger.info("[%s] Removed container %s", session.host, runner_id)

    def probe(self, machine: Machine) -> ProbeResult:
        with self._session(machine) as session:
            output = session.run(
                ["docker", "ps", "--filter", f"label={RUNNER_LABEL}", "--format", "{{.Names}}"]
            )
        names = frozenset(line.strip() for line in output.splitlines() if line.strip())
        return ProbeResult(reachable=True, running_runner_ids=names)

    # ------------------------------------------------------------------
    # Helpers

    def _run_args(self, machine: Machine, runner_id: str) -> Tuple[List[str], str]:
        args = [
            "docker",
            "run",
            "--detach",
            "--name",
            runner_id,
            "--label",
            RUNNER_LABEL,
            "--label",
            f"{MACHINE_LABEL}={machine.id}",
            "--restart",
            "unless-stopped",
            "--env",
            f"REPO_URL={self.runners.repo_url}",
            "--env",
            f"RUNNER_NAME={runner_id}",
            "--env",
            f"RUNNER_SCOPE={self.runners.scope}",
        ]
        if self.runners.labels:
            args += ["--env", f"LABELS={','.join(self.runners.labels)}"]
        args += ["--env", f"ACCESS_TOKEN={self._access_token}", self.runners.image]
        shown = list(args)
        shown[-2] = f"ACCESS_TOKEN={_REDACTED}"
        return args, join_command(shown)

    def _session(self, machine: Machine) -> "_SshSession":
        connection = machine.connection
        if isinstance(connection, dict) and connection.get("host"):
            connection = SshConfig.from_dict(connection)
        if not isinstance(connection, SshConfig):
            raise RemoteConnectionError(f"Machine {machine.id} has no SSH connection settings")
        return _SshSession(
            connection,
            self._client_factory,
            connect_timeout=self.connect_timeout,
            command_timeout=self.command_timeout,
        )


class _SshSession:
    """One connected paramiko client, used as a context manager."""

    def __init__(
        self,
        config: SshConfig,
        client_factory: Callable[[], paramiko.SSHClient],
        *,
        connect_timeout: float,
        command_timeout: Optional[float],
    ):
        self.config = config
        self.host = f"{config.host}:{config.port}"
        self._client_factory = client_factory
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._client: Optional[paramiko.SSHClient] = None

    def __enter__(self) -> "_SshSession":
        config = self.config
        client = self._client_factory()
        if config.fingerprint:
            client.set_missing_host_key_policy(FingerprintPolicy(config.fingerprint))
        else:
            logger.debug("[%s] No host key fingerprint configured, accepting any host key", self.host)
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = None
        if not config.password and config.private_key:
            pkey = load_private_key(config.private_key, config.private_key_passphrase)

        logger.debug("[%s] Making a connection attempt as %s ..", self.host, config.username)
        try:
            client.connect(
                hostname=config.host,
                port=config.port,
                username=config.username,
                password=config.password or None,
                pkey=pkey,
                timeout=self._connect_timeout,
                banner_timeout=self._connect_timeout,
                auth_timeout=self._connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise RemoteConnectionError(f"[{self.host}] SSH connection failed: {exc}") from exc
        self._client = client
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def run(self, args: Sequence[str], *, display: Optional[str] = None) -> str:
        """Run a command and return its trimmed stdout; non-zero exit raises :class:`CommandError`."""
        assert self._client is not None
        command = join_command(args)
        shown = display or command
        logger.debug("[%s] $ %s", self.host, shown)
        try:
            _stdin, stdout, stderr = self._client.exec_command(command, timeout=self._command_timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteConnectionError(f"[{self.host}] SSH command failed: {exc}") from exc
        if status != 0:
            raise CommandError(shown, status, (out + err).strip(), host=self.host)
        return out.strip()

    def container_state(self, name: str) -> Optional[str]:
        """``docker inspect`` state of a container, ``None`` when it does not exist."""
        try:
            return self.run(["docker", "inspect", "--format", "{{.State.Status}}", name]) or None
        except CommandError as exc:
            if "No such" in exc.output:
                return None
            raise
