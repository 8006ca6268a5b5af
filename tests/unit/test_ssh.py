"""
Unit tests for the SSH transport. paramiko is replaced by a scripted client.
"""

from __future__ import annotations

import io

import paramiko
import pytest

from fakes import make_machine
from ghscaler.core.config import GithubRunnerConfig, SshConfig, parse_config
from ghscaler.core.entities import Machine
from ghscaler.core.errors import CommandError, RemoteConnectionError
from ghscaler.integrations.ssh import FingerprintPolicy, SshRemoteExecutor, host_key_fingerprint, join_command


@pytest.mark.parametrize(
    "args, expected",
    [
        (["docker", "pull", "img:tag"], "docker pull img:tag"),
        (["echo", ""], "echo ''"),
        (["echo", 'Hello "World"'], "echo 'Hello \"World\"'"),
        (["echo", "it's"], "echo 'it'\"'\"'s'"),
        (["echo", "$HOME"], "echo '$HOME'"),
        (["docker", "ps", "--format", "{{.Names}}"], "docker ps --format '{{.Names}}'"),
    ],
)
def test_join_command_quotes_for_the_remote_shell(args, expected):
    assert join_command(args) == expected


def test_command_error_indents_output():
    error = CommandError("docker pull img", 1, "line one\nline two", host="alpha:22")

    text = str(error)
    assert text.startswith("[alpha:22] Failed to execute the command (exit status 1):")
    assert "\n    docker pull img\n" in text
    assert text.endswith("Output:\n\n    line one\n    line two\n")
    assert error.output == "line one\nline two"


class _Channel:
    def __init__(self, status):
        self._status = status

    def recv_exit_status(self):
        return self._status


class _Stream(io.BytesIO):
    def __init__(self, data: bytes, status: int = 0):
        super().__init__(data)
        self.channel = _Channel(status)


class ScriptedClient:
    """Answers ``exec_command`` from a list of ``(prefix, status, stdout, stderr)`` rules."""

    def __init__(self, rules=(), connect_error=None):
        self.rules = list(rules)
        self.connect_error = connect_error
        self.commands = []
        self.timeouts = []
        self.connect_kwargs = None
        self.policy = None
        self.closed = False

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, **kwargs):
        self.connect_kwargs = kwargs
        if self.connect_error is not None:
            raise self.connect_error

    def exec_command(self, command, timeout=None):
        self.commands.append(command)
        self.timeouts.append(timeout)
        for prefix, status, out, err in self.rules:
            if command.startswith(prefix):
                return None, _Stream(out.encode(), status), _Stream(err.encode())
        return None, _Stream(b""), _Stream(b"")

    def close(self):
        self.closed = True


@pytest.fixture
def machine() -> Machine:
    machine = make_machine("alpha")
    machine.connection = SshConfig(host="alpha.example.tld", username="ci", password="secret")
    return machine


def _executor(rules=(), **client_kwargs):
    clients = []

    def factory():
        client = ScriptedClient(rules, **client_kwargs)
        clients.append(client)
        return client

    runners = GithubRunnerConfig(repo_url="https://github.com/owner/repo", labels=("linux", "x64"))
    return SshRemoteExecutor(runners, "ghp_secret_token", client_factory=factory), clients


def test_create_runner_pulls_and_runs_the_container(machine, caplog):
    executor, clients = _executor(
        [
            ("docker inspect", 1, "", "Error: No such object: runner-alpha-0"),
            ("docker run", 0, "0123456789abcdef\n", ""),
        ]
    )

    with caplog.at_level("DEBUG", logger="ghscaler.integrations.ssh"):
        executor.create_runner(machine, "runner-alpha-0")

    [client] = clients
    assert client.closed
    assert client.connect_kwargs["hostname"] == "alpha.example.tld"
    assert client.connect_kwargs["allow_agent"] is False
    assert isinstance(client.policy, paramiko.AutoAddPolicy)
    inspect, pull, run = client.commands
    assert inspect.startswith("docker inspect")
    assert pull == "docker pull ghcr.io/myoung34/docker-github-actions-runner:ubuntu-focal"
    assert run.startswith("docker run --detach --name runner-alpha-0 --label self-hosted-runner")
    assert "--env RUNNER_NAME=runner-alpha-0" in run
    assert "--env LABELS=linux,x64" in run
    assert "ACCESS_TOKEN=ghp_secret_token" in run
    assert "ghp_secret_token" not in caplog.text


def test_create_runner_is_a_no_op_when_already_running(machine):
    executor, clients = _executor([("docker inspect", 0, "running\n", "")])

    executor.create_runner(machine, "runner-alpha-0")

    assert len(clients[0].commands) == 1


def test_create_runner_replaces_a_stopped_container(machine):
    executor, clients = _executor([("docker inspect", 0, "exited\n", "")])

    executor.create_runner(machine, "runner-alpha-0")

    assert clients[0].commands[1] == "docker rm --force runner-alpha-0"
    assert clients[0].commands[-1].startswith("docker run")


def test_failed_command_raises_command_error(machine):
    executor, _ = _executor(
        [
            ("docker inspect", 1, "", "Error: No such object"),
            ("docker pull", 1, "", "pull access denied"),
        ]
    )

    with pytest.raises(CommandError) as info:
        executor.create_runner(machine, "runner-alpha-0")

    assert info.value.exit_status == 1
    assert "pull access denied" in info.value.output


def test_destroy_tolerates_a_missing_container(machine):
    executor, clients = _executor([("docker rm", 1, "", "Error: No such container: runner-alpha-0")])

    executor.destroy_runner(machine, "runner-alpha-0")

    assert clients[0].commands == ["docker rm --force runner-alpha-0"]


def test_destroy_propagates_other_failures(machine):
    executor, _ = _executor([("docker rm", 1, "", "permission denied")])

    with pytest.raises(CommandError):
        executor.destroy_runner(machine, "runner-alpha-0")


def test_probe_lists_runner_containers(machine):
    executor, clients = _executor([("docker ps", 0, "runner-alpha-0\nrunner-alpha-2\n\n", "")])

    result = executor.probe(machine)

    assert result.reachable
    assert result.running_runner_ids == frozenset({"runner-alpha-0", "runner-alpha-2"})
    assert clients[0].commands == ["docker ps --filter label=self-hosted-runner --format '{{.Names}}'"]


def test_connection_failure_becomes_remote_connection_error(machine):
    executor, clients = _executor(connect_error=OSError("Connection refused"))

    with pytest.raises(RemoteConnectionError, match="Connection refused"):
        executor.probe(machine)
    assert clients[0].closed


def test_dict_connection_is_accepted():
    executor, clients = _executor([("docker ps", 0, "", "")])

    executor.probe(make_machine("dyn-1"))

    assert clients[0].connect_kwargs["hostname"] == "dyn-1.example"
    assert clients[0].connect_kwargs["port"] == 22


def test_machine_without_connection_settings_is_rejected():
    executor, _ = _executor()

    with pytest.raises(RemoteConnectionError, match="no SSH connection settings"):
        executor.probe(Machine(id="bare"))


def test_pinned_fingerprint_is_enforced(machine):
    key = paramiko.RSAKey.generate(1024)
    fingerprint = host_key_fingerprint(key)

    FingerprintPolicy(fingerprint).missing_host_key(None, "alpha", key)
    FingerprintPolicy(fingerprint[len("SHA256:"):]).missing_host_key(None, "alpha", key)
    with pytest.raises(paramiko.SSHException, match="fingerprint mismatch"):
        FingerprintPolicy("SHA256:AAAA").missing_host_key(None, "alpha", key)

    machine.connection.fingerprint = fingerprint
    executor, clients = _executor([("docker ps", 0, "", "")])
    executor.probe(machine)
    assert isinstance(clients[0].policy, FingerprintPolicy)


def test_command_timeout_follows_the_action_timeout():
    config = parse_config(
        {
            "github": {"personal_access_token": "ghp_x", "runners": {"repo_url": "https://github.com/o/r"}},
            "machines": [{"ssh": {"host": "h"}}],
            "executor": {"action_timeout": "45s"},
        }
    )

    assert SshRemoteExecutor.from_config(config).command_timeout == 45.0


def test_timed_out_command_becomes_remote_connection_error(machine):
    class StalledClient(ScriptedClient):
        def exec_command(self, command, timeout=None):
            super().exec_command(command, timeout)
            raise TimeoutError("timed out")

    clients = []

    def factory():
        client = StalledClient()
        clients.append(client)
        return client

    runners = GithubRunnerConfig(repo_url="https://github.com/owner/repo")
    executor = SshRemoteExecutor(runners, "ghp_secret_token", command_timeout=0.5, client_factory=factory)

    with pytest.raises(RemoteConnectionError, match="SSH command failed"):
        executor.create_runner(machine, "runner-alpha-0")
    assert clients[0].timeouts == [0.5]
    assert clients[0].closed
