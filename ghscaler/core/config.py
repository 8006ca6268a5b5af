"""Configuration loading for gh-actions-scaler.

The configuration is a YAML file. Its location is resolved with the following
precedence:

1. An explicit path (the CLI ``--config`` option).
2. Environment variable ``GH_ACTIONS_SCALER_CONFIG`` pointing to a YAML file.
3. ``$XDG_CONFIG_HOME/gh-actions-scaler/config.yaml`` (``~/.config`` by default).

String values may reference environment variables and files, see
:mod:`ghscaler.config.resolver`. The result is an immutable input for the
planners; reloading is not supported.
"""

from __future__ import annotations

import getpass
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from ghscaler.config.resolver import ConfigResolver
from ghscaler.core.entities import GlobalBounds, Machine, MachineState, ResourceSpec, RunnerBounds
from ghscaler.core.errors import ConfigurationError
from ghscaler.core.utils import parse_duration, parse_log_level

__all__ = [
    "ExecutorConfig",
    "GithubConfig",
    "GithubRunnerConfig",
    "MachineConfig",
    "ProvisioningConfig",
    "RunnersConfig",
    "ScalerConfig",
    "ScalingConfig",
    "SshConfig",
    "default_config_path",
    "load_config",
    "parse_config",
]

logger = logging.getLogger(__name__)

_ENV_VAR = "GH_ACTIONS_SCALER_CONFIG"
_APP_DIR = "gh-actions-scaler"

DEFAULT_MIN_RUNNERS = 1
DEFAULT_MAX_RUNNERS = 16
DEFAULT_IDLE_TIMEOUT = "1m"
DEFAULT_RUNNER_IMAGE = "ghcr.io/myoung34/docker-github-actions-runner:ubuntu-focal"
_TOKEN_PREFIXES = ("ghp_", "github_pat_")


def _redact(value: Optional[str], keep: int = 0) -> str:
    if value is None:
        return "None"
    if keep and len(value) >= keep * 2:
        return f"{value[:keep]}..."
    return "[REDACTED]"


@dataclass(repr=False)
class SshConfig:
    host: str
    port: int = 22
    fingerprint: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    private_key: Optional[str] = None
    private_key_passphrase: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"SshConfig(host={self.host!r}, port={self.port}, fingerprint={self.fingerprint!r}, "
            f"username={self.username!r}, password={_redact(self.password)}, "
            f"private_key={_redact(self.private_key, keep=16)}, "
            f"private_key_passphrase={_redact(self.private_key_passphrase)})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "fingerprint": self.fingerprint,
            "username": self.username,
            "password": self.password,
            "private_key": self.private_key,
            "private_key_passphrase": self.private_key_passphrase,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SshConfig":
        return cls(
            host=str(payload["host"]),
            port=int(payload.get("port") or 22),
            fingerprint=payload.get("fingerprint"),
            username=payload.get("username"),
            password=payload.get("password"),
            private_key=payload.get("private_key"),
            private_key_passphrase=payload.get("private_key_passphrase"),
        )


@dataclass
class RunnersConfig:
    min: int = DEFAULT_MIN_RUNNERS
    max: int = DEFAULT_MAX_RUNNERS
    idle_timeout: float = 60.0
    resources: ResourceSpec = field(default_factory=ResourceSpec)

    def bounds(self) -> RunnerBounds:
        return RunnerBounds(min_runners=self.min, max_runners=self.max)


@dataclass
class MachineConfig:
    id: str
    ssh: SshConfig
    runners: RunnersConfig = field(default_factory=RunnersConfig)
    resources: ResourceSpec = field(default_factory=ResourceSpec)

    def to_machine(self) -> Machine:
        """Static machines wait in ``UNPROVISIONED`` until their first successful probe."""
        return Machine(
            id=self.id,
            connection=self.ssh,
            bounds=self.runners.bounds(),
            resources=self.resources.copy(),
            runner_resources=self.runners.resources.copy(),
            idle_timeout=self.runners.idle_timeout,
            state=MachineState.UNPROVISIONED,
            dynamic=False,
        )


@dataclass
class GithubRunnerConfig:
    name_prefix: str = "runner"
    scope: str = "repo"
    repo_url: str = ""
    image: str = DEFAULT_RUNNER_IMAGE
    labels: Tuple[str, ...] = ()

    def repository(self) -> Tuple[str, str]:
        """``(owner, repo)`` parsed from ``repo_url``."""
        path = self.repo_url.split("://", 1)[-1].split("/", 1)[-1].strip("/")
        if path.endswith(".git"):
            path = path[: -len(".git")]
        parts = [part for part in path.split("/") if part]
        if len(parts) < 2:
            raise ConfigurationError(f"Cannot determine the repository from 'github.runners.repo_url' ({self.repo_url}).")
        return parts[-2], parts[-1]

    def api_base_url(self) -> str:
        scheme, _, rest = self.repo_url.partition("://")
        host = rest.split("/", 1)[0]
        if host in ("github.com", "www.github.com"):
            return "https://api.github.com"
        return f"{scheme}://{host}/api/v3"


@dataclass(repr=False)
class GithubConfig:
    personal_access_token: str
    runners: GithubRunnerConfig = field(default_factory=GithubRunnerConfig)

    def __repr__(self) -> str:
        token = self.personal_access_token
        shown = "[REDACTED]" if len(token) < 8 else f"{token[:8]}..."
        return f"GithubConfig(personal_access_token={shown}, runners={self.runners!r})"


@dataclass
class ScalingConfig:
    min_runners: int = 0
    max_runners: int = 64
    interval: float = 30.0

    def bounds(self) -> GlobalBounds:
        return GlobalBounds(min_runners=self.min_runners, max_runners=self.max_runners)


@dataclass
class ExecutorConfig:
    max_attempts: int = 3
    backoff: float = 1.0
    max_backoff: float = 30.0
    action_timeout: float = 300.0
    max_workers: int = 8
    max_create_attempts: int = 3


@dataclass
class ProvisioningConfig:
    enabled: bool = False
    max_machines: int = 4
    id_prefix: str = "dynamic"
    decommission_grace_period: float = 600.0
    template: Dict[str, Any] = field(default_factory=dict)
    runners: RunnersConfig = field(default_factory=lambda: RunnersConfig(min=0, max=4))
    resources: ResourceSpec = field(default_factory=ResourceSpec)


@dataclass
class ScalerConfig:
    github: GithubConfig
    machines: List[MachineConfig] = field(default_factory=list)
    log_level: str = "info"
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    state_path: Optional[str] = None

    def global_bounds(self) -> GlobalBounds:
        return self.scaling.bounds()

    def build_machines(self) -> List[Machine]:
        return [machine.to_machine() for machine in self.machines]

    def log_level_value(self) -> int:
        return parse_log_level(self.log_level)


# ----------------------------------------------------------------------
# Locating and reading the file


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    config_home = Path(base).expanduser() if base else Path.home() / ".config"
    return config_home / _APP_DIR / "config.yaml"


def resolve_config_path(explicit: Optional[Union[str, Path]] = None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.environ.get(_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return default_config_path()


def load_config(path: Optional[Union[str, Path]] = None) -> ScalerConfig:
    """Read, resolve and validate the configuration file."""
    config_file = resolve_config_path(path)
    try:
        content = config_file.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Failed to read the configuration file '{config_file}': {exc}") from exc
    try:
        raw = yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Failed to parse the configuration file '{config_file}': {exc}") from exc

    config = parse_config(raw, config_dir=config_file.parent)
    logger.debug("Loaded configuration from %s: %r", config_file, config)
    return config


# ----------------------------------------------------------------------
# Building dataclasses from the raw document


def _mapping(node: Any, path: str) -> Dict[str, Any]:
    if node is None:
        return {}
    if not isinstance(node, dict):
        raise ConfigurationError(f"'{path}' must be a mapping.")
    return node


def _check_keys(node: Mapping[str, Any], allowed: Tuple[str, ...], path: str) -> None:
    unknown = sorted(set(node) - set(allowed))
    if unknown:
        where = f"'{path}'" if path else "the top level"
        raise ConfigurationError(f"Unknown field(s) in {where}: {', '.join(unknown)}.")


def _opt_str(node: Mapping[str, Any], key: str) -> Optional[str]:
    value = node.get(key)
    if value is None:
        return None
    return str(value)


def _int(value: Any, path: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"'{path}' must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{path}' must be an integer, got {value!r}.") from exc


def _duration(value: Any, path: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid duration in '{path}': {exc}") from exc


def _resources(node: Any, path: str) -> ResourceSpec:
    try:
        return ResourceSpec.from_dict(_mapping(node, path))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid value in '{path}': {exc}") from exc


def _build_github(node: Any) -> GithubConfig:
    node = _mapping(node, "github")
    _check_keys(node, ("personal_access_token", "runners"), "github")
    runners_node = _mapping(node.get("runners"), "github.runners")
    _check_keys(runners_node, ("name_prefix", "scope", "repo_url", "image", "labels"), "github.runners")

    token = str(node.get("personal_access_token") or "")
    raw_labels = runners_node.get("labels") or []
    if isinstance(raw_labels, str):
        raw_labels = [raw_labels]
    runners = GithubRunnerConfig(
        name_prefix=str(runners_node.get("name_prefix", "runner") or ""),
        scope=str(runners_node.get("scope", "repo") or ""),
        repo_url=str(runners_node.get("repo_url") or ""),
        image=str(runners_node.get("image") or DEFAULT_RUNNER_IMAGE),
        labels=tuple(str(label) for label in raw_labels),
    )

    if not token:
        raise ConfigurationError(
            "An empty or missing value in 'github.personal_access_token'. "
            "A GitHub personal access token must start with 'ghp_' or 'github_pat_'."
        )
    if not token.startswith(_TOKEN_PREFIXES):
        raise ConfigurationError(
            "An invalid value in 'github.personal_access_token'. "
            "A GitHub personal access token must start with 'ghp_' or 'github_pat_'."
        )
    if not runners.name_prefix:
        raise ConfigurationError("An empty value in 'github.runners.name_prefix'.")
    if runners.scope != "repo":
        raise ConfigurationError(
            f"An unsupported value '{runners.scope}' in 'github.runners.scope'. "
            "'repo' is the only supported value at the moment."
        )
    if not runners.repo_url:
        raise ConfigurationError("An empty or missing URL in 'github.runners.repo_url'.")
    if not runners.repo_url.startswith(("http://", "https://")):
        raise ConfigurationError(f"An invalid URL '{runners.repo_url}' in 'github.runners.repo_url'.")

    return GithubConfig(personal_access_token=token, runners=runners)


def _build_scaling(node: Any) -> ScalingConfig:
    node = _mapping(node, "scaling")
    _check_keys(node, ("min_runners", "max_runners", "interval"), "scaling")
    defaults = ScalingConfig()
    config = ScalingConfig(
        min_runners=_int(node.get("min_runners", defaults.min_runners), "scaling.min_runners"),
        max_runners=_int(node.get("max_runners", defaults.max_runners), "scaling.max_runners"),
        interval=_duration(node.get("interval", defaults.interval), "scaling.interval"),
    )
    config.bounds().validate()
    if config.interval <= 0:
        raise ConfigurationError("'scaling.interval' must be greater than zero.")
    return config


def _build_executor(node: Any) -> ExecutorConfig:
    node = _mapping(node, "executor")
    keys = ("max_attempts", "backoff", "max_backoff", "action_timeout", "max_workers", "max_create_attempts")
    _check_keys(node, keys, "executor")
    defaults = ExecutorConfig()
    config = ExecutorConfig(
        max_attempts=_int(node.get("max_attempts", defaults.max_attempts), "executor.max_attempts"),
        backoff=_duration(node.get("backoff", defaults.backoff), "executor.backoff"),
        max_backoff=_duration(node.get("max_backoff", defaults.max_backoff), "executor.max_backoff"),
        action_timeout=_duration(node.get("action_timeout", defaults.action_timeout), "executor.action_timeout"),
        max_workers=_int(node.get("max_workers", defaults.max_workers), "executor.max_workers"),
        max_create_attempts=_int(
            node.get("max_create_attempts", defaults.max_create_attempts), "executor.max_create_attempts"
        ),
    )
    for name in ("max_attempts", "max_workers", "max_create_attempts"):
        if getattr(config, name) < 1:
            raise ConfigurationError(f"'executor.{name}' must be at least 1.")
    return config


def _build_runners(
    node: Any,
    defaults: Optional[Mapping[str, Any]],
    path: str,
    *,
    fallback: Optional[RunnersConfig] = None,
) -> RunnersConfig:
    node = _mapping(node, path)
    _check_keys(node, ("min", "max", "idle_timeout", "resources"), path)
    defaults = defaults or {}

    def pick(key: str) -> Any:
        if node.get(key) is not None:
            return node[key]
        return defaults.get(key)

    base_min = fallback.min if fallback else DEFAULT_MIN_RUNNERS
    raw_min = pick("min")
    min_runners = base_min if raw_min is None else _int(raw_min, f"{path}.min")
    raw_max = pick("max")
    if raw_max is None:
        max_runners = fallback.max if fallback else max(min_runners, DEFAULT_MAX_RUNNERS)
    else:
        max_runners = _int(raw_max, f"{path}.max")
    raw_idle = pick("idle_timeout")
    idle_timeout = _duration(DEFAULT_IDLE_TIMEOUT if raw_idle is None else raw_idle, f"{path}.idle_timeout")

    config = RunnersConfig(
        min=min_runners,
        max=max_runners,
        idle_timeout=idle_timeout,
        resources=_resources(pick("resources"), f"{path}.resources"),
    )
    config.bounds().validate(path)
    return config


_SSH_KEYS = ("host", "port", "fingerprint", "username", "password", "private_key", "private_key_passphrase")


def _build_ssh(node: Any, defaults: Optional[Mapping[str, Any]], path: str) -> SshConfig:
    node = _mapping(node, path)
    _check_keys(node, _SSH_KEYS, path)
    defaults = defaults or {}

    def pick(key: str) -> Optional[str]:
        value = _opt_str(node, key)
        return value if value is not None else _opt_str(defaults, key)

    host = pick("host")
    if not host:
        raise ConfigurationError(f"An empty or missing value in '{path}.host'.")
    raw_port = node.get("port", defaults.get("port"))
    port = 22 if raw_port is None else _int(raw_port, f"{path}.port")
    if not 0 < port < 65536:
        raise ConfigurationError(f"An invalid port {port} in '{path}.port'.")

    return SshConfig(
        host=host,
        port=port,
        fingerprint=pick("fingerprint"),
        username=pick("username") or getpass.getuser(),
        password=pick("password"),
        private_key=pick("private_key"),
        private_key_passphrase=pick("private_key_passphrase"),
    )


def _build_machines(raw_machines: Any, defaults_node: Any) -> List[MachineConfig]:
    if raw_machines is None:
        raw_machines = []
    if not isinstance(raw_machines, list):
        raise ConfigurationError("'machines' must be a list of mappings.")

    defaults = _mapping(defaults_node, "machine_defaults")
    _check_keys(defaults, ("ssh", "runners"), "machine_defaults")
    ssh_defaults = _mapping(defaults.get("ssh"), "machine_defaults.ssh")
    _check_keys(ssh_defaults, _SSH_KEYS, "machine_defaults.ssh")
    runner_defaults = _mapping(defaults.get("runners"), "machine_defaults.runners")
    _check_keys(runner_defaults, ("min", "max", "idle_timeout", "resources"), "machine_defaults.runners")

    nodes = [_mapping(item, f"machines[{index}]") for index, item in enumerate(raw_machines)]

    taken: set[str] = set()
    for node in nodes:
        machine_id = str(node.get("id") or "")
        if not machine_id:
            continue
        if machine_id in taken:
            raise ConfigurationError(f"A duplicate machine ID '{machine_id}' was found.")
        taken.add(machine_id)

    next_id = 1
    machines: List[MachineConfig] = []
    for index, node in enumerate(nodes):
        path = f"machines[{index}]"
        _check_keys(node, ("id", "ssh", "runners", "resources"), path)
        machine_id = str(node.get("id") or "")
        if not machine_id:
            while f"machine-{next_id}" in taken:
                next_id += 1
            machine_id = f"machine-{next_id}"
            taken.add(machine_id)
        machines.append(
            MachineConfig(
                id=machine_id,
                ssh=_build_ssh(node.get("ssh"), ssh_defaults, f"{path}.ssh"),
                runners=_build_runners(node.get("runners"), runner_defaults, f"{path}.runners"),
                resources=_resources(node.get("resources"), f"{path}.resources"),
            )
        )

    machines.sort(key=lambda machine: machine.id)
    return machines


def _build_provisioning(node: Any) -> ProvisioningConfig:
    node = _mapping(node, "provisioning")
    keys = ("enabled", "max_machines", "id_prefix", "decommission_grace_period", "template", "runners", "resources")
    _check_keys(node, keys, "provisioning")
    defaults = ProvisioningConfig()
    config = ProvisioningConfig(
        enabled=bool(node.get("enabled", defaults.enabled)),
        max_machines=_int(node.get("max_machines", defaults.max_machines), "provisioning.max_machines"),
        id_prefix=str(node.get("id_prefix") or defaults.id_prefix),
        decommission_grace_period=_duration(
            node.get("decommission_grace_period", defaults.decommission_grace_period),
            "provisioning.decommission_grace_period",
        ),
        template=dict(_mapping(node.get("template"), "provisioning.template")),
        runners=_build_runners(node.get("runners"), None, "provisioning.runners", fallback=defaults.runners),
        resources=_resources(node.get("resources"), "provisioning.resources"),
    )
    if config.max_machines < 0:
        raise ConfigurationError("'provisioning.max_machines' must be non-negative.")
    return config


def parse_config(raw: Any, *, config_dir: Union[str, Path] = ".") -> ScalerConfig:
    """Build a validated :class:`ScalerConfig` from a parsed YAML document."""
    raw = _mapping(raw, "<root>")
    _check_keys(
        raw,
        ("log_level", "github", "scaling", "executor", "provisioning", "machine_defaults", "machines", "state_path"),
        "",
    )
    resolved = ConfigResolver(config_dir).resolve_tree(raw)

    log_level = str(resolved.get("log_level") or "info").lower()
    try:
        parse_log_level(log_level)
    except ValueError as exc:
        raise ConfigurationError(f"An invalid value in 'log_level': {exc}") from exc

    provisioning = _build_provisioning(resolved.get("provisioning"))
    machines = _build_machines(resolved.get("machines"), resolved.get("machine_defaults"))
    if not machines and not provisioning.enabled:
        raise ConfigurationError("There must be at least one machine in the configuration.")

    state_path = resolved.get("state_path")
    if state_path is not None:
        state_path = str(Path(config_dir) / str(state_path))

    return ScalerConfig(
        github=_build_github(resolved.get("github")),
        machines=machines,
        log_level=log_level,
        scaling=_build_scaling(resolved.get("scaling")),
        executor=_build_executor(resolved.get("executor")),
        provisioning=provisioning,
        state_path=state_path,
    )
