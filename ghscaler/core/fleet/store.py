"""
JSON persistence for fleet snapshots.

Only dynamic machines and runner records are worth keeping across restarts:
configured machines come back from the configuration file and every machine
is probed again before the first plan.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from ghscaler.core.entities import FleetState, Machine, MachineState, ResourceSpec, Runner, RunnerBounds

logger = logging.getLogger(__name__)

ConnectionCodec = Callable[[Any], Any]


def _encode_connection(connection: Any) -> Any:
    if connection is None:
        return None
    if hasattr(connection, "to_dict"):
        return connection.to_dict()
    if isinstance(connection, dict):
        return dict(connection)
    return None


def _decode_connection(payload: Any) -> Any:
    if not payload:
        return None
    from ghscaler.core.config import SshConfig

    return SshConfig.from_dict(payload)


class FleetStore:
    """Reads and writes fleet snapshots to a single JSON file."""

    def __init__(
        self,
        path: Union[str, Path],
        *,
        encode_connection: ConnectionCodec = _encode_connection,
        decode_connection: ConnectionCodec = _decode_connection,
    ):
        self.path = Path(path).expanduser()
        self._encode = encode_connection
        self._decode = decode_connection

    def save(self, state: FleetState) -> None:
        payload = state.to_dict()
        connections = {
            machine.id: self._encode(machine.connection)
            for machine in state.machines.values()
            if machine.dynamic and machine.connection is not None
        }
        for entry in payload["machines"]:
            entry["connection"] = connections.get(entry["id"])
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.chmod(0o600)
            tmp.replace(self.path)
        except OSError:
            logger.exception("Fleet state could not be written to %s", self.path)

    def load(self) -> Optional[FleetState]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("Fleet state could not be read from %s", self.path)
            return None

        try:
            machines: Dict[str, Machine] = {}
            for entry in data.get("machines", []):
                machine = self._machine_from_dict(entry)
                machines[machine.id] = machine
            runners: Dict[str, Runner] = {}
            for entry in data.get("runners", []):
                runner = Runner.from_dict(entry)
                runners[runner.id] = runner
        except (KeyError, TypeError, ValueError):
            logger.exception("Fleet state in %s is malformed, ignoring it", self.path)
            return None

        logger.info("Fleet state loaded from %s: %d machine(s), %d runner(s)", self.path, len(machines), len(runners))
        return FleetState(machines=machines, runners=runners, taken_at=float(data.get("taken_at") or 0.0))

    def _machine_from_dict(self, entry: Dict[str, Any]) -> Machine:
        return Machine(
            id=str(entry["id"]),
            connection=self._decode(entry.get("connection")),
            bounds=RunnerBounds(
                min_runners=int(entry.get("min_runners", 0)),
                max_runners=int(entry.get("max_runners", 0)),
            ),
            resources=ResourceSpec.from_dict(entry.get("resources")),
            runner_resources=ResourceSpec.from_dict(entry.get("runner_resources")),
            idle_timeout=float(entry.get("idle_timeout") or 0.0),
            state=MachineState(entry.get("state", MachineState.UNPROVISIONED.value)),
            dynamic=bool(entry.get("dynamic", False)),
            last_probe_at=entry.get("last_probe_at"),
            last_error=entry.get("last_error"),
            idle_since=entry.get("idle_since"),
        )
