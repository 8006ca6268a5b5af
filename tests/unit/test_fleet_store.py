"""
Unit tests for fleet snapshot persistence.
"""

from __future__ import annotations

import stat

from fakes import make_fleet, make_machine, make_runner
from ghscaler.core.config import SshConfig
from ghscaler.core.entities import MachineState, RunnerState
from ghscaler.core.fleet import FleetStateTracker, FleetStore


def test_dynamic_machine_survives_a_restart(tmp_path, clock):
    path = tmp_path / "state" / "fleet.json"
    dynamic = make_machine("dynamic-1", 0, 2, dynamic=True)
    dynamic.connection = SshConfig(host="10.0.0.7", username="ci", private_key="KEY")
    fleet = make_fleet(
        [make_machine("static", 1, 4), dynamic],
        [make_runner("dynamic-1", 0), make_runner("static", 0, RunnerState.CREATING)],
    )

    FleetStore(path).save(fleet)
    loaded = FleetStore(path).load()

    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert loaded.taken_at == fleet.taken_at
    restored = loaded.machines["dynamic-1"]
    assert restored.dynamic
    assert restored.connection.host == "10.0.0.7"
    assert restored.connection.private_key == "KEY"
    assert loaded.machines["static"].connection is None

    tracker = FleetStateTracker([make_machine("static", 1, 4, state=MachineState.UNPROVISIONED)], clock=clock)
    tracker.restore(loaded)
    assert tracker.get_machine("dynamic-1").state == MachineState.READY
    assert tracker.get_machine("static").state == MachineState.UNPROVISIONED
    assert tracker.get_runner("runner-dynamic-1-0").state == RunnerState.IDLE
    assert tracker.get_runner("runner-static-0").state == RunnerState.REQUESTED


def test_missing_file_loads_nothing(tmp_path):
    assert FleetStore(tmp_path / "absent.json").load() is None


def test_corrupt_file_is_ignored(tmp_path, caplog):
    path = tmp_path / "fleet.json"
    path.write_text("{not json", encoding="utf-8")

    assert FleetStore(path).load() is None
    assert "could not be read" in caplog.text


def test_malformed_entries_are_ignored(tmp_path):
    path = tmp_path / "fleet.json"
    path.write_text('{"machines": [{"state": "ready"}], "runners": []}', encoding="utf-8")

    assert FleetStore(path).load() is None
