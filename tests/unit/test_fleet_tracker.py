"""
Unit tests for the fleet state tracker.
"""

from __future__ import annotations

import pytest

from fakes import make_machine, make_runner
from ghscaler.core.entities import (
    ActionResult,
    CreateRunner,
    DecommissionMachine,
    DestroyRunner,
    FleetState,
    MachineState,
    ProbeResult,
    ProvisionMachine,
    ResourceSpec,
    RunnerBounds,
    RunnerState,
)
from ghscaler.core.errors import CommandError, InvariantViolation, ProvisioningError, RemoteConnectionError
from ghscaler.core.fleet import FleetStateTracker


@pytest.fixture
def tracker(clock):
    return FleetStateTracker(
        [make_machine("m1", 0, 4, state=MachineState.UNPROVISIONED)],
        max_create_attempts=3,
        clock=clock,
    )


def _ready(tracker, machine_id="m1", running=()):
    tracker.record_probe(machine_id, ProbeResult(reachable=True, running_runner_ids=frozenset(running)))


def test_first_successful_probe_makes_machine_ready(tracker, clock):
    _ready(tracker)

    machine = tracker.get_machine("m1")
    assert machine.state == MachineState.READY
    assert machine.last_probe_at == clock.now


def test_failed_probe_marks_machine_unreachable_until_next_success(tracker):
    _ready(tracker)
    tracker.record_probe("m1", ProbeResult.unreachable("timed out"))

    assert tracker.get_machine("m1").state == MachineState.UNREACHABLE
    assert tracker.get_machine("m1").last_error == "timed out"
    assert tracker.recent_errors()[-1].operation == "probe"

    _ready(tracker)
    assert tracker.get_machine("m1").state == MachineState.READY
    assert tracker.get_machine("m1").last_error is None


def test_create_lifecycle(tracker, clock):
    _ready(tracker)
    action = CreateRunner(machine_id="m1", runner_id="runner-m1-0", slot=0)

    assert tracker.begin_action(action) is True
    assert tracker.get_runner("runner-m1-0").state == RunnerState.CREATING
    assert tracker.begin_action(action) is False

    tracker.record_action_outcome(action, ActionResult.ok())

    runner = tracker.get_runner("runner-m1-0")
    assert runner.state == RunnerState.IDLE
    assert runner.idle_since == clock.now
    assert tracker.in_flight() == set()


def test_repeated_failures_mark_runner_permanently_failed(tracker):
    _ready(tracker)
    action = CreateRunner(machine_id="m1", runner_id="runner-m1-0", slot=0)

    tracker.begin_action(action)
    tracker.record_action_outcome(action, ActionResult.failure(CommandError("docker run", 1), attempts=2))
    runner = tracker.get_runner("runner-m1-0")
    assert runner.state == RunnerState.ERRORED
    assert runner.retryable and not runner.failed

    tracker.begin_action(action)
    tracker.record_action_outcome(action, ActionResult.failure(CommandError("docker run", 1), attempts=1))
    runner = tracker.get_runner("runner-m1-0")
    assert runner.failed
    assert not runner.counts_toward_target
    assert tracker.begin_action(action) is False


def test_connection_failure_marks_machine_unreachable(tracker):
    _ready(tracker)
    action = CreateRunner(machine_id="m1", runner_id="runner-m1-0", slot=0)

    tracker.begin_action(action)
    tracker.record_action_outcome(action, ActionResult.failure(RemoteConnectionError("refused"), attempts=3))

    assert tracker.get_machine("m1").state == MachineState.UNREACHABLE
    assert tracker.get_runner("runner-m1-0").failed


def test_destroy_success_removes_runner_and_failure_keeps_stop_request(tracker):
    _ready(tracker, running={"runner-m1-0", "runner-m1-1"})
    ok = DestroyRunner(machine_id="m1", runner_id="runner-m1-0")
    bad = DestroyRunner(machine_id="m1", runner_id="runner-m1-1")

    tracker.begin_action(ok)
    tracker.record_action_outcome(ok, ActionResult.ok())
    tracker.begin_action(bad)
    tracker.record_action_outcome(bad, ActionResult.failure(CommandError("docker rm", 1)))

    assert tracker.get_runner("runner-m1-0") is None
    runner = tracker.get_runner("runner-m1-1")
    assert runner.state == RunnerState.ERRORED
    assert runner.stop_requested
    assert not runner.counts_toward_target


def test_busy_runner_cannot_be_destroyed(tracker):
    _ready(tracker, running={"runner-m1-0"})
    tracker.record_runner_activity({"runner-m1-0"})

    assert tracker.begin_action(DestroyRunner(machine_id="m1", runner_id="runner-m1-0")) is False


def test_create_is_refused_for_a_live_runner(tracker):
    _ready(tracker, running={"runner-m1-0", "runner-m1-1"})
    tracker.record_runner_activity({"runner-m1-1"})

    assert tracker.begin_action(CreateRunner(machine_id="m1", runner_id="runner-m1-0", slot=0)) is False
    assert tracker.begin_action(CreateRunner(machine_id="m1", runner_id="runner-m1-1", slot=1)) is False
    assert tracker.get_runner("runner-m1-0").state == RunnerState.IDLE
    assert tracker.get_runner("runner-m1-1").state == RunnerState.BUSY
    assert tracker.in_flight() == set()


def test_probe_adopts_unknown_containers_and_drops_vanished_ones(tracker):
    _ready(tracker, running={"runner-m1-3", "unrelated-container", "runner-m2-0"})

    adopted = tracker.get_runner("runner-m1-3")
    assert adopted.state == RunnerState.IDLE
    assert adopted.slot == 3
    assert tracker.get_runner("unrelated-container") is None
    assert tracker.get_runner("runner-m2-0") is None

    _ready(tracker, running=())
    assert tracker.get_runner("runner-m1-3") is None


def test_runner_activity_flips_idle_and_busy(tracker, clock):
    _ready(tracker, running={"runner-m1-0", "runner-m1-1"})

    assert tracker.record_runner_activity({"runner-m1-0"}) == 1
    assert tracker.get_runner("runner-m1-0").state == RunnerState.BUSY
    assert tracker.get_runner("runner-m1-0").idle_since is None

    clock.advance(30)
    assert tracker.record_runner_activity(set()) == 1
    runner = tracker.get_runner("runner-m1-0")
    assert runner.state == RunnerState.IDLE
    assert runner.idle_since == clock.now


def test_record_targets_tracks_machine_idle_since(tracker, clock):
    tracker.record_targets({"m1": 0})
    first = tracker.get_machine("m1").idle_since
    assert first == clock.now

    clock.advance(10)
    tracker.record_targets({"m1": 0})
    assert tracker.get_machine("m1").idle_since == first

    tracker.record_targets({"m1": 2})
    assert tracker.get_machine("m1").idle_since is None


def test_provision_success_and_failure(tracker):
    action = ProvisionMachine(machine_id="dynamic-1", bounds=RunnerBounds(0, 2))

    assert tracker.begin_action(action)
    assert tracker.get_machine("dynamic-1").state == MachineState.PROVISIONING
    tracker.record_action_outcome(action, ActionResult.ok({"host": "10.0.0.9"}))
    machine = tracker.get_machine("dynamic-1")
    assert machine.state == MachineState.READY
    assert machine.dynamic
    assert machine.connection == {"host": "10.0.0.9"}

    failing = ProvisionMachine(machine_id="dynamic-2")
    tracker.begin_action(failing)
    tracker.record_action_outcome(failing, ActionResult.failure(ProvisioningError("quota")))
    assert tracker.get_machine("dynamic-2") is None
    assert tracker.recent_errors()[-1].entity_id == "dynamic-2"


def test_provisioned_machine_keeps_capacity_hints(tracker):
    action = ProvisionMachine(
        machine_id="dynamic-1",
        bounds=RunnerBounds(0, 8),
        resources=ResourceSpec(cpu=8, memory=8192),
        runner_resources=ResourceSpec(cpu=2, memory=1024),
    )

    assert tracker.begin_action(action)
    tracker.record_action_outcome(action, ActionResult.ok({"host": "10.0.0.9"}))

    machine = tracker.get_machine("dynamic-1")
    assert machine.runner_resources == ResourceSpec(cpu=2, memory=1024)
    assert machine.effective_max() == 4


def test_decommission_requires_empty_machine_and_restores_state_on_failure(clock):
    tracker = FleetStateTracker([make_machine("dyn", 0, 2, dynamic=True)], clock=clock)
    _ready(tracker, "dyn", running={"runner-dyn-0"})
    action = DecommissionMachine(machine_id="dyn")

    assert tracker.begin_action(action) is False

    _ready(tracker, "dyn", running=())
    assert tracker.begin_action(action) is True
    assert tracker.get_machine("dyn").state == MachineState.DECOMMISSIONING
    tracker.record_action_outcome(action, ActionResult.failure(ProvisioningError("locked")))
    assert tracker.get_machine("dyn").state == MachineState.READY

    tracker.begin_action(action)
    tracker.record_action_outcome(action, ActionResult.ok())
    assert tracker.get_machine("dyn").state == MachineState.TERMINATED


def test_drain_survives_an_unreachable_period(tracker):
    _ready(tracker)
    assert tracker.drain_machine("m1")
    tracker.record_probe("m1", ProbeResult.unreachable("gone"))
    _ready(tracker)

    assert tracker.get_machine("m1").state == MachineState.DRAINING
    assert tracker.drain_machine("nope") is False


def test_reset_runner_restores_failed_runner(tracker):
    _ready(tracker)
    action = CreateRunner(machine_id="m1", runner_id="runner-m1-0", slot=0)
    tracker.begin_action(action)
    tracker.record_action_outcome(action, ActionResult.failure(CommandError("docker run", 1), attempts=3))

    assert tracker.reset_runner("runner-m1-0")
    runner = tracker.get_runner("runner-m1-0")
    assert runner.state == RunnerState.REQUESTED
    assert runner.creation_attempts == 0
    assert runner.needs_create
    assert tracker.reset_runner("runner-m1-0") is False


def test_snapshot_is_a_copy(tracker):
    _ready(tracker, running={"runner-m1-0"})
    snapshot = tracker.snapshot()
    snapshot.runners["runner-m1-0"].state = RunnerState.BUSY
    snapshot.machines["m1"].state = MachineState.TERMINATED

    assert tracker.get_runner("runner-m1-0").state == RunnerState.IDLE
    assert tracker.get_machine("m1").state == MachineState.READY


def test_action_on_unknown_machine_is_an_invariant_violation(tracker):
    with pytest.raises(InvariantViolation):
        tracker.begin_action(CreateRunner(machine_id="ghost", runner_id="runner-ghost-0", slot=0))


def test_restore_downgrades_in_flight_states(clock):
    tracker = FleetStateTracker([make_machine("m1", 0, 4)], clock=clock)
    dynamic = make_machine("dyn-1", 0, 2, dynamic=True, state=MachineState.DECOMMISSIONING)
    state = FleetState(
        machines={"m1": make_machine("m1", 0, 4), "dyn-1": dynamic},
        runners={
            "runner-m1-0": make_runner("m1", 0, RunnerState.CREATING),
            "runner-m1-1": make_runner("m1", 1, RunnerState.STOPPING),
            "runner-gone-0": make_runner("gone", 0),
        },
    )

    tracker.restore(state)

    assert tracker.get_machine("dyn-1").state == MachineState.DRAINING
    assert tracker.get_runner("runner-m1-0").state == RunnerState.REQUESTED
    assert tracker.get_runner("runner-m1-1").stop_requested
    assert tracker.get_runner("runner-gone-0") is None
