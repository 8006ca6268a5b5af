"""
Unit tests for the reconciliation loop.
"""

from __future__ import annotations

import threading
import time

import pytest

from fakes import FakeJobSource, FakeRemote, make_machine
from ghscaler.core.controllers import LoopState, ReconciliationLoop
from ghscaler.core.entities import GlobalBounds, MachineState, RunnerBounds, RunnerState
from ghscaler.core.errors import InvariantViolation
from ghscaler.core.execution import ActionExecutor
from ghscaler.core.fleet import FleetStateTracker
from ghscaler.core.scaling import PlacementPolicy


def _build(clock, remote, job_source, machines=None, bounds=GlobalBounds(0, 10), **loop_kwargs):
    tracker = FleetStateTracker(
        machines if machines is not None else [make_machine("m1", 1, 4, state=MachineState.UNPROVISIONED)],
        clock=clock,
    )
    executor = ActionExecutor(tracker, remote, sleep=lambda _: None, action_timeout=5.0)
    loop = ReconciliationLoop(
        job_source,
        tracker,
        executor,
        bounds=bounds,
        policy=PlacementPolicy(),
        interval=0.05,
        clock=clock,
        **loop_kwargs,
    )
    return loop, tracker


def test_cycle_probes_plans_and_executes(clock, remote):
    loop, tracker = _build(clock, remote, FakeJobSource(queued=3, clock=clock))

    report = loop.run_once()

    assert report.cycle == 1
    assert report.desired == 3
    assert report.plan.targets == {"m1": 3}
    assert sorted(report.execution.succeeded) == [
        "create_runner(m1/runner-m1-0)",
        "create_runner(m1/runner-m1-1)",
        "create_runner(m1/runner-m1-2)",
    ]
    assert tracker.get_machine("m1").state == MachineState.READY
    assert loop.state == LoopState.IDLE


def test_transient_error_keeps_previous_snapshot(clock, remote):
    source = FakeJobSource(queued=2, clock=clock)
    loop, tracker = _build(clock, remote, source)
    loop.run_once()

    source.fail = True
    source.queued = 0
    report = loop.run_once()

    assert report.stale_snapshot
    assert report.queued == 2
    assert report.desired == 2
    assert report.plan.actions == ()
    assert len(remote.containers["m1"]) == 2


def test_transient_error_without_history_plans_for_the_minimum(clock, remote):
    source = FakeJobSource(queued=5, clock=clock)
    source.fail = True
    loop, _ = _build(clock, remote, source, bounds=GlobalBounds(1, 10))

    report = loop.run_once()

    assert report.stale_snapshot
    assert report.desired == 1


def test_busy_runners_from_the_job_source_are_applied(clock, remote):
    source = FakeJobSource(queued=1, clock=clock)
    loop, tracker = _build(clock, remote, source)
    loop.run_once()

    source.queued = 0
    source.busy = frozenset({"runner-m1-0"})
    report = loop.run_once()

    assert tracker.get_runner("runner-m1-0").state == RunnerState.BUSY
    assert report.plan.actions == ()


def test_invalid_machine_bounds_do_not_abort_the_cycle(clock, remote):
    machine = make_machine("m1", 0, 4, state=MachineState.UNPROVISIONED)
    machine.bounds = RunnerBounds(5, 1)
    loop, _ = _build(clock, remote, FakeJobSource(queued=1, clock=clock), machines=[machine])

    report = loop.run_once()

    assert report.plan is None
    assert "min (5) is greater than max (1)" in report.error
    assert loop.state == LoopState.IDLE


def test_trigger_during_cycle_is_coalesced_into_one_follow_up(clock):
    entered = threading.Event()
    release = threading.Event()

    class BlockingSource(FakeJobSource):
        def get_queue_snapshot(self):
            if self.calls == 0:
                entered.set()
                release.wait(5)
            return super().get_queue_snapshot()

    source = BlockingSource(queued=0, clock=clock)
    loop, _ = _build(clock, FakeRemote(), source)
    results = []
    worker = threading.Thread(target=lambda: results.append(loop.run_once()))
    worker.start()
    assert entered.wait(5)

    assert loop.run_once() is None
    assert loop.run_once() is None
    assert loop.pending
    release.set()
    worker.join(5)

    assert source.calls == 2
    assert loop.cycles == 2
    assert results[0].cycle == 2
    assert not loop.pending
    assert loop.state == LoopState.IDLE


def test_background_thread_runs_on_the_interval_and_stops(clock, remote):
    source = FakeJobSource(queued=1, clock=clock)
    loop, _ = _build(clock, remote, source)

    loop.start()
    deadline = time.monotonic() + 5
    while loop.cycles < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    loop.stop(timeout=5)

    assert loop.cycles >= 2
    assert not loop.running


def test_invariant_violation_stops_the_background_thread(clock, remote):
    source = FakeJobSource(clock=clock)
    loop, tracker = _build(clock, remote, source)
    cycles = []

    def _corrupt(report):
        cycles.append(report.cycle)
        tracker._machines.clear()  # pylint: disable=protected-access

    loop._on_cycle = _corrupt  # pylint: disable=protected-access
    loop.start()
    deadline = time.monotonic() + 5
    while loop.fatal_error is None and time.monotonic() < deadline:
        time.sleep(0.01)
    loop.stop(timeout=5)

    assert isinstance(loop.fatal_error, InvariantViolation)
    assert cycles == [1]


def test_run_once_propagates_invariant_violations(clock, remote):
    loop, tracker = _build(clock, remote, FakeJobSource(queued=1, clock=clock))
    loop.run_once()
    tracker._machines.clear()  # pylint: disable=protected-access

    with pytest.raises(InvariantViolation):
        loop.run_once()
    assert loop.state == LoopState.IDLE
