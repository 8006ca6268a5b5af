"""
Fleet state tracker.

The tracker is the single owner of Machine and Runner records. Every mutation
goes through one of its ``record_*``/``begin_action`` methods under a lock, and
readers only ever receive copies (:meth:`FleetStateTracker.snapshot`).
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

from ghscaler.core.entities import (
    Action,
    ActionResult,
    CreateRunner,
    DecommissionMachine,
    DestroyRunner,
    FleetError,
    FleetState,
    Machine,
    MachineState,
    ProbeResult,
    ProvisionMachine,
    Runner,
    RunnerState,
    describe_action,
    parse_runner_slot,
)
from ghscaler.core.errors import InvariantViolation

logger = logging.getLogger(__name__)

# Machines whose containers are checked by the periodic probe.
_PROBED_STATES = frozenset(
    {
        MachineState.UNPROVISIONED,
        MachineState.READY,
        MachineState.UNREACHABLE,
        MachineState.DRAINING,
    }
)


class FleetStateTracker:
    """Thread-safe registry of machines and runners."""

    def __init__(
        self,
        machines: Iterable[Machine] = (),
        *,
        name_prefix: str = "runner",
        max_create_attempts: int = 3,
        max_errors: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.name_prefix = name_prefix
        self.max_create_attempts = max(1, max_create_attempts)
        self._clock = clock
        self._lock = threading.RLock()
        self._machines: Dict[str, Machine] = {}
        self._runners: Dict[str, Runner] = {}
        self._in_flight: Set[str] = set()
        self._drain_requested: Set[str] = set()
        self._prior_states: Dict[str, MachineState] = {}
        self._errors: Deque[FleetError] = deque(maxlen=max_errors)
        for machine in machines:
            self.register_machine(machine)

    # ------------------------------------------------------------------
    # Registration

    def register_machine(self, machine: Machine) -> None:
        with self._lock:
            existing = self._machines.get(machine.id)
            if existing is not None and existing.state != MachineState.TERMINATED:
                logger.debug("Machine %s already registered, keeping its current state", machine.id)
                return
            self._machines[machine.id] = machine.copy()
            logger.debug("Registered machine %s (dynamic=%s)", machine.id, machine.dynamic)

    def restore(self, state: FleetState) -> None:
        """
        Load records from a persisted snapshot.

        Configured machines keep their configuration; dynamic machines are
        re-added. In-flight states are downgraded so the next probe and plan
        re-derive them.
        """
        with self._lock:
            for machine in state.machines.values():
                if machine.id in self._machines or not machine.dynamic:
                    continue
                if machine.state in (MachineState.TERMINATED, MachineState.PROVISIONING):
                    continue
                restored = machine.copy()
                if restored.state == MachineState.DECOMMISSIONING:
                    restored.state = MachineState.DRAINING
                if restored.state == MachineState.DRAINING:
                    self._drain_requested.add(restored.id)
                self._machines[restored.id] = restored

            for runner in state.runners.values():
                if runner.machine_id not in self._machines:
                    logger.warning("Dropping persisted runner %s: machine %s is unknown", runner.id, runner.machine_id)
                    continue
                restored = runner.copy()
                if restored.state == RunnerState.CREATING:
                    restored.state = RunnerState.REQUESTED
                elif restored.state == RunnerState.STOPPING:
                    restored.state = RunnerState.ERRORED
                    restored.stop_requested = True
                elif restored.state == RunnerState.DESTROYED:
                    continue
                self._runners[restored.id] = restored
            logger.info(
                "Restored fleet state: %d machine(s), %d runner(s)",
                len(self._machines),
                len(self._runners),
            )

    # ------------------------------------------------------------------
    # Reads

    def snapshot(self) -> FleetState:
        """Consistent copy of the fleet for the placement planner."""
        with self._lock:
            self._check_invariants()
            return FleetState(
                machines={key: machine.copy() for key, machine in self._machines.items()},
                runners={key: runner.copy() for key, runner in self._runners.items()},
                taken_at=self._clock(),
            )

    def get_machine(self, machine_id: str) -> Optional[Machine]:
        with self._lock:
            machine = self._machines.get(machine_id)
            return machine.copy() if machine else None

    def get_runner(self, runner_id: str) -> Optional[Runner]:
        with self._lock:
            runner = self._runners.get(runner_id)
            return runner.copy() if runner else None

    def machines_to_probe(self) -> List[Machine]:
        with self._lock:
            return [
                self._machines[key].copy()
                for key in sorted(self._machines)
                if self._machines[key].state in _PROBED_STATES and key not in self._in_flight
            ]

    def recent_errors(self, limit: Optional[int] = None) -> List[FleetError]:
        with self._lock:
            errors = list(self._errors)
        if limit is not None:
            errors = errors[-limit:] if limit > 0 else []
        return errors

    def in_flight(self) -> Set[str]:
        with self._lock:
            return set(self._in_flight)

    # ------------------------------------------------------------------
    # Probes

    def record_probe(self, machine_id: str, result: ProbeResult) -> None:
        with self._lock:
            machine = self._machines.get(machine_id)
            if machine is None:
                logger.warning("Ignoring probe result for unknown machine %s", machine_id)
                return
            now = self._clock()
            machine.last_probe_at = now

            if not result.reachable:
                machine.last_error = result.error
                if machine.state in _PROBED_STATES and machine.state != MachineState.UNREACHABLE:
                    if machine.state == MachineState.DRAINING:
                        self._drain_requested.add(machine_id)
                    logger.warning("Machine %s is unreachable: %s", machine_id, result.error)
                    machine.state = MachineState.UNREACHABLE
                self._add_error(machine_id, "probe", result.error or "unreachable")
                return

            if machine.state in (MachineState.UNPROVISIONED, MachineState.UNREACHABLE):
                machine.state = (
                    MachineState.DRAINING if machine_id in self._drain_requested else MachineState.READY
                )
                logger.info("Machine %s is %s", machine_id, machine.state.value)
            machine.last_error = None
            self._reconcile_containers(machine, result.running_runner_ids, now)

    def _reconcile_containers(self, machine: Machine, running: Iterable[str], now: float) -> None:
        running = set(running)
        for runner_id in sorted(running):
            runner = self._runners.get(runner_id)
            if runner is None:
                slot = parse_runner_slot(self.name_prefix, machine.id, runner_id)
                if slot is None:
                    continue
                self._runners[runner_id] = Runner(
                    id=runner_id,
                    machine_id=machine.id,
                    slot=slot,
                    state=RunnerState.IDLE,
                    idle_since=now,
                )
                logger.info("Adopted running container %s on machine %s", runner_id, machine.id)
            elif runner.id not in self._in_flight and (runner.retryable or runner.state == RunnerState.REQUESTED):
                runner.state = RunnerState.IDLE
                runner.idle_since = now
                runner.last_error = None
                logger.info("Runner %s found running on machine %s", runner_id, machine.id)

        for runner in list(self._runners.values()):
            if runner.machine_id != machine.id or runner.id in running or runner.id in self._in_flight:
                continue
            gone = runner.state in (RunnerState.IDLE, RunnerState.BUSY) or (
                runner.state == RunnerState.ERRORED and runner.stop_requested
            )
            if gone:
                del self._runners[runner.id]
                logger.info("Runner %s is no longer running on machine %s", runner.id, machine.id)

    # ------------------------------------------------------------------
    # Actions

    def begin_action(self, action: Action) -> bool:
        """
        Mark ``action``'s entity as in flight.

        Returns ``False`` when the entity already has an action in flight or the
        action no longer applies; the executor skips it in that case.
        """
        with self._lock:
            entity_id = action.entity_id
            if entity_id in self._in_flight:
                logger.warning("Skipping %s: another action is in flight", describe_action(action))
                return False

            if isinstance(action, CreateRunner):
                machine = self._require_machine(action.machine_id, action)
                if not machine.accepts_new_runners:
                    logger.info("Skipping %s: machine is %s", describe_action(action), machine.state.value)
                    return False
                runner = self._runners.get(action.runner_id)
                if runner is None:
                    runner = Runner(id=action.runner_id, machine_id=action.machine_id, slot=action.slot)
                    self._runners[runner.id] = runner
                elif runner.failed or runner.stop_requested:
                    return False
                elif runner.state in (RunnerState.IDLE, RunnerState.BUSY):
                    logger.info("Skipping %s: runner is already %s", describe_action(action), runner.state.value)
                    return False
                runner.state = RunnerState.CREATING
            elif isinstance(action, DestroyRunner):
                self._require_machine(action.machine_id, action)
                runner = self._runners.get(action.runner_id)
                if runner is None or runner.state == RunnerState.BUSY:
                    return False
                runner.state = RunnerState.STOPPING
                runner.stop_requested = True
            elif isinstance(action, ProvisionMachine):
                existing = self._machines.get(action.machine_id)
                if existing is not None and existing.state != MachineState.TERMINATED:
                    return False
                self._machines[action.machine_id] = Machine(
                    id=action.machine_id,
                    bounds=action.bounds,
                    resources=action.resources.copy(),
                    runner_resources=action.runner_resources.copy(),
                    idle_timeout=action.idle_timeout,
                    state=MachineState.PROVISIONING,
                    dynamic=True,
                )
            elif isinstance(action, DecommissionMachine):
                machine = self._require_machine(action.machine_id, action)
                live = [
                    runner.id
                    for runner in self._runners.values()
                    if runner.machine_id == machine.id and not runner.is_terminal
                ]
                if live:
                    logger.warning("Refusing to decommission machine %s: runners %s are still live", machine.id, live)
                    return False
                self._prior_states[machine.id] = machine.state
                machine.state = MachineState.DECOMMISSIONING
            else:  # pragma: no cover
                raise TypeError(f"Unknown action type: {type(action).__name__}")

            self._in_flight.add(entity_id)
            return True

    def record_action_outcome(self, action: Action, result: ActionResult) -> None:
        with self._lock:
            self._in_flight.discard(action.entity_id)
            now = self._clock()
            if isinstance(action, CreateRunner):
                self._record_create(action, result, now)
            elif isinstance(action, DestroyRunner):
                self._record_destroy(action, result)
            elif isinstance(action, ProvisionMachine):
                self._record_provision(action, result)
            elif isinstance(action, DecommissionMachine):
                self._record_decommission(action, result)
            if not result.success:
                self._add_error(action.entity_id, action.kind.value, result.message)

    def _record_create(self, action: CreateRunner, result: ActionResult, now: float) -> None:
        runner = self._runners.get(action.runner_id)
        if runner is None:
            raise InvariantViolation(f"Runner {action.runner_id} vanished while being created")
        if result.success:
            runner.state = RunnerState.IDLE
            runner.idle_since = now
            runner.last_error = None
            logger.info("Runner %s created on machine %s", runner.id, runner.machine_id)
            return

        runner.state = RunnerState.ERRORED
        runner.creation_attempts += result.attempts
        runner.last_error = result.message
        if runner.creation_attempts >= self.max_create_attempts:
            runner.failed = True
            logger.error(
                "Runner %s failed permanently after %d creation attempt(s): %s",
                runner.id,
                runner.creation_attempts,
                result.message,
            )
        self._mark_unreachable_on_connection_error(action.machine_id, result)

    def _record_destroy(self, action: DestroyRunner, result: ActionResult) -> None:
        runner = self._runners.get(action.runner_id)
        if result.success:
            if runner is not None:
                runner.state = RunnerState.DESTROYED
                del self._runners[runner.id]
            logger.info("Runner %s destroyed on machine %s", action.runner_id, action.machine_id)
            return
        if runner is not None:
            runner.state = RunnerState.ERRORED
            runner.stop_requested = True
            runner.last_error = result.message
        self._mark_unreachable_on_connection_error(action.machine_id, result)

    def _record_provision(self, action: ProvisionMachine, result: ActionResult) -> None:
        machine = self._machines.get(action.machine_id)
        if result.success:
            if machine is None:
                raise InvariantViolation(f"Provisioned machine {action.machine_id} has no placeholder")
            machine.connection = result.connection
            machine.state = MachineState.READY
            machine.last_error = None
            logger.info("Machine %s provisioned", machine.id)
            return
        self._machines.pop(action.machine_id, None)
        logger.error("Provisioning machine %s failed: %s", action.machine_id, result.message)

    def _record_decommission(self, action: DecommissionMachine, result: ActionResult) -> None:
        machine = self._machines.get(action.machine_id)
        prior = self._prior_states.pop(action.machine_id, MachineState.READY)
        if machine is None:
            raise InvariantViolation(f"Decommissioned machine {action.machine_id} is unknown")
        if result.success:
            machine.state = MachineState.TERMINATED
            machine.connection = None
            for runner in [item for item in self._runners.values() if item.machine_id == machine.id]:
                del self._runners[runner.id]
            self._drain_requested.discard(machine.id)
            logger.info("Machine %s decommissioned", machine.id)
            return
        machine.state = prior
        machine.last_error = result.message
        logger.error("Decommissioning machine %s failed: %s", machine.id, result.message)

    def _mark_unreachable_on_connection_error(self, machine_id: str, result: ActionResult) -> None:
        if not isinstance(result.error, ConnectionError):
            return
        machine = self._machines.get(machine_id)
        if machine is None or machine.state not in (MachineState.READY, MachineState.DRAINING):
            return
        if machine.state == MachineState.DRAINING:
            self._drain_requested.add(machine_id)
        machine.state = MachineState.UNREACHABLE
        machine.last_error = result.message
        logger.warning("Machine %s marked unreachable: %s", machine_id, result.message)

    # ------------------------------------------------------------------
    # Queue feedback and targets

    def record_runner_activity(self, busy_runner_ids: Iterable[str]) -> int:
        """Flip runners between Idle and Busy; returns how many changed."""
        busy = set(busy_runner_ids)
        changed = 0
        with self._lock:
            now = self._clock()
            for runner in self._runners.values():
                if runner.id in self._in_flight:
                    continue
                if runner.state == RunnerState.IDLE and runner.id in busy:
                    runner.state = RunnerState.BUSY
                    runner.idle_since = None
                    changed += 1
                elif runner.state == RunnerState.BUSY and runner.id not in busy:
                    runner.state = RunnerState.IDLE
                    runner.idle_since = now
                    changed += 1
        if changed:
            logger.debug("Runner activity updated: %d change(s), %d busy", changed, len(busy))
        return changed

    def record_targets(self, targets: Dict[str, int]) -> None:
        """Track since when each machine has been assigned no runners."""
        with self._lock:
            now = self._clock()
            for machine_id, target in targets.items():
                machine = self._machines.get(machine_id)
                if machine is None:
                    continue
                if target > 0:
                    machine.idle_since = None
                elif machine.idle_since is None:
                    machine.idle_since = now

    # ------------------------------------------------------------------
    # Operator controls

    def drain_machine(self, machine_id: str) -> bool:
        with self._lock:
            machine = self._machines.get(machine_id)
            if machine is None:
                logger.warning("Cannot drain unknown machine %s", machine_id)
                return False
            if machine.state == MachineState.READY:
                machine.state = MachineState.DRAINING
            elif machine.state not in (MachineState.UNREACHABLE, MachineState.UNPROVISIONED, MachineState.DRAINING):
                logger.warning("Cannot drain machine %s in state %s", machine_id, machine.state.value)
                return False
            self._drain_requested.add(machine_id)
            logger.info("Machine %s is draining", machine_id)
            return True

    def reset_runner(self, runner_id: str) -> bool:
        """Give a permanently failed runner a fresh set of creation attempts."""
        with self._lock:
            runner = self._runners.get(runner_id)
            if runner is None or not runner.failed or runner.id in self._in_flight:
                return False
            runner.failed = False
            runner.stop_requested = False
            runner.creation_attempts = 0
            runner.last_error = None
            runner.state = RunnerState.REQUESTED
            logger.info("Runner %s reset by operator", runner_id)
            return True

    # ------------------------------------------------------------------
    # Internals

    def _require_machine(self, machine_id: str, action: Action) -> Machine:
        machine = self._machines.get(machine_id)
        if machine is None:
            raise InvariantViolation(f"{describe_action(action)} references unknown machine {machine_id}")
        return machine

    def _check_invariants(self) -> None:
        for runner in self._runners.values():
            if runner.machine_id not in self._machines:
                raise InvariantViolation(f"Runner {runner.id} references unknown machine {runner.machine_id}")

    def _add_error(self, entity_id: str, operation: str, message: str) -> None:
        self._errors.append(FleetError(timestamp=self._clock(), entity_id=entity_id, operation=operation, message=message))
