"""
Placement planner.

Turns a desired global runner count and a point-in-time fleet snapshot into an
ordered :class:`~ghscaler.core.entities.Plan`. The planner is a pure function:
it never mutates the snapshot and produces the same plan for the same inputs.

Plan order:

1. at most one ``ProvisionMachine``
2. per machine in ascending id order, ``DestroyRunner`` then ``CreateRunner``
3. ``DecommissionMachine`` for empty dynamic machines
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from ghscaler.core.entities import (
    Action,
    CreateRunner,
    DecommissionMachine,
    DestroyRunner,
    FleetState,
    Machine,
    MachineState,
    Plan,
    ProvisionMachine,
    ResourceSpec,
    Runner,
    RunnerBounds,
    RunnerState,
    make_runner_id,
)

if TYPE_CHECKING:  # pragma: no cover
    from ghscaler.core.config import ScalerConfig

logger = logging.getLogger(__name__)

# Machines that keep their runners but get a target of zero.
_DRAINED_STATES = frozenset({MachineState.DRAINING})
# Dynamic machines counted against ``max_machines``.
_LIVE_DYNAMIC_STATES = frozenset(
    {
        MachineState.PROVISIONING,
        MachineState.READY,
        MachineState.UNREACHABLE,
        MachineState.DRAINING,
        MachineState.DECOMMISSIONING,
    }
)


@dataclass(frozen=True)
class PlacementPolicy:
    """Knobs of the placement planner that come from configuration."""

    name_prefix: str = "runner"
    provisioning_enabled: bool = False
    provision_template: Mapping[str, Any] = field(default_factory=dict)
    provision_bounds: RunnerBounds = field(default_factory=lambda: RunnerBounds(0, 4))
    provision_idle_timeout: float = 60.0
    provision_resources: ResourceSpec = field(default_factory=ResourceSpec)
    provision_runner_resources: ResourceSpec = field(default_factory=ResourceSpec)
    max_machines: int = 4
    id_prefix: str = "dynamic"
    decommission_grace_period: float = 600.0

    @classmethod
    def from_config(cls, config: "ScalerConfig") -> "PlacementPolicy":
        provisioning = config.provisioning
        return cls(
            name_prefix=config.github.runners.name_prefix,
            provisioning_enabled=provisioning.enabled,
            provision_template=dict(provisioning.template),
            provision_bounds=provisioning.runners.bounds(),
            provision_idle_timeout=provisioning.runners.idle_timeout,
            provision_resources=provisioning.resources.copy(),
            provision_runner_resources=provisioning.runners.resources.copy(),
            max_machines=provisioning.max_machines,
            id_prefix=provisioning.id_prefix,
            decommission_grace_period=provisioning.decommission_grace_period,
        )


def plan_placement(
    desired: int,
    fleet: FleetState,
    policy: Optional[PlacementPolicy] = None,
    *,
    now: Optional[float] = None,
) -> Plan:
    """
    Compute the actions that move ``fleet`` towards ``desired`` runners.

    Raises:
        ConfigurationError: if an eligible machine carries invalid bounds.
    """
    policy = policy or PlacementPolicy()
    if now is None:
        now = fleet.taken_at or time.time()
    desired = max(0, desired)

    targets, shortfall = _allocate(desired, fleet)

    actions: List[Action] = []
    provision = _plan_provision(shortfall, fleet, policy)
    if provision is not None:
        actions.append(provision)

    decommissions: List[Action] = []
    for machine_id in fleet.machine_ids():
        if machine_id not in targets:
            continue
        machine = fleet.machines[machine_id]
        runners = fleet.runners_on(machine_id)
        actions.extend(_plan_machine(machine, runners, targets[machine_id], policy, now))
        if _should_decommission(machine, runners, targets[machine_id], policy, now):
            decommissions.append(DecommissionMachine(machine_id=machine_id))
    actions.extend(decommissions)

    plan = Plan(desired=desired, actions=tuple(actions), targets=targets, shortfall=shortfall)
    if plan.actions:
        logger.info(
            "Planned %d action(s) for desired=%d targets=%s shortfall=%d",
            len(plan),
            desired,
            targets,
            shortfall,
        )
    else:
        logger.debug("Fleet already matches desired=%d targets=%s", desired, targets)
    return plan


def _allocate(desired: int, fleet: FleetState) -> Tuple[Dict[str, int], int]:
    """Per-machine targets: minimums first, then ascending-id fill up to each effective max."""
    eligible: List[Machine] = []
    targets: Dict[str, int] = {}
    for machine_id in fleet.machine_ids():
        machine = fleet.machines[machine_id]
        if machine.state in _DRAINED_STATES:
            targets[machine_id] = 0
        elif machine.accepts_new_runners:
            machine.bounds.validate(f"machine '{machine_id}'")
            eligible.append(machine)
            targets[machine_id] = machine.bounds.min_runners

    remaining = desired - sum(targets[machine.id] for machine in eligible)
    for machine in eligible:
        if remaining <= 0:
            break
        room = machine.effective_max() - targets[machine.id]
        extra = min(room, remaining)
        if extra > 0:
            targets[machine.id] += extra
            remaining -= extra

    return targets, max(0, remaining)


def _plan_provision(shortfall: int, fleet: FleetState, policy: PlacementPolicy) -> Optional[ProvisionMachine]:
    if shortfall <= 0 or not policy.provisioning_enabled:
        return None
    dynamic = [machine for machine in fleet.machines.values() if machine.dynamic and machine.state in _LIVE_DYNAMIC_STATES]
    if any(machine.state == MachineState.PROVISIONING for machine in dynamic):
        logger.debug("Shortfall of %d runner(s) waits for a machine that is still provisioning", shortfall)
        return None
    if len(dynamic) >= policy.max_machines:
        logger.info("Shortfall of %d runner(s) accepted: %d dynamic machine(s) already exist", shortfall, len(dynamic))
        return None
    if policy.provision_bounds.max_runners <= 0:
        return None

    index = 1
    while True:
        candidate = f"{policy.id_prefix}-{index}"
        existing = fleet.machines.get(candidate)
        if existing is None or existing.state == MachineState.TERMINATED:
            break
        index += 1
    return ProvisionMachine(
        machine_id=candidate,
        template=dict(policy.provision_template),
        bounds=policy.provision_bounds,
        idle_timeout=policy.provision_idle_timeout,
        resources=policy.provision_resources.copy(),
        runner_resources=policy.provision_runner_resources.copy(),
    )


def _plan_machine(
    machine: Machine,
    runners: List[Runner],
    target: int,
    policy: PlacementPolicy,
    now: float,
) -> List[Action]:
    destroys: List[Action] = []
    creates: List[Action] = []

    # Destroys that failed in an earlier cycle are re-issued until they succeed.
    for runner in runners:
        if runner.stop_requested and runner.state == RunnerState.ERRORED:
            destroys.append(DestroyRunner(machine_id=machine.id, runner_id=runner.id))

    current = [runner for runner in runners if runner.counts_toward_target]
    pending = [runner for runner in current if runner.needs_create]
    surplus = len(current) - target

    if surplus > 0:
        # Runners that never came up go first, then the longest-idle ones.
        for runner in sorted(pending, key=lambda item: (item.state != RunnerState.ERRORED, item.id))[:surplus]:
            destroys.append(DestroyRunner(machine_id=machine.id, runner_id=runner.id))
            pending.remove(runner)
            surplus -= 1
        draining = machine.state in _DRAINED_STATES
        idle = [
            runner
            for runner in current
            if runner.state == RunnerState.IDLE
            and (draining or now - _idle_since(runner, now) >= machine.idle_timeout)
        ]
        idle.sort(key=lambda item: (_idle_since(item, now), item.id))
        for runner in idle[:surplus]:
            destroys.append(DestroyRunner(machine_id=machine.id, runner_id=runner.id))

    for runner in pending:
        creates.append(CreateRunner(machine_id=machine.id, runner_id=runner.id, slot=runner.slot))

    if surplus < 0:
        taken = {runner.slot for runner in runners}
        slot = 0
        for _ in range(-surplus):
            while slot in taken:
                slot += 1
            taken.add(slot)
            creates.append(
                CreateRunner(
                    machine_id=machine.id,
                    runner_id=make_runner_id(policy.name_prefix, machine.id, slot),
                    slot=slot,
                )
            )

    if destroys or creates:
        logger.debug(
            "Machine %s: %d current runner(s), target %d, %d destroy(s), %d create(s)",
            machine.id,
            len(current),
            target,
            len(destroys),
            len(creates),
        )
    return destroys + creates


def _should_decommission(
    machine: Machine,
    runners: List[Runner],
    target: int,
    policy: PlacementPolicy,
    now: float,
) -> bool:
    if not machine.dynamic or target != 0:
        return False
    if any(not runner.is_terminal for runner in runners):
        return False
    if machine.state == MachineState.DRAINING:
        return True
    if machine.state != MachineState.READY or machine.idle_since is None:
        return False
    return now - machine.idle_since >= policy.decommission_grace_period


def _idle_since(runner: Runner, now: float) -> float:
    return runner.idle_since if runner.idle_since is not None else now
