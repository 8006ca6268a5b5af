"""
Action executor.

Applies one plan's actions against the remote execution and provisioning
collaborators. Actions are partitioned by machine: each machine's batch runs in
order on one worker, batches for different machines run concurrently. Every
collaborator failure is converted into an :class:`ActionResult` here and never
escapes to the reconciliation loop.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ghscaler.core.entities import (
    Action,
    ActionKind,
    ActionResult,
    Machine,
    Plan,
    ProbeResult,
    describe_action,
)
from ghscaler.core.errors import ActionTimeoutError, InvariantViolation, ProvisioningError
from ghscaler.core.fleet import FleetStateTracker
from ghscaler.core.protocols import CloudProvisioner, RemoteExecutor

if TYPE_CHECKING:  # pragma: no cover
    from ghscaler.core.config import ExecutorConfig

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    """What happened to each action of a plan."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def merge(self, other: "ExecutionReport") -> None:
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)
        self.skipped.extend(other.skipped)

    def to_dict(self) -> dict:
        return {
            "succeeded": sorted(self.succeeded),
            "failed": sorted(self.failed),
            "skipped": sorted(self.skipped),
        }


class ActionExecutor:
    """Runs plans with bounded retries, backoff and a per-action timeout."""

    def __init__(
        self,
        tracker: FleetStateTracker,
        remote: RemoteExecutor,
        provisioner: Optional[CloudProvisioner] = None,
        *,
        max_attempts: int = 3,
        backoff: float = 1.0,
        max_backoff: float = 30.0,
        action_timeout: Optional[float] = 300.0,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tracker = tracker
        self.remote = remote
        self.provisioner = provisioner
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.action_timeout = action_timeout
        self.max_workers = max(1, max_workers)
        self._sleep = sleep
        # Remote calls run here so a hung call can be abandoned after ``action_timeout``.
        self._calls = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers * 2, thread_name_prefix="ghscaler-call"
        )

    @classmethod
    def from_config(
        cls,
        tracker: FleetStateTracker,
        remote: RemoteExecutor,
        provisioner: Optional[CloudProvisioner],
        config: "ExecutorConfig",
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ActionExecutor":
        return cls(
            tracker,
            remote,
            provisioner,
            max_attempts=config.max_attempts,
            backoff=config.backoff,
            max_backoff=config.max_backoff,
            action_timeout=config.action_timeout,
            max_workers=config.max_workers,
            sleep=sleep,
        )

    def shutdown(self) -> None:
        self._calls.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Plans

    def execute(self, plan: Plan) -> ExecutionReport:
        report = ExecutionReport()
        batches: "OrderedDict[str, List[Action]]" = OrderedDict()
        for action in plan.actions:
            batches.setdefault(action.machine_id, []).append(action)
        if not batches:
            return report

        workers = min(self.max_workers, len(batches))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ghscaler-batch") as pool:
            futures = {
                pool.submit(self._run_batch, machine_id, actions): machine_id
                for machine_id, actions in batches.items()
            }
            for future in concurrent.futures.as_completed(futures):
                # InvariantViolation is the only exception a batch lets through.
                report.merge(future.result())

        logger.info(
            "Executed plan: %d succeeded, %d failed, %d skipped",
            len(report.succeeded),
            len(report.failed),
            len(report.skipped),
        )
        return report

    def _run_batch(self, machine_id: str, actions: List[Action]) -> ExecutionReport:
        report = ExecutionReport()
        for index, action in enumerate(actions):
            label = describe_action(action)
            if not self.tracker.begin_action(action):
                report.skipped.append(label)
                continue

            result = self._run_with_retry(action)
            pending = _still_running(result)
            if pending is None:
                self.tracker.record_action_outcome(action, result)
            else:
                logger.warning("%s is still running after its timeout, %s stays in flight", label, action.entity_id)
                pending.add_done_callback(lambda _future, action=action, result=result: self._release(action, result))
            if result.success:
                report.succeeded.append(label)
                continue

            report.failed.append(label)
            if isinstance(result.error, ConnectionError):
                remaining = [describe_action(item) for item in actions[index + 1:]]
                if remaining:
                    logger.warning("Machine %s unreachable, skipping %d remaining action(s)", machine_id, len(remaining))
                report.skipped.extend(remaining)
                break
        return report

    def _run_with_retry(self, action: Action) -> ActionResult:
        label = describe_action(action)
        attempts = 0
        result = ActionResult.failure(RuntimeError("not attempted"), attempts=0)
        while attempts < self.max_attempts and not result.success:
            if attempts:
                delay = min(self.backoff * (2 ** (attempts - 1)), self.max_backoff)
                logger.debug("Retrying %s in %.1fs", label, delay)
                self._sleep(delay)
            attempts += 1
            result = self._attempt(action)
            if not result.success:
                logger.warning("%s failed (attempt %d/%d): %s", label, attempts, self.max_attempts, result.message)
                if _still_running(result) is not None:
                    # Never overlap a second call with an abandoned one for the same entity.
                    break

        if result.success:
            return ActionResult.ok(result.connection, attempts=attempts)
        logger.error("%s gave up after %d attempt(s): %s", label, attempts, result.message)
        return ActionResult.failure(result.error, attempts=attempts)

    def _attempt(self, action: Action) -> ActionResult:
        try:
            connection = self._call_with_timeout(self._dispatch, action)
        except InvariantViolation:
            raise
        except Exception as exc:  # noqa: BLE001 - collaborator failures become results
            if not isinstance(exc, (ConnectionError, ActionTimeoutError, ProvisioningError)):
                logger.debug("Collaborator error for %s", describe_action(action), exc_info=True)
            return ActionResult.failure(exc)
        return ActionResult.ok(connection)

    def _dispatch(self, action: Action) -> Any:
        kind = action.kind
        if kind == ActionKind.PROVISION_MACHINE:
            return self._require_provisioner().provision_machine(action.machine_id, action.template)

        machine = self._machine(action.machine_id)
        if kind == ActionKind.CREATE_RUNNER:
            self.remote.create_runner(machine, action.runner_id)
        elif kind == ActionKind.DESTROY_RUNNER:
            self.remote.destroy_runner(machine, action.runner_id)
        elif kind == ActionKind.DECOMMISSION_MACHINE:
            self._require_provisioner().decommission_machine(machine)
        else:  # pragma: no cover
            raise InvariantViolation(f"Unknown action kind {kind!r}")
        return None

    def _call_with_timeout(self, func: Callable[..., Any], *args: Any) -> Any:
        if not self.action_timeout:
            return func(*args)
        future = self._calls.submit(func, *args)
        try:
            return future.result(timeout=self.action_timeout)
        except concurrent.futures.TimeoutError as exc:
            message = f"Remote call exceeded {self.action_timeout:.1f}s"
            if future.cancel():
                raise ActionTimeoutError(message) from exc
            raise ActionTimeoutError(message, pending=future) from exc

    def _release(self, action: Action, result: ActionResult) -> None:
        """Record a timed-out action once its abandoned call has returned."""
        logger.info("Abandoned call for %s returned, releasing %s", describe_action(action), action.entity_id)
        try:
            self.tracker.record_action_outcome(action, result)
        except InvariantViolation:
            logger.exception("Fleet state became inconsistent while releasing %s", action.entity_id)
            raise

    def _machine(self, machine_id: str) -> Machine:
        machine = self.tracker.get_machine(machine_id)
        if machine is None:
            raise InvariantViolation(f"Machine {machine_id} disappeared during execution")
        return machine

    def _require_provisioner(self) -> CloudProvisioner:
        if self.provisioner is None:
            raise ProvisioningError("No cloud provisioner is configured")
        return self.provisioner

    # ------------------------------------------------------------------
    # Probes

    def probe_all(self) -> Dict[str, ProbeResult]:
        """Probe every probeable machine concurrently and record the results."""
        machines = self.tracker.machines_to_probe()
        if not machines:
            return {}

        results: Dict[str, ProbeResult] = {}
        workers = min(self.max_workers, len(machines))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ghscaler-probe") as pool:
            futures = {pool.submit(self._probe, machine): machine.id for machine in machines}
            for future in concurrent.futures.as_completed(futures):
                machine_id = futures[future]
                result = future.result()
                self.tracker.record_probe(machine_id, result)
                results[machine_id] = result
        return results

    def _probe(self, machine: Machine) -> ProbeResult:
        try:
            return self._call_with_timeout(self.remote.probe, machine)
        except Exception as exc:  # noqa: BLE001 - an unreachable machine is a probe result
            logger.debug("Probe of machine %s raised", machine.id, exc_info=True)
            return ProbeResult.unreachable(f"{type(exc).__name__}: {exc}")


def _still_running(result: ActionResult) -> Optional[concurrent.futures.Future]:
    """The abandoned call behind a timed-out result, if it has not returned yet."""
    error = result.error
    if isinstance(error, ActionTimeoutError) and error.pending is not None and not error.pending.done():
        return error.pending
    return None
