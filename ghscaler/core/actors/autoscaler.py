"""
Autoscaler actor.

Hosts the fleet tracker, the action executor and the reconciliation loop inside
one Ray actor process. The loop runs on a background thread; actor methods give
operators a synchronous handle on it.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import ray
from ray.util import metrics

from .config import ActorConfig
from ghscaler.core.config import ScalerConfig
from ghscaler.core.controllers.reconciler import CycleReport, ReconciliationLoop
from ghscaler.core.execution import ActionExecutor
from ghscaler.core.fleet import FleetStateTracker, FleetStore
from ghscaler.core.protocols import CloudProvisioner, JobSource, RemoteExecutor
from ghscaler.core.scaling import PlacementPolicy
from ghscaler.core.utils import configure_runtime_logging, demote_ray_logging

logger = logging.getLogger(__name__)


@ray.remote
class AutoscalerActor:
    """Runs reconciliation cycles for one fleet."""

    def __init__(
        self,
        config: ActorConfig,
        scaler_config: ScalerConfig,
        job_source: Optional[JobSource] = None,
        remote: Optional[RemoteExecutor] = None,
        provisioner: Optional[CloudProvisioner] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        configure_runtime_logging(config.log_level)
        demote_ray_logging()
        self.config = config
        self.scaler_config = scaler_config

        self.tracker = FleetStateTracker(
            scaler_config.build_machines(),
            name_prefix=scaler_config.github.runners.name_prefix,
            max_create_attempts=scaler_config.executor.max_create_attempts,
        )
        self._store = FleetStore(config.state_path) if config.state_path else None
        self._load_state()

        if job_source is None:
            from ghscaler.integrations.github import GithubJobSource

            job_source = GithubJobSource(scaler_config.github)
        if remote is None:
            from ghscaler.integrations.ssh import SshRemoteExecutor

            remote = SshRemoteExecutor.from_config(scaler_config)

        self.executor = ActionExecutor.from_config(
            self.tracker,
            remote,
            provisioner,
            scaler_config.executor,
            sleep=sleep or time.sleep,
        )
        self.loop = ReconciliationLoop(
            job_source,
            self.tracker,
            self.executor,
            bounds=scaler_config.global_bounds(),
            policy=PlacementPolicy.from_config(scaler_config),
            interval=scaler_config.scaling.interval,
            on_cycle=self._after_cycle,
        )

        # Ray metrics are created once per actor.
        self.desired_runners_gauge = metrics.Gauge(
            name="ghscaler_desired_runners",
            description="Desired global runner count of the last cycle",
        )
        self.machine_runners_gauge = metrics.Gauge(
            name="ghscaler_machine_runners",
            description="Runners counted toward each machine's target",
            tag_keys=("machine",),
        )
        self.cycle_latency_gauge = metrics.Gauge(
            name="ghscaler_cycle_latency_ms",
            description="Reconciliation cycle latency (ms)",
        )
        self.failed_actions_counter = metrics.Counter(
            name="ghscaler_failed_actions",
            description="Actions that failed after all retries",
        )

        logger.info(
            "AutoscalerActor[%s] initialised with %d machine(s)",
            config.name,
            len(scaler_config.machines),
        )

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> bool:
        self.loop.start()
        return True

    def stop(self) -> bool:
        self.loop.stop(timeout=self.config.stop_timeout)
        self.executor.shutdown()
        self._save_state()
        return True

    def reconcile(self) -> Optional[Dict[str, Any]]:
        """Run one cycle now; ``None`` when it was coalesced into a running one."""
        report = self.loop.run_once()
        return report.to_dict() if report is not None else None

    def trigger(self) -> bool:
        self.loop.trigger()
        return True

    # ------------------------------------------------------------------
    # Introspection and operator controls

    def status(self) -> Dict[str, Any]:
        last = self.loop.last_report
        return {
            "name": self.config.name,
            "state": self.loop.state.value,
            "running": self.loop.running,
            "pending": self.loop.pending,
            "cycles": self.loop.cycles,
            "fatal_error": str(self.loop.fatal_error) if self.loop.fatal_error else None,
            "last_report": last.to_dict() if last is not None else None,
        }

    def snapshot_state(self) -> Dict[str, Any]:
        return self.tracker.snapshot().to_dict()

    def drain_machine(self, machine_id: str) -> bool:
        drained = self.tracker.drain_machine(machine_id)
        if drained:
            self._save_state()
            self.loop.trigger()
        return drained

    def reset_runner(self, runner_id: str) -> bool:
        reset = self.tracker.reset_runner(runner_id)
        if reset:
            self._save_state()
        return reset

    def recent_errors(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [error.to_dict() for error in self.tracker.recent_errors(limit)]

    # ------------------------------------------------------------------
    # Cycle hooks

    def _after_cycle(self, report: CycleReport) -> None:
        self._save_state()
        self.cycle_latency_gauge.set((report.finished_at - report.started_at) * 1000)
        if report.desired is not None:
            self.desired_runners_gauge.set(report.desired)
        for machine_id, count in self.tracker.snapshot().runner_counts().items():
            self.machine_runners_gauge.set(count, tags={"machine": machine_id})
        if report.execution.failed:
            self.failed_actions_counter.inc(len(report.execution.failed))

    # ------------------------------------------------------------------
    # Persistence helpers

    def _save_state(self) -> None:
        if self._store is None:
            return
        self._store.save(self.tracker.snapshot())

    def _load_state(self) -> None:
        if self._store is None:
            return
        state = self._store.load()
        if state is not None:
            self.tracker.restore(state)
