"""
Reconciliation loop.

Drives one observe → plan → execute cycle at a time. Cycles are started by a
fixed-interval timer, by :meth:`ReconciliationLoop.trigger` or by a direct call
to :meth:`ReconciliationLoop.run_once`. A request that arrives while a cycle is
running is coalesced into a single follow-up cycle instead of starting a second
concurrent one.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ghscaler.core.entities import GlobalBounds, Plan, QueueSnapshot
from ghscaler.core.errors import ConfigurationError, InvariantViolation, TransientError
from ghscaler.core.execution import ActionExecutor, ExecutionReport
from ghscaler.core.fleet import FleetStateTracker
from ghscaler.core.protocols import JobSource
from ghscaler.core.scaling import PlacementPolicy, plan_demand, plan_placement
from ghscaler.core.utils import format_duration

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    RECONCILING = "reconciling"


@dataclass
class CycleReport:
    """Summary of one reconciliation cycle."""

    cycle: int
    started_at: float
    finished_at: float = 0.0
    queued: int = 0
    running: int = 0
    stale_snapshot: bool = False
    desired: Optional[int] = None
    plan: Optional[Plan] = None
    execution: ExecutionReport = field(default_factory=ExecutionReport)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "cycle": self.cycle,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "queued": self.queued,
            "running": self.running,
            "stale_snapshot": self.stale_snapshot,
            "desired": self.desired,
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "execution": self.execution.to_dict(),
            "error": self.error,
        }


class ReconciliationLoop:
    """Single-flight driver around the planners and the executor."""

    def __init__(
        self,
        job_source: JobSource,
        tracker: FleetStateTracker,
        executor: ActionExecutor,
        *,
        bounds: GlobalBounds = GlobalBounds(),
        policy: Optional[PlacementPolicy] = None,
        interval: float = 30.0,
        clock: Callable[[], float] = time.time,
        on_cycle: Optional[Callable[[CycleReport], None]] = None,
    ):
        self.job_source = job_source
        self.tracker = tracker
        self.executor = executor
        self.bounds = bounds
        self.policy = policy or PlacementPolicy()
        self.interval = interval
        self._clock = clock
        self._on_cycle = on_cycle

        self._guard = threading.Lock()
        self._state = LoopState.IDLE
        self._pending = False
        self._cycles = 0
        self._last_snapshot: Optional[QueueSnapshot] = None
        self.last_report: Optional[CycleReport] = None
        self.fatal_error: Optional[BaseException] = None

        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # State

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Triggers

    def trigger(self) -> None:
        """Ask the background thread for a cycle as soon as possible."""
        self._wake.set()

    def run_once(self) -> Optional[CycleReport]:
        """
        Run a cycle now, plus one coalesced follow-up if requested meanwhile.

        Returns ``None`` when a cycle is already in progress; the request is
        then recorded as the pending re-trigger.

        Raises:
            InvariantViolation: the fleet state is inconsistent; the loop stops.
        """
        with self._guard:
            if self._state == LoopState.RECONCILING:
                self._pending = True
                logger.debug("Cycle in progress, re-trigger queued")
                return None
            self._state = LoopState.RECONCILING

        report: Optional[CycleReport] = None
        try:
            while True:
                report = self._cycle()
                with self._guard:
                    if not self._pending:
                        self._state = LoopState.IDLE
                        break
                    self._pending = False
                logger.debug("Running coalesced follow-up cycle")
        except BaseException:
            with self._guard:
                self._state = LoopState.IDLE
                self._pending = False
            raise
        return report

    # ------------------------------------------------------------------
    # Background thread

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._wake.set()  # first cycle right away
        self._thread = threading.Thread(target=self._run, name="ghscaler-reconciler", daemon=True)
        self._thread.start()
        logger.info("Reconciliation loop started (interval=%s)", format_duration(self.interval))

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopped.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Reconciliation loop stopped")

    def _run(self) -> None:
        while not self._stopped.is_set():
            self._wake.wait(self.interval)
            self._wake.clear()
            if self._stopped.is_set():
                break
            try:
                self.run_once()
            except InvariantViolation as exc:
                self.fatal_error = exc
                logger.critical("Fleet state is inconsistent, stopping the reconciliation loop: %s", exc)
                self._stopped.set()
            except Exception:  # noqa: BLE001 - keep the loop alive for the next cycle
                logger.exception("Reconciliation cycle failed unexpectedly")

    # ------------------------------------------------------------------
    # One cycle

    def _cycle(self) -> CycleReport:
        self._cycles += 1
        report = CycleReport(cycle=self._cycles, started_at=self._clock())

        self.executor.probe_all()

        snapshot = self._observe(report)
        report.queued = snapshot.queued
        report.running = snapshot.running
        if not report.stale_snapshot:
            self.tracker.record_runner_activity(snapshot.busy_runners)

        fleet = self.tracker.snapshot()
        try:
            report.desired = plan_demand(snapshot, self.bounds)
            report.plan = plan_placement(report.desired, fleet, self.policy, now=self._clock())
        except ConfigurationError as exc:
            report.error = str(exc)
            logger.error("Refusing to plan against invalid bounds: %s", exc)
        else:
            self.tracker.record_targets(report.plan.targets)
            report.execution = self.executor.execute(report.plan)

        report.finished_at = self._clock()
        self.last_report = report
        logger.info(
            "Cycle %d done: queued=%d running=%d desired=%s actions=%d failed=%d",
            report.cycle,
            report.queued,
            report.running,
            report.desired,
            len(report.plan) if report.plan is not None else 0,
            len(report.execution.failed),
        )
        if self._on_cycle is not None:
            self._on_cycle(report)
        return report

    def _observe(self, report: CycleReport) -> QueueSnapshot:
        try:
            snapshot = self.job_source.get_queue_snapshot()
        except TransientError as exc:
            report.stale_snapshot = True
            logger.warning("Queue snapshot unavailable, keeping the previous one: %s", exc)
            if self._last_snapshot is None:
                return QueueSnapshot.empty(self._clock())
            return self._last_snapshot
        self._last_snapshot = snapshot
        return snapshot
