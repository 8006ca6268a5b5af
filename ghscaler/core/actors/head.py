"""
gh-actions-scaler head-node helper.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import ray

from .autoscaler import AutoscalerActor
from .config import ActorConfig
from ghscaler.core.config import ScalerConfig
from ghscaler.core.protocols import CloudProvisioner, JobSource, RemoteExecutor

logger = logging.getLogger(__name__)


class AutoscalerHead:
    """Convenience wrapper to create, drive and stop the autoscaler actor."""

    def __init__(
        self,
        config: ScalerConfig,
        name: str = "gh-actions-scaler",
        *,
        job_source: Optional[JobSource] = None,
        remote: Optional[RemoteExecutor] = None,
        provisioner: Optional[CloudProvisioner] = None,
        sleep=None,
    ):
        self.config = config
        self.name = name
        self._collaborators = (job_source, remote, provisioner, sleep)
        self._actor: Optional[ray.actor.ActorHandle] = None

    def _ensure_actor(self) -> ray.actor.ActorHandle:
        if self._actor is None:
            actor_config = ActorConfig(
                name=self.name,
                log_level=self.config.log_level_value(),
                state_path=self.config.state_path,
            )
            self._actor = AutoscalerActor.remote(actor_config, self.config, *self._collaborators)
            logger.debug("Autoscaler actor created (%s)", self.name)
        return self._actor

    def start(self) -> bool:
        actor = self._ensure_actor()
        ray.get(actor.start.remote())
        logger.info("Autoscaler started (%s)", self.name)
        return True

    def stop(self) -> bool:
        if self._actor:
            ray.get(self._actor.stop.remote())
            ray.kill(self._actor, no_restart=True)
            self._actor = None
            logger.info("Autoscaler stopped (%s)", self.name)
        return True

    def reconcile_once(self) -> Optional[Dict[str, Any]]:
        return ray.get(self._ensure_actor().reconcile.remote())

    def trigger(self) -> bool:
        return ray.get(self._ensure_actor().trigger.remote())

    def status(self) -> Dict[str, Any]:
        return ray.get(self._ensure_actor().status.remote())

    def snapshot_state(self) -> Dict[str, Any]:
        return ray.get(self._ensure_actor().snapshot_state.remote())

    def drain_machine(self, machine_id: str) -> bool:
        return ray.get(self._ensure_actor().drain_machine.remote(machine_id))

    def reset_runner(self, runner_id: str) -> bool:
        return ray.get(self._ensure_actor().reset_runner.remote(runner_id))

    def recent_errors(self, limit: int = 20) -> List[Dict[str, Any]]:
        return ray.get(self._ensure_actor().recent_errors.remote(limit))
