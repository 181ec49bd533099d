# control_plane/deployment/service.py
"""Deployment service - trigger side (webhook/manual) and worker-side handler."""

import logging
from typing import Any, Dict, Optional, Union

from control_plane.core.errors import NotFoundError, ValidationError
from control_plane.core.models import Credential, DeploymentRun, DeploymentTarget
from control_plane.deployment.engine import DeploymentEngine
from control_plane.deployment.payloads import parse_payload
from control_plane.jobqueue.base import JobQueue
from control_plane.jobqueue.jobs import PROCESS_DEPLOYMENT

logger = logging.getLogger(__name__)


class DeploymentService:

    def __init__(
        self,
        *,
        targets,
        queue: JobQueue,
        engine: DeploymentEngine,
        vault,
        queue_name: str = "deployments",
    ):
        self._targets = targets
        self._queue = queue
        self._engine = engine
        self._vault = vault
        self._queue_name = queue_name

    # -------------------------
    # TRIGGER
    # -------------------------

    def trigger(self, target: DeploymentTarget, payload: Optional[Dict[str, Any]] = None) -> Union[int, str]:
        """Enqueue a deployment; returns the queued job id without waiting for it."""
        if target.target_id is None:
            raise ValidationError("Target must be persisted before it can be deployed")

        commit = parse_payload(target.git_provider, payload)
        job_id = self._queue.enqueue(
            self._queue_name,
            PROCESS_DEPLOYMENT,
            {"target_id": target.target_id, "payload": commit},
        )

        logger.info(
            f"[deploy] Queued deployment of '{target.name}' "
            f"({(commit['commit_hash'] or 'HEAD')[:7]}) as job {job_id}"
        )
        return job_id

    # -------------------------
    # WORKER SIDE
    # -------------------------

    def handle_deploy_job(self, data: Dict[str, Any]) -> DeploymentRun:
        target_id = data.get("target_id")
        target = self._targets.get(target_id) if target_id is not None else None
        if target is None:
            raise NotFoundError(f"Target {target_id} not found")

        return self._engine.deploy(target, data.get("payload") or {})

    # -------------------------
    # CREDENTIALS
    # -------------------------

    def regenerate_credential(self, target: DeploymentTarget) -> Credential:
        """Issue a fresh deploy key; the previous one stops working."""
        return self._vault.issue(target)
