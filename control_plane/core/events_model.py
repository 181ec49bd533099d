"""Event models for the control plane."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from control_plane.core.clock import utcnow


@dataclass
class ControlPlaneEvent:
    """Base lifecycle event."""

    event_type: str
    subject_id: Optional[Union[int, str]]
    timestamp: datetime
    metadata: Dict[str, Any]

    @staticmethod
    def deployment_started(run, target):
        """Deployment run created in processing state."""
        return ControlPlaneEvent(
            event_type="deployment.started",
            subject_id=run.run_id,
            timestamp=utcnow(),
            metadata={
                "target_id": target.target_id,
                "target": target.name,
                "branch": target.branch,
                "commit_hash": run.commit_hash,
            }
        )

    @staticmethod
    def deployment_completed(run):
        return ControlPlaneEvent(
            event_type="deployment.completed",
            subject_id=run.run_id,
            timestamp=utcnow(),
            metadata={
                "target_id": run.target_id,
                "duration_seconds": run.duration_seconds,
            }
        )

    @staticmethod
    def deployment_failed(run):
        return ControlPlaneEvent(
            event_type="deployment.failed",
            subject_id=run.run_id,
            timestamp=utcnow(),
            metadata={
                "target_id": run.target_id,
                "error_message": run.error_message,
            }
        )

    @staticmethod
    def alert_triggered(alert, rule):
        return ControlPlaneEvent(
            event_type="alert.triggered",
            subject_id=alert.alert_id,
            timestamp=utcnow(),
            metadata={
                "rule_id": rule.rule_id,
                "severity": alert.severity.value,
                "message": alert.message,
            }
        )

    @staticmethod
    def job_failed(job, reason: str):
        """Job moved to the failed store."""
        return ControlPlaneEvent(
            event_type="job.failed",
            subject_id=job.id,
            timestamp=utcnow(),
            metadata={
                "queue": job.queue,
                "job": job.display_name,
                "attempts": job.attempts,
                "reason": reason,
            }
        )
