#control_plane\core\validation.py
import os

from control_plane.core.models import (
    AlertMetric,
    AlertRule,
    DeploymentRun,
    DeploymentTarget,
    NotificationChannel,
    RunStatus,
)
from control_plane.core.errors import ValidationError


SUPPORTED_CONDITIONS = (">", "<", "==", "!=")


def validate_target(target: DeploymentTarget) -> None:
    # -------------------------
    # Repository
    # -------------------------
    if not target.name:
        raise ValidationError("name is required")

    if not target.repository_url:
        raise ValidationError("repository_url is required")

    if not target.branch or target.branch.startswith("-"):
        raise ValidationError("branch must be a valid branch name")

    # -------------------------
    # Filesystem
    # -------------------------
    if not target.local_path:
        raise ValidationError("local_path is required")

    if not os.path.isabs(target.local_path):
        raise ValidationError("local_path must be an absolute path")

    # -------------------------
    # Intake
    # -------------------------
    if not target.secret_token:
        raise ValidationError("secret_token is required")


def validate_new_run(run: DeploymentRun) -> None:
    if run.target_id is None:
        raise ValidationError("target_id is required")

    if run.status != RunStatus.PROCESSING:
        raise ValidationError("new run must be persisted in processing state")

    if run.started_at is None:
        raise ValidationError("started_at must be set when the run is created")

    if run.completed_at or run.error_message:
        raise ValidationError("completion fields must not be set at creation")


def validate_alert_rule(rule: AlertRule) -> None:
    if not rule.name:
        raise ValidationError("name is required")

    if not isinstance(rule.metric, AlertMetric):
        raise ValidationError(f"unsupported metric: {rule.metric}")

    if rule.condition not in SUPPORTED_CONDITIONS:
        raise ValidationError(f"unsupported condition: {rule.condition}")

    if rule.duration < 1:
        raise ValidationError("duration must be at least 1 minute")

    if rule.metric == AlertMetric.SERVICE and not rule.service_name:
        raise ValidationError("service rules require service_name")

    if not isinstance(rule.channel, NotificationChannel):
        raise ValidationError(f"unsupported channel: {rule.channel}")

    if rule.channel in (NotificationChannel.EMAIL, NotificationChannel.BOTH) and not rule.email:
        raise ValidationError("email channel requires an email address")

    if rule.channel in (NotificationChannel.SLACK, NotificationChannel.BOTH) and not rule.slack_webhook:
        raise ValidationError("slack channel requires a webhook url")
