# control_plane/core/repository.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from control_plane.core.models import (
    Alert,
    AlertRule,
    Credential,
    DeploymentRun,
    DeploymentTarget,
    MetricSample,
)


class TargetRepository(ABC):
    """
    Persistence contract for deployment targets.
    """

    @abstractmethod
    def create(self, target: DeploymentTarget) -> DeploymentTarget:
        raise NotImplementedError

    @abstractmethod
    def get(self, target_id: int) -> Optional[DeploymentTarget]:
        """
        Fetch target by ID.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def update(self, target: DeploymentTarget) -> None:
        raise NotImplementedError

    @abstractmethod
    def touch_last_deployed(self, target_id: int, deployed_at: datetime) -> None:
        raise NotImplementedError


class CredentialRepository(ABC):
    """
    Persistence contract for deploy keys (one per target).
    """

    @abstractmethod
    def get_for_target(self, target_id: int) -> Optional[Credential]:
        raise NotImplementedError

    @abstractmethod
    def replace_for_target(self, credential: Credential) -> Credential:
        """
        Remove the target's current credential and insert the new one
        in a single transaction.
        """
        raise NotImplementedError

    @abstractmethod
    def delete_for_target(self, target_id: int) -> bool:
        raise NotImplementedError


class RunRepository(ABC):
    """
    Persistence contract for deployment runs.
    """

    @abstractmethod
    def create(self, run: DeploymentRun) -> DeploymentRun:
        raise NotImplementedError

    @abstractmethod
    def get(self, run_id: int) -> Optional[DeploymentRun]:
        raise NotImplementedError

    @abstractmethod
    def update(self, run: DeploymentRun) -> None:
        """
        Persist updated run.
        Must refuse to modify a run that is already terminal.
        """
        raise NotImplementedError

    @abstractmethod
    def list_for_target(self, target_id: int, limit: int = 20) -> List[DeploymentRun]:
        raise NotImplementedError


class AlertRuleRepository(ABC):

    @abstractmethod
    def create(self, rule: AlertRule) -> AlertRule:
        raise NotImplementedError

    @abstractmethod
    def get(self, rule_id: int) -> Optional[AlertRule]:
        raise NotImplementedError

    @abstractmethod
    def list_active(self) -> List[AlertRule]:
        raise NotImplementedError

    @abstractmethod
    def mark_triggered(self, rule_id: int, triggered_at: datetime) -> None:
        raise NotImplementedError


class AlertRepository(ABC):

    @abstractmethod
    def create(self, alert: Alert) -> Alert:
        raise NotImplementedError

    @abstractmethod
    def list_for_rule(self, rule_id: int) -> List[Alert]:
        raise NotImplementedError

    @abstractmethod
    def find_recent_unresolved(self, rule_id: int, since: datetime) -> Optional[Alert]:
        """
        Unresolved alert for the rule created at or after `since`.
        Used for deduplication.
        """
        raise NotImplementedError

    @abstractmethod
    def mark_notification_sent(self, alert_id: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def resolve(self, alert_id: int, resolved_at: datetime) -> None:
        raise NotImplementedError


class MetricRepository(ABC):

    @abstractmethod
    def add(self, sample: MetricSample) -> MetricSample:
        raise NotImplementedError

    @abstractmethod
    def latest(self) -> Optional[MetricSample]:
        raise NotImplementedError

    @abstractmethod
    def list_since(self, since: datetime) -> List[MetricSample]:
        raise NotImplementedError

    @abstractmethod
    def delete_before(self, cutoff: datetime) -> int:
        raise NotImplementedError
