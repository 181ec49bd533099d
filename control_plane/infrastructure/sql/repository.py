#control_plane\infrastructure\sql\repository.py

"""SQL repository implementations using SQLAlchemy."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from control_plane.core.errors import (
    AlreadyExistsError,
    ConcurrencyError,
    InvalidStateTransition,
    NotFoundError,
    PersistenceError,
)
from control_plane.core.models import (
    Alert,
    AlertRule,
    Credential,
    DeploymentRun,
    DeploymentTarget,
    MetricSample,
    TERMINAL_RUN_STATES,
)
from control_plane.core.repository import (
    AlertRepository,
    AlertRuleRepository,
    CredentialRepository,
    MetricRepository,
    RunRepository,
    TargetRepository,
)
from control_plane.core.validation import validate_alert_rule, validate_new_run, validate_target
from control_plane.infrastructure.sql.database import SessionLocal
from control_plane.infrastructure.sql.models import (
    AlertORM,
    AlertRuleORM,
    CredentialORM,
    DeploymentRunORM,
    DeploymentTargetORM,
    MetricSampleORM,
)

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def target_to_domain(orm: DeploymentTargetORM) -> DeploymentTarget:
    return DeploymentTarget(
        target_id=orm.id,
        name=orm.name,
        git_provider=orm.git_provider,
        repository_url=orm.repository_url,
        branch=orm.branch,
        local_path=orm.local_path,
        deploy_user=orm.deploy_user,
        secret_token=orm.secret_token,
        is_active=orm.is_active,
        pre_deploy_script=orm.pre_deploy_script,
        post_deploy_script=orm.post_deploy_script,
        last_deployed_at=orm.last_deployed_at,
        created_at=orm.created_at,
    )


def credential_to_domain(orm: CredentialORM) -> Credential:
    return Credential(
        credential_id=orm.id,
        target_id=orm.target_id,
        key_type=orm.key_type,
        public_key=orm.public_key,
        private_key=orm.private_key,
        fingerprint=orm.fingerprint,
        created_at=orm.created_at,
    )


def run_to_domain(orm: DeploymentRunORM) -> DeploymentRun:
    return DeploymentRun(
        run_id=orm.id,
        target_id=orm.target_id,
        status=orm.status,
        commit_hash=orm.commit_hash,
        commit_message=orm.commit_message,
        author=orm.author,
        output=orm.output,
        error_message=orm.error_message,
        started_at=orm.started_at,
        completed_at=orm.completed_at,
        created_at=orm.created_at,
    )


def rule_to_domain(orm: AlertRuleORM) -> AlertRule:
    return AlertRule(
        rule_id=orm.id,
        name=orm.name,
        metric=orm.metric,
        condition=orm.condition,
        threshold=orm.threshold,
        service_name=orm.service_name,
        duration=orm.duration,
        channel=orm.channel,
        email=orm.email,
        slack_webhook=orm.slack_webhook,
        is_active=orm.is_active,
        last_triggered_at=orm.last_triggered_at,
        created_at=orm.created_at,
    )


def alert_to_domain(orm: AlertORM) -> Alert:
    return Alert(
        alert_id=orm.id,
        rule_id=orm.rule_id,
        title=orm.title,
        message=orm.message,
        severity=orm.severity,
        is_resolved=orm.is_resolved,
        resolved_at=orm.resolved_at,
        notification_sent=orm.notification_sent,
        created_at=orm.created_at,
    )


METRIC_FIELDS = (
    "cpu_usage",
    "memory_usage",
    "disk_usage",
    "memory_total",
    "memory_used",
    "disk_total",
    "disk_used",
    "disk_read_bytes",
    "disk_write_bytes",
    "network_rx_bytes",
    "network_tx_bytes",
    "db_connections",
    "db_processes",
)


def sample_to_domain(orm: MetricSampleORM) -> MetricSample:
    values = {name: getattr(orm, name) for name in METRIC_FIELDS}
    return MetricSample(sample_id=orm.id, recorded_at=orm.recorded_at, **values)


# ============================================
# Base
# ============================================

class _SqlRepository:
    """Shared session handling with dependency injection."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Initialize repository with optional session factory.

        Args:
            session_factory: SQLAlchemy session factory. If None, uses default production factory.
        """
        self._session_factory = session_factory or SessionLocal

    def _get_session(self) -> Session:
        """Get new session from the injected factory."""
        return self._session_factory()


# ============================================
# Targets
# ============================================

class SqlTargetRepository(_SqlRepository, TargetRepository):

    def create(self, target: DeploymentTarget) -> DeploymentTarget:
        validate_target(target)

        session = self._get_session()
        try:
            orm = DeploymentTargetORM(
                name=target.name,
                git_provider=target.git_provider,
                repository_url=target.repository_url,
                branch=target.branch,
                local_path=target.local_path,
                deploy_user=target.deploy_user,
                secret_token=target.secret_token,
                is_active=target.is_active,
                pre_deploy_script=target.pre_deploy_script,
                post_deploy_script=target.post_deploy_script,
                last_deployed_at=target.last_deployed_at,
                created_at=target.created_at,
            )
            session.add(orm)
            session.commit()
            target.target_id = orm.id
            logger.debug(f"[sql] create target {orm.id} -> done")
            return target
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create target: {e}") from e
        finally:
            session.close()

    def get(self, target_id: int) -> Optional[DeploymentTarget]:
        session = self._get_session()
        try:
            orm = session.get(DeploymentTargetORM, target_id)
            return target_to_domain(orm) if orm else None
        finally:
            session.close()

    def update(self, target: DeploymentTarget) -> None:
        validate_target(target)

        session = self._get_session()
        try:
            orm = session.get(DeploymentTargetORM, target.target_id)
            if orm is None:
                raise NotFoundError(f"Target {target.target_id} not found")

            orm.name = target.name
            orm.git_provider = target.git_provider
            orm.repository_url = target.repository_url
            orm.branch = target.branch
            orm.local_path = target.local_path
            orm.deploy_user = target.deploy_user
            orm.secret_token = target.secret_token
            orm.is_active = target.is_active
            orm.pre_deploy_script = target.pre_deploy_script
            orm.post_deploy_script = target.post_deploy_script

            session.commit()
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update target: {e}") from e
        finally:
            session.close()

    def touch_last_deployed(self, target_id: int, deployed_at: datetime) -> None:
        session = self._get_session()
        try:
            orm = session.get(DeploymentTargetORM, target_id)
            if orm is None:
                raise NotFoundError(f"Target {target_id} not found")
            orm.last_deployed_at = deployed_at
            session.commit()
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update target: {e}") from e
        finally:
            session.close()


# ============================================
# Credentials
# ============================================

class SqlCredentialRepository(_SqlRepository, CredentialRepository):

    def get_for_target(self, target_id: int) -> Optional[Credential]:
        session = self._get_session()
        try:
            orm = session.query(CredentialORM).filter(
                CredentialORM.target_id == target_id
            ).first()
            return credential_to_domain(orm) if orm else None
        finally:
            session.close()

    def replace_for_target(self, credential: Credential) -> Credential:
        """Delete-then-insert inside one transaction."""
        session = self._get_session()
        try:
            session.query(CredentialORM).filter(
                CredentialORM.target_id == credential.target_id
            ).delete(synchronize_session=False)
            session.flush()

            orm = CredentialORM(
                target_id=credential.target_id,
                key_type=credential.key_type,
                public_key=credential.public_key,
                private_key=credential.private_key,
                fingerprint=credential.fingerprint,
                created_at=credential.created_at,
            )
            session.add(orm)
            session.commit()

            credential.credential_id = orm.id
            logger.info(f"[sql] replaced credential for target {credential.target_id} -> {orm.id}")
            return credential
        except IntegrityError as e:
            session.rollback()
            raise ConcurrencyError(
                f"Credential for target {credential.target_id} was replaced concurrently"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to replace credential: {e}") from e
        finally:
            session.close()

    def delete_for_target(self, target_id: int) -> bool:
        session = self._get_session()
        try:
            deleted = session.query(CredentialORM).filter(
                CredentialORM.target_id == target_id
            ).delete(synchronize_session=False)
            session.commit()
            return deleted > 0
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to delete credential: {e}") from e
        finally:
            session.close()


# ============================================
# Runs
# ============================================

class SqlRunRepository(_SqlRepository, RunRepository):

    def create(self, run: DeploymentRun) -> DeploymentRun:
        validate_new_run(run)

        session = self._get_session()
        try:
            orm = DeploymentRunORM(
                target_id=run.target_id,
                status=run.status,
                commit_hash=run.commit_hash,
                commit_message=run.commit_message,
                author=run.author,
                started_at=run.started_at,
                created_at=run.created_at,
            )
            session.add(orm)
            session.commit()
            run.run_id = orm.id
            return run
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Run for target {run.target_id} could not be created") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create run: {e}") from e
        finally:
            session.close()

    def get(self, run_id: int) -> Optional[DeploymentRun]:
        session = self._get_session()
        try:
            orm = session.get(DeploymentRunORM, run_id)
            return run_to_domain(orm) if orm else None
        finally:
            session.close()

    def update(self, run: DeploymentRun) -> None:
        """Persist run changes; terminal rows are immutable."""
        session = self._get_session()
        try:
            current = session.query(DeploymentRunORM).filter(
                DeploymentRunORM.id == run.run_id
            ).with_for_update().first()

            if current is None:
                raise NotFoundError(f"Run {run.run_id} not found")

            if current.status in TERMINAL_RUN_STATES:
                raise InvalidStateTransition(
                    f"Run {run.run_id} is already {current.status.value}"
                )

            current.status = run.status
            current.output = run.output
            current.error_message = run.error_message
            current.completed_at = run.completed_at

            session.commit()
        except (NotFoundError, InvalidStateTransition):
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update run: {e}") from e
        finally:
            session.close()

    def list_for_target(self, target_id: int, limit: int = 20) -> List[DeploymentRun]:
        session = self._get_session()
        try:
            results = session.query(DeploymentRunORM).filter(
                DeploymentRunORM.target_id == target_id
            ).order_by(
                DeploymentRunORM.created_at.desc(),
                DeploymentRunORM.id.desc(),
            ).limit(limit).all()
            return [run_to_domain(orm) for orm in results]
        finally:
            session.close()


# ============================================
# Alert rules
# ============================================

class SqlAlertRuleRepository(_SqlRepository, AlertRuleRepository):

    def create(self, rule: AlertRule) -> AlertRule:
        validate_alert_rule(rule)

        session = self._get_session()
        try:
            orm = AlertRuleORM(
                name=rule.name,
                metric=rule.metric,
                condition=rule.condition,
                threshold=rule.threshold,
                service_name=rule.service_name,
                duration=rule.duration,
                channel=rule.channel,
                email=rule.email,
                slack_webhook=rule.slack_webhook,
                is_active=rule.is_active,
                last_triggered_at=rule.last_triggered_at,
                created_at=rule.created_at,
            )
            session.add(orm)
            session.commit()
            rule.rule_id = orm.id
            return rule
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create alert rule: {e}") from e
        finally:
            session.close()

    def get(self, rule_id: int) -> Optional[AlertRule]:
        session = self._get_session()
        try:
            orm = session.get(AlertRuleORM, rule_id)
            return rule_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_active(self) -> List[AlertRule]:
        session = self._get_session()
        try:
            results = session.query(AlertRuleORM).filter(
                AlertRuleORM.is_active.is_(True)
            ).order_by(AlertRuleORM.id.asc()).all()
            return [rule_to_domain(orm) for orm in results]
        finally:
            session.close()

    def mark_triggered(self, rule_id: int, triggered_at: datetime) -> None:
        session = self._get_session()
        try:
            orm = session.get(AlertRuleORM, rule_id)
            if orm is None:
                raise NotFoundError(f"Alert rule {rule_id} not found")
            orm.last_triggered_at = triggered_at
            session.commit()
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update alert rule: {e}") from e
        finally:
            session.close()


# ============================================
# Alerts
# ============================================

class SqlAlertRepository(_SqlRepository, AlertRepository):

    def create(self, alert: Alert) -> Alert:
        session = self._get_session()
        try:
            orm = AlertORM(
                rule_id=alert.rule_id,
                title=alert.title,
                message=alert.message,
                severity=alert.severity,
                is_resolved=alert.is_resolved,
                notification_sent=alert.notification_sent,
                created_at=alert.created_at,
            )
            session.add(orm)
            session.commit()
            alert.alert_id = orm.id
            return alert
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create alert: {e}") from e
        finally:
            session.close()

    def list_for_rule(self, rule_id: int) -> List[Alert]:
        session = self._get_session()
        try:
            results = session.query(AlertORM).filter(
                AlertORM.rule_id == rule_id
            ).order_by(AlertORM.created_at.asc(), AlertORM.id.asc()).all()
            return [alert_to_domain(orm) for orm in results]
        finally:
            session.close()

    def find_recent_unresolved(self, rule_id: int, since: datetime) -> Optional[Alert]:
        session = self._get_session()
        try:
            orm = session.query(AlertORM).filter(
                and_(
                    AlertORM.rule_id == rule_id,
                    AlertORM.is_resolved.is_(False),
                    AlertORM.created_at >= since,
                )
            ).order_by(AlertORM.created_at.desc()).first()
            return alert_to_domain(orm) if orm else None
        finally:
            session.close()

    def mark_notification_sent(self, alert_id: int) -> None:
        self._set(alert_id, notification_sent=True)

    def resolve(self, alert_id: int, resolved_at: datetime) -> None:
        self._set(alert_id, is_resolved=True, resolved_at=resolved_at)

    def _set(self, alert_id: int, **values) -> None:
        session = self._get_session()
        try:
            orm = session.get(AlertORM, alert_id)
            if orm is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            for key, value in values.items():
                setattr(orm, key, value)
            session.commit()
        except NotFoundError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update alert: {e}") from e
        finally:
            session.close()


# ============================================
# Metrics
# ============================================

class SqlMetricRepository(_SqlRepository, MetricRepository):

    def add(self, sample: MetricSample) -> MetricSample:
        session = self._get_session()
        try:
            values = {name: getattr(sample, name) for name in METRIC_FIELDS}
            orm = MetricSampleORM(recorded_at=sample.recorded_at, **values)
            session.add(orm)
            session.commit()
            sample.sample_id = orm.id
            return sample
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to record metrics: {e}") from e
        finally:
            session.close()

    def latest(self) -> Optional[MetricSample]:
        session = self._get_session()
        try:
            orm = session.query(MetricSampleORM).order_by(
                MetricSampleORM.recorded_at.desc(),
                MetricSampleORM.id.desc(),
            ).first()
            return sample_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_since(self, since: datetime) -> List[MetricSample]:
        session = self._get_session()
        try:
            results = session.query(MetricSampleORM).filter(
                MetricSampleORM.recorded_at >= since
            ).order_by(MetricSampleORM.recorded_at.asc()).all()
            return [sample_to_domain(orm) for orm in results]
        finally:
            session.close()

    def delete_before(self, cutoff: datetime) -> int:
        session = self._get_session()
        try:
            deleted = session.query(MetricSampleORM).filter(
                MetricSampleORM.recorded_at < cutoff
            ).delete(synchronize_session=False)
            session.commit()
            return deleted
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to prune metrics: {e}") from e
        finally:
            session.close()
