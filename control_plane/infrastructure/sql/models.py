#control_plane\infrastructure\sql\models.py
"""SQLAlchemy ORM models for database tables."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    BigInteger,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from control_plane.core.models import (
    AlertMetric,
    GitProvider,
    KeyType,
    NotificationChannel,
    RunStatus,
    Severity,
)
from control_plane.infrastructure.sql.database import Base


# ============================================
# DEPLOYMENT TARGETS
# ============================================

class DeploymentTargetORM(Base):
    """Deployment target table (configured via the dashboard)."""

    __tablename__ = "deployment_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    git_provider = Column(SQLEnum(GitProvider, name="git_provider"), nullable=False, default=GitProvider.GITHUB)

    repository_url = Column(String(500), nullable=False)
    branch = Column(String(255), nullable=False, default="main")
    local_path = Column(String(500), nullable=False)
    deploy_user = Column(String(100), nullable=True)

    secret_token = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    pre_deploy_script = Column(Text, nullable=True)
    post_deploy_script = Column(Text, nullable=True)

    last_deployed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    credential = relationship("CredentialORM", back_populates="target", uselist=False)

    def __repr__(self) -> str:
        return f"<DeploymentTargetORM(id={self.id}, name={self.name}, branch={self.branch})>"


# ============================================
# CREDENTIALS
# ============================================

class CredentialORM(Base):
    """
    Deploy key table.

    The unique constraint on target_id keeps the 1:1 ownership even when
    two replacements race.
    """

    __tablename__ = "credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_id = Column(
        Integer,
        ForeignKey("deployment_targets.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    key_type = Column(SQLEnum(KeyType, name="key_type"), nullable=False, default=KeyType.ED25519)
    public_key = Column(Text, nullable=False)
    private_key = Column(Text, nullable=False)
    fingerprint = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    target = relationship("DeploymentTargetORM", back_populates="credential")

    def __repr__(self) -> str:
        return f"<CredentialORM(id={self.id}, target_id={self.target_id}, fingerprint={self.fingerprint})>"


# ============================================
# DEPLOYMENT RUNS
# ============================================

class DeploymentRunORM(Base):
    """Deployment run table (audit trail, never deleted programmatically)."""

    __tablename__ = "deployment_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_id = Column(Integer, ForeignKey("deployment_targets.id"), nullable=False, index=True)

    status = Column(SQLEnum(RunStatus, name="run_status"), nullable=False, default=RunStatus.PENDING, index=True)

    commit_hash = Column(String(64), nullable=True)
    commit_message = Column(Text, nullable=True)
    author = Column(String(255), nullable=True)

    output = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_deployment_runs_target_created', 'target_id', 'created_at'),
    )


# ============================================
# DEPLOYMENT LOCKS
# ============================================

class DeploymentLockORM(Base):
    """Per-target lease held while a deployment reconciles the working copy."""

    __tablename__ = "deployment_locks"

    target_id = Column(Integer, primary_key=True)
    owner = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


# ============================================
# ALERTING
# ============================================

class AlertRuleORM(Base):
    """Alert rule table."""

    __tablename__ = "alert_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    metric = Column(SQLEnum(AlertMetric, name="alert_metric"), nullable=False)
    condition = Column(String(5), nullable=False)
    threshold = Column(Float, nullable=False)
    service_name = Column(String(255), nullable=True)
    duration = Column(Integer, nullable=False, default=5)

    channel = Column(SQLEnum(NotificationChannel, name="notification_channel"), nullable=False)
    email = Column(String(255), nullable=True)
    slack_webhook = Column(String(500), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_triggered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class AlertORM(Base):
    """Alert (firing event) table."""

    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(SQLEnum(Severity, name="alert_severity"), nullable=False)

    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        # Deduplication lookup
        Index('ix_alerts_rule_unresolved', 'rule_id', 'is_resolved', 'created_at'),
    )


# ============================================
# METRICS
# ============================================

class MetricSampleORM(Base):
    """System metric samples (append-only, pruned by retention)."""

    __tablename__ = "metric_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)

    cpu_usage = Column(Float, nullable=False, default=0.0)
    memory_usage = Column(Float, nullable=False, default=0.0)
    disk_usage = Column(Float, nullable=False, default=0.0)

    memory_total = Column(BigInteger, nullable=False, default=0)
    memory_used = Column(BigInteger, nullable=False, default=0)
    disk_total = Column(BigInteger, nullable=False, default=0)
    disk_used = Column(BigInteger, nullable=False, default=0)
    disk_read_bytes = Column(BigInteger, nullable=False, default=0)
    disk_write_bytes = Column(BigInteger, nullable=False, default=0)
    network_rx_bytes = Column(BigInteger, nullable=False, default=0)
    network_tx_bytes = Column(BigInteger, nullable=False, default=0)
    db_connections = Column(Integer, nullable=False, default=0)
    db_processes = Column(Integer, nullable=False, default=0)

    recorded_at = Column(DateTime, nullable=False, index=True)


# ============================================
# QUEUE
# ============================================

class JobORM(Base):
    """
    Pending jobs table (database queue backend).

    Indexes:
    - Composite index on (queue, reserved_at, available_at) for leasing
    """

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue = Column(String(255), nullable=False, index=True)
    payload = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)

    reserved_at = Column(DateTime, nullable=True)
    reserved_until = Column(DateTime, nullable=True)
    available_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_jobs_lease_lookup', 'queue', 'reserved_at', 'available_at'),
    )

    def __repr__(self) -> str:
        return f"<JobORM(id={self.id}, queue={self.queue}, attempts={self.attempts})>"


class FailedJobORM(Base):
    """Failed jobs table, shared by both queue backends."""

    __tablename__ = "failed_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), nullable=False, unique=True)
    connection = Column(String(50), nullable=False)
    queue = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)
    exception = Column(Text, nullable=False)
    failed_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
