"""Core domain models (business logic)."""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from control_plane.core.clock import utcnow
from control_plane.core.errors import InvalidStateTransition


# ============================================
# ENUMS
# ============================================

class GitProvider(Enum):
    """Source of webhook payloads."""
    GITHUB = "github"
    GITLAB = "gitlab"
    CUSTOM = "custom"


class KeyType(Enum):
    """Supported deploy key algorithms."""
    ED25519 = "ed25519"


class RunStatus(Enum):
    """Deployment run state machine."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_RUN_STATES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


class AlertMetric(Enum):
    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    SERVICE = "service"


class NotificationChannel(Enum):
    EMAIL = "email"
    SLACK = "slack"
    BOTH = "both"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ============================================
# DEPLOYMENT TARGET
# ============================================

@dataclass
class DeploymentTarget:
    """A repository/site pair managed by the control plane."""

    name: str
    repository_url: str
    local_path: str
    secret_token: str
    branch: str = "main"
    git_provider: GitProvider = GitProvider.GITHUB
    deploy_user: Optional[str] = None
    pre_deploy_script: Optional[str] = None
    post_deploy_script: Optional[str] = None
    is_active: bool = True
    last_deployed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    target_id: Optional[int] = None


# ============================================
# CREDENTIAL
# ============================================

@dataclass
class Credential:
    """Deploy keypair owned by exactly one target."""

    target_id: int
    public_key: str
    private_key: str = field(repr=False)
    fingerprint: Optional[str]
    key_type: KeyType = KeyType.ED25519
    created_at: datetime = field(default_factory=utcnow)
    credential_id: Optional[int] = None

    @property
    def formatted_fingerprint(self) -> str:
        if not self.fingerprint:
            return "N/A"
        pairs = [self.fingerprint[i:i + 2] for i in range(0, len(self.fingerprint), 2)]
        return ":".join(pairs)

    def to_public_dict(self) -> Dict[str, Any]:
        """Serializable view without private material."""
        return {
            "credential_id": self.credential_id,
            "target_id": self.target_id,
            "key_type": self.key_type.value,
            "public_key": self.public_key,
            "fingerprint": self.fingerprint,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================
# DEPLOYMENT RUN
# ============================================

@dataclass
class DeploymentRun:
    """One deployment attempt for a target (audit record)."""

    target_id: int
    status: RunStatus = RunStatus.PENDING
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    author: Optional[str] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    run_id: Optional[int] = None

    # -------------------------
    # STATE TRANSITIONS
    # -------------------------

    def start(self, now: datetime) -> None:
        """Transition from PENDING to PROCESSING."""
        if self.status != RunStatus.PENDING:
            raise InvalidStateTransition(f"Cannot start run from {self.status.value} state")

        self.status = RunStatus.PROCESSING
        self.started_at = now

    def attach_output(self, output: str) -> None:
        self._assert_not_terminal()
        self.output = output

    def complete(self, now: datetime) -> None:
        """Transition from PROCESSING to COMPLETED."""
        if self.status != RunStatus.PROCESSING:
            raise InvalidStateTransition(f"Cannot complete run from {self.status.value} state")

        self.status = RunStatus.COMPLETED
        self.completed_at = now

    def fail(self, now: datetime, error_message: str) -> None:
        """Transition to FAILED state."""
        self._assert_not_terminal()

        self.status = RunStatus.FAILED
        self.error_message = error_message
        self.completed_at = now

    # -------------------------
    # HELPERS
    # -------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATES

    @property
    def duration_seconds(self) -> Optional[int]:
        if not self.started_at or not self.completed_at:
            return None
        return abs(int((self.completed_at - self.started_at).total_seconds()))

    @property
    def short_commit_hash(self) -> str:
        return (self.commit_hash or "")[:7]

    def _assert_not_terminal(self) -> None:
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Run {self.run_id} is {self.status.value} and can no longer change"
            )


# ============================================
# ALERTING
# ============================================

@dataclass
class AlertRule:
    """Threshold rule evaluated against the latest metric sample."""

    name: str
    metric: AlertMetric
    condition: str
    threshold: float
    channel: NotificationChannel = NotificationChannel.EMAIL
    duration: int = 5  # minutes; also the deduplication window
    service_name: Optional[str] = None
    email: Optional[str] = None
    slack_webhook: Optional[str] = None
    is_active: bool = True
    last_triggered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    rule_id: Optional[int] = None


@dataclass
class Alert:
    """A firing event for one rule."""

    rule_id: int
    title: str
    message: str
    severity: Severity
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    notification_sent: bool = False
    created_at: datetime = field(default_factory=utcnow)
    alert_id: Optional[int] = None

    def resolve(self, now: datetime) -> None:
        self.is_resolved = True
        self.resolved_at = now


# ============================================
# METRICS
# ============================================

@dataclass
class MetricSample:
    """Flat host snapshot. Append-only."""

    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    disk_usage: float = 0.0
    memory_total: int = 0
    memory_used: int = 0
    disk_total: int = 0
    disk_used: int = 0
    disk_read_bytes: int = 0
    disk_write_bytes: int = 0
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
    db_connections: int = 0
    db_processes: int = 0
    recorded_at: datetime = field(default_factory=utcnow)
    sample_id: Optional[int] = None

    @staticmethod
    def format_bytes(num_bytes: int) -> str:
        units = ["B", "KB", "MB", "GB", "TB"]
        num_bytes = max(num_bytes, 0)
        power = int(math.log(num_bytes, 1024)) if num_bytes else 0
        power = min(power, len(units) - 1)
        return f"{num_bytes / (1024 ** power):.2f} {units[power]}"


# ============================================
# QUEUE
# ============================================

@dataclass
class QueuedJob:
    """A pending (or leased) job as seen by workers and the dashboard."""

    id: Union[int, str]
    queue: str
    payload: Dict[str, Any]
    attempts: int = 0
    reserved_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    display_name: str = "Unknown Job"
    # Broker-specific handle of the reserved entry
    raw: Optional[str] = field(default=None, repr=False)

    @property
    def name(self) -> Optional[str]:
        return self.payload.get("job")

    @property
    def data(self) -> Dict[str, Any]:
        return self.payload.get("data") or {}

    @property
    def max_tries(self) -> int:
        return int(self.payload.get("maxTries") or 1)

    @property
    def timeout(self) -> int:
        return int(self.payload.get("timeout") or 60)

    def encoded_payload(self) -> str:
        return json.dumps(self.payload)


@dataclass
class FailedJob:
    """A job that exhausted its attempt budget."""

    uuid: str
    connection: str
    queue: str
    payload: Dict[str, Any]
    exception: str
    failed_at: datetime = field(default_factory=utcnow)
    display_name: str = "Unknown Job"
    id: Optional[int] = None
