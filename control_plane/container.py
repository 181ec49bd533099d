#control_plane\container.py

"""Dependency injection container - wires all services together."""

from control_plane.config import Settings, settings
from control_plane.core.events import LoggingEventEmitter, MultiEventEmitter
from control_plane.credentials.vault import CredentialVault
from control_plane.deployment.engine import DeploymentEngine
from control_plane.deployment.locks import SqlTargetLockManager
from control_plane.deployment.runner import CommandRunner
from control_plane.deployment.service import DeploymentService
from control_plane.infrastructure.sql.database import engine as db_engine
from control_plane.infrastructure.sql.repository import (
    SqlAlertRepository,
    SqlAlertRuleRepository,
    SqlCredentialRepository,
    SqlMetricRepository,
    SqlRunRepository,
    SqlTargetRepository,
)
from control_plane.jobqueue.base import JobQueue
from control_plane.jobqueue.database import DatabaseJobQueue
from control_plane.jobqueue.failed_store import FailedJobStore
from control_plane.jobqueue.jobs import CHECK_ALERTS, PROCESS_DEPLOYMENT, RECORD_METRICS
from control_plane.jobqueue.redis_queue import RedisJobQueue, connect
from control_plane.jobqueue.service import QueueService
from control_plane.monitoring.alerts import AlertEngine
from control_plane.monitoring.metrics import DatabaseActivityProbe, HostMetricSampler, MetricStore
from control_plane.monitoring.notifications import EmailNotifier, NotificationDispatcher, SlackNotifier
from control_plane.monitoring.probes import ServiceProbe


def build_job_queue(config: Settings, failed_store: FailedJobStore, event_emitters=None) -> JobQueue:
    """Pick the queue backend once, at startup."""
    driver = config.queue_driver.lower()

    if driver == "redis":
        return RedisJobQueue(
            connect(config.redis_url),
            failed_store,
            event_emitters=event_emitters,
        )

    if driver == "database":
        return DatabaseJobQueue(failed_store, event_emitters=event_emitters)

    raise ValueError(f"Unknown queue driver: {config.queue_driver}")


# ============================================
# REPOSITORIES
# ============================================

target_repository = SqlTargetRepository()
credential_repository = SqlCredentialRepository()
run_repository = SqlRunRepository()
alert_rule_repository = SqlAlertRuleRepository()
alert_repository = SqlAlertRepository()
metric_repository = SqlMetricRepository()


# ============================================
# EVENTS
# ============================================

emitters = MultiEventEmitter([
    LoggingEventEmitter()
])


# ============================================
# QUEUE
# ============================================

failed_job_store = FailedJobStore()
job_queue = build_job_queue(settings, failed_job_store, event_emitters=emitters)
queue_service = QueueService(job_queue, failed_job_store)


# ============================================
# DEPLOYMENTS
# ============================================

command_runner = CommandRunner()

vault = CredentialVault(
    credential_repository,
    temp_dir=settings.deploy_key_dir,
)

deployment_engine = DeploymentEngine(
    targets=target_repository,
    runs=run_repository,
    credentials=credential_repository,
    vault=vault,
    runner=command_runner,
    locks=SqlTargetLockManager(),
    event_emitters=emitters,
    worker_id=settings.worker_id,
    hook_timeout=settings.hook_timeout_seconds,
    git_timeout=settings.git_timeout_seconds,
    # The run is settled before the worker gives up on the job
    time_limit=PROCESS_DEPLOYMENT.options.timeout - settings.deploy_settle_seconds,
)

deployment_service = DeploymentService(
    targets=target_repository,
    queue=job_queue,
    engine=deployment_engine,
    vault=vault,
    queue_name=settings.deployment_queue,
)


# ============================================
# MONITORING
# ============================================

metric_store = MetricStore(
    metric_repository,
    sampler=HostMetricSampler(database=DatabaseActivityProbe(db_engine)),
    retention_hours=settings.metrics_retention_hours,
)

notification_dispatcher = NotificationDispatcher(
    email=EmailNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        mail_from=settings.mail_from,
    ),
    slack=SlackNotifier(),
    slack_footer=settings.slack_footer,
)

alert_engine = AlertEngine(
    alerts=alert_repository,
    rules=alert_rule_repository,
    metrics=metric_repository,
    probe=ServiceProbe(command_runner),
    dispatcher=notification_dispatcher,
    event_emitters=emitters,
)


# ============================================
# WORKER HANDLERS
# ============================================

job_handlers = {
    PROCESS_DEPLOYMENT.name: deployment_service.handle_deploy_job,
    CHECK_ALERTS.name: lambda data: alert_engine.check_alerts(),
    RECORD_METRICS.name: lambda data: metric_store.record_and_prune(),
}
