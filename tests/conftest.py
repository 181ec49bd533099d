#tests\conftest.py

"""Pytest configuration and fixtures."""

import fnmatch
from datetime import datetime, timedelta

import pytest
import redis

from control_plane.core.clock import Clock
from control_plane.core.events import LoggingEventEmitter
from control_plane.core.models import (
    AlertMetric,
    AlertRule,
    DeploymentTarget,
    GitProvider,
    NotificationChannel,
)
from control_plane.credentials.vault import CredentialVault
from control_plane.deployment.engine import DeploymentEngine
from control_plane.deployment.locks import SqlTargetLockManager
from control_plane.deployment.runner import CommandResult
from control_plane.deployment.service import DeploymentService
from control_plane.infrastructure.sql.database import create_db_engine, get_session_factory, init_db
from control_plane.infrastructure.sql.repository import (
    SqlAlertRepository,
    SqlAlertRuleRepository,
    SqlCredentialRepository,
    SqlMetricRepository,
    SqlRunRepository,
    SqlTargetRepository,
)
from control_plane.jobqueue.database import DatabaseJobQueue
from control_plane.jobqueue.failed_store import FailedJobStore
from control_plane.jobqueue.redis_queue import RedisJobQueue
from control_plane.jobqueue.service import QueueService
from control_plane.monitoring.notifications import NotificationDispatcher


# ============================================
# Fakes
# ============================================

class FrozenClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 12, 0, 0)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeCommandRunner:
    """
    Records commands instead of running them.

    Rules match on a fragment of the joined command line; the first
    matching rule decides the result and may run a side effect.
    """

    def __init__(self):
        self.calls = []
        self._rules = []

    def on(self, fragment, result=None, effect=None):
        self._rules.append((fragment, result, effect))
        return self

    def run(self, command, cwd=None, env=None, timeout=None):
        command = list(command)
        self.calls.append({"command": command, "cwd": cwd, "env": env, "timeout": timeout})

        line = " ".join(command)
        for fragment, result, effect in self._rules:
            if fragment in line:
                if effect:
                    effect(command)
                return result or CommandResult(returncode=0)

        return CommandResult(returncode=0)

    @property
    def command_lines(self):
        return [" ".join(call["command"]) for call in self.calls]


class FakeRedis:
    """In-memory stand-in for the subset of redis-py the queue uses."""

    def __init__(self):
        self.lists = {}
        self.zsets = {}
        self.broken = False

    def _check(self):
        if self.broken:
            raise redis.exceptions.ConnectionError("Connection refused")

    # keys

    def scan_iter(self, match="*"):
        self._check()
        keys = [key for key, values in self.lists.items() if values]
        keys += [key for key, members in self.zsets.items() if members]
        return iter([key for key in keys if fnmatch.fnmatchcase(key, match)])

    # lists

    def rpush(self, key, *values):
        self._check()
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    def lpop(self, key):
        self._check()
        values = self.lists.get(key)
        if not values:
            return None
        return values.pop(0)

    def lrange(self, key, start, end):
        self._check()
        values = self.lists.get(key, [])
        return list(values[start:None if end == -1 else end + 1])

    def llen(self, key):
        self._check()
        return len(self.lists.get(key, []))

    def lrem(self, key, count, value):
        self._check()
        values = self.lists.get(key, [])
        removed = 0
        while value in values and (count == 0 or removed < count):
            values.remove(value)
            removed += 1
        return removed

    # sorted sets

    def zadd(self, key, mapping):
        self._check()
        members = self.zsets.setdefault(key, {})
        added = len([member for member in mapping if member not in members])
        members.update(mapping)
        return added

    def zrem(self, key, *values):
        self._check()
        members = self.zsets.get(key, {})
        removed = 0
        for value in values:
            if value in members:
                del members[value]
                removed += 1
        return removed

    def _sorted(self, key):
        members = self.zsets.get(key, {})
        return sorted(members.items(), key=lambda item: (item[1], item[0]))

    def zrangebyscore(self, key, min, max, withscores=False):
        self._check()
        low = float("-inf") if min == "-inf" else float(min)
        high = float("inf") if max == "+inf" else float(max)
        items = [(member, score) for member, score in self._sorted(key) if low <= score <= high]
        return items if withscores else [member for member, _ in items]

    def zrange(self, key, start, end, withscores=False):
        self._check()
        items = self._sorted(key)
        items = items[start:None if end == -1 else end + 1]
        return items if withscores else [member for member, _ in items]

    def zcard(self, key):
        self._check()
        return len(self.zsets.get(key, {}))


class RecordingEmailNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, to_email, subject, body):
        if self.fail:
            raise ConnectionRefusedError("SMTP server unavailable")
        self.sent.append((to_email, subject, body))


class RecordingSlackNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, webhook_url, payload):
        if self.fail:
            raise RuntimeError("Slack returned 500")
        self.sent.append((webhook_url, payload))


class FakeProbe:
    """Service statuses by name; an Exception value is raised."""

    def __init__(self, statuses=None):
        self.statuses = dict(statuses or {})

    def status(self, service_name):
        value = self.statuses.get(service_name)
        if isinstance(value, Exception):
            raise value
        return value


class StaticSampler:
    def __init__(self, **readings):
        self.readings = readings

    def collect(self):
        return dict(self.readings)


# ============================================
# Database
# ============================================

@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine so worker threads share one database."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'control_plane_test.db'}")
    init_db(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def events():
    return LoggingEventEmitter()


# ============================================
# Repositories
# ============================================

@pytest.fixture
def target_repository(session_factory):
    return SqlTargetRepository(session_factory)


@pytest.fixture
def credential_repository(session_factory):
    return SqlCredentialRepository(session_factory)


@pytest.fixture
def run_repository(session_factory):
    return SqlRunRepository(session_factory)


@pytest.fixture
def rule_repository(session_factory):
    return SqlAlertRuleRepository(session_factory)


@pytest.fixture
def alert_repository(session_factory):
    return SqlAlertRepository(session_factory)


@pytest.fixture
def metric_repository(session_factory):
    return SqlMetricRepository(session_factory)


@pytest.fixture
def target(target_repository, tmp_path):
    """Persisted GitHub target whose working copy does not exist yet."""
    return target_repository.create(DeploymentTarget(
        name="marketing-site",
        repository_url="git@github.com:acme/marketing-site.git",
        local_path=str(tmp_path / "sites" / "marketing"),
        secret_token="s3cret-token",
        branch="main",
        git_provider=GitProvider.GITHUB,
    ))


@pytest.fixture
def make_rule(rule_repository):
    def _make(**overrides):
        values = dict(
            name="High CPU",
            metric=AlertMetric.CPU,
            condition=">",
            threshold=80.0,
            channel=NotificationChannel.EMAIL,
            email="ops@example.com",
            duration=5,
        )
        values.update(overrides)
        return rule_repository.create(AlertRule(**values))
    return _make


# ============================================
# Queue
# ============================================

@pytest.fixture
def failed_store(session_factory, clock):
    return FailedJobStore(session_factory, clock=clock)


@pytest.fixture
def db_queue(failed_store, session_factory, clock, events):
    return DatabaseJobQueue(failed_store, session_factory=session_factory, clock=clock, event_emitters=events)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_queue(fake_redis, failed_store, clock, events):
    return RedisJobQueue(fake_redis, failed_store, clock=clock, event_emitters=events)


@pytest.fixture
def queue_service(db_queue, failed_store, clock):
    return QueueService(db_queue, failed_store, clock=clock)


# ============================================
# Deployments
# ============================================

@pytest.fixture
def runner():
    return FakeCommandRunner()


@pytest.fixture
def vault(credential_repository, tmp_path, clock):
    return CredentialVault(credential_repository, temp_dir=str(tmp_path / "keys"), clock=clock)


@pytest.fixture
def lock_manager(session_factory, clock):
    return SqlTargetLockManager(session_factory, clock=clock)


@pytest.fixture
def deployment_engine(target_repository, run_repository, credential_repository, vault, runner,
                      lock_manager, clock, events):
    return DeploymentEngine(
        targets=target_repository,
        runs=run_repository,
        credentials=credential_repository,
        vault=vault,
        runner=runner,
        locks=lock_manager,
        clock=clock,
        event_emitters=events,
        worker_id="test-worker",
        process_user="deployer",
    )


@pytest.fixture
def deployment_service(target_repository, db_queue, deployment_engine, vault):
    return DeploymentService(
        targets=target_repository,
        queue=db_queue,
        engine=deployment_engine,
        vault=vault,
        queue_name="deployments",
    )


# ============================================
# Monitoring
# ============================================

@pytest.fixture
def email_notifier():
    return RecordingEmailNotifier()


@pytest.fixture
def slack_notifier():
    return RecordingSlackNotifier()


@pytest.fixture
def dispatcher(email_notifier, slack_notifier):
    return NotificationDispatcher(email=email_notifier, slack=slack_notifier, slack_footer="Test Plane")


@pytest.fixture
def probe():
    return FakeProbe()
