#tests\test_repository.py

"""Test SQL repository implementations."""

from datetime import datetime, timedelta

import pytest

from control_plane.core.errors import InvalidStateTransition, NotFoundError, ValidationError
from control_plane.core.models import (
    Alert,
    Credential,
    DeploymentRun,
    DeploymentTarget,
    MetricSample,
    RunStatus,
    Severity,
)


NOW = datetime(2024, 1, 15, 12, 0, 0)


def _processing_run(target_id, created_at=None):
    run = DeploymentRun(target_id=target_id, commit_hash="abc1234")
    if created_at is not None:
        run.created_at = created_at
    run.start(NOW)
    return run


class TestSqlTargetRepository:

    def test_create_and_get(self, target_repository, target):
        retrieved = target_repository.get(target.target_id)

        assert retrieved is not None
        assert retrieved.name == "marketing-site"
        assert retrieved.branch == "main"
        assert retrieved.is_active is True

    def test_get_nonexistent(self, target_repository):
        assert target_repository.get(9999) is None

    def test_create_invalid_target_fails(self, target_repository):
        with pytest.raises(ValidationError):
            target_repository.create(DeploymentTarget(
                name="bad",
                repository_url="https://example.com/repo.git",
                local_path="relative/path",
                secret_token="t",
            ))

    def test_update(self, target_repository, target):
        target.is_active = False
        target.post_deploy_script = "php artisan migrate"
        target_repository.update(target)

        retrieved = target_repository.get(target.target_id)
        assert retrieved.is_active is False
        assert retrieved.post_deploy_script == "php artisan migrate"

    def test_touch_last_deployed(self, target_repository, target):
        target_repository.touch_last_deployed(target.target_id, NOW)

        assert target_repository.get(target.target_id).last_deployed_at == NOW

    def test_touch_missing_target(self, target_repository):
        with pytest.raises(NotFoundError):
            target_repository.touch_last_deployed(9999, NOW)


class TestSqlCredentialRepository:

    def test_replace_keeps_one_per_target(self, credential_repository, target):
        first = Credential(target_id=target.target_id, public_key="ssh-ed25519 AAAA one",
                           private_key="k1", fingerprint="f1")
        second = Credential(target_id=target.target_id, public_key="ssh-ed25519 BBBB two",
                            private_key="k2", fingerprint="f2")

        credential_repository.replace_for_target(first)
        credential_repository.replace_for_target(second)

        current = credential_repository.get_for_target(target.target_id)
        assert current.public_key == "ssh-ed25519 BBBB two"
        assert current.private_key == "k2"

    def test_delete_for_target(self, credential_repository, target):
        credential_repository.replace_for_target(
            Credential(target_id=target.target_id, public_key="pk", private_key="k", fingerprint=None)
        )

        assert credential_repository.delete_for_target(target.target_id) is True
        assert credential_repository.get_for_target(target.target_id) is None
        assert credential_repository.delete_for_target(target.target_id) is False


class TestSqlRunRepository:

    def test_create_requires_processing(self, run_repository, target):
        with pytest.raises(ValidationError):
            run_repository.create(DeploymentRun(target_id=target.target_id))

    def test_create_and_update(self, run_repository, target):
        run = run_repository.create(_processing_run(target.target_id))
        assert run.run_id is not None

        run.attach_output("done")
        run.complete(NOW + timedelta(seconds=5))
        run_repository.update(run)

        retrieved = run_repository.get(run.run_id)
        assert retrieved.status == RunStatus.COMPLETED
        assert retrieved.output == "done"
        assert retrieved.duration_seconds == 5

    def test_terminal_run_cannot_be_updated(self, run_repository, target):
        run = run_repository.create(_processing_run(target.target_id))
        run.fail(NOW, "boom")
        run_repository.update(run)

        # A stale copy trying to complete the same run
        stale = run_repository.get(run.run_id)
        stale.status = RunStatus.COMPLETED

        with pytest.raises(InvalidStateTransition):
            run_repository.update(stale)

        assert run_repository.get(run.run_id).status == RunStatus.FAILED

    def test_list_for_target_newest_first(self, run_repository, target):
        older = run_repository.create(_processing_run(target.target_id, created_at=NOW))
        newer = run_repository.create(_processing_run(target.target_id, created_at=NOW + timedelta(minutes=1)))

        runs = run_repository.list_for_target(target.target_id)

        assert [run.run_id for run in runs] == [newer.run_id, older.run_id]


class TestSqlAlertRepository:

    def test_find_recent_unresolved(self, alert_repository, make_rule):
        rule = make_rule()
        alert = alert_repository.create(Alert(
            rule_id=rule.rule_id, title="Alert: High CPU", message="cpu is 95%",
            severity=Severity.WARNING, created_at=NOW,
        ))

        assert alert_repository.find_recent_unresolved(rule.rule_id, NOW - timedelta(minutes=5)) is not None
        assert alert_repository.find_recent_unresolved(rule.rule_id, NOW + timedelta(seconds=1)) is None

        alert_repository.resolve(alert.alert_id, NOW)
        assert alert_repository.find_recent_unresolved(rule.rule_id, NOW - timedelta(minutes=5)) is None

    def test_mark_notification_sent(self, alert_repository, make_rule):
        rule = make_rule()
        alert = alert_repository.create(Alert(
            rule_id=rule.rule_id, title="t", message="m", severity=Severity.INFO, created_at=NOW,
        ))

        alert_repository.mark_notification_sent(alert.alert_id)

        assert alert_repository.list_for_rule(rule.rule_id)[0].notification_sent is True


class TestSqlMetricRepository:

    def test_latest_and_delete_before(self, metric_repository):
        metric_repository.add(MetricSample(cpu_usage=10.0, recorded_at=NOW - timedelta(hours=30)))
        metric_repository.add(MetricSample(cpu_usage=20.0, recorded_at=NOW))

        assert metric_repository.latest().cpu_usage == 20.0
        assert metric_repository.delete_before(NOW - timedelta(hours=24)) == 1
        assert len(metric_repository.list_since(NOW - timedelta(days=7))) == 1
