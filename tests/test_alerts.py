#tests\test_alerts.py

"""Test alert rule evaluation and notification dispatch."""

import smtplib
from datetime import datetime

import pytest

from conftest import FakeProbe, RecordingEmailNotifier, RecordingSlackNotifier
from control_plane.core.models import (
    Alert,
    AlertMetric,
    AlertRule,
    MetricSample,
    NotificationChannel,
    Severity,
)
from control_plane.monitoring.alerts import (
    AlertEngine,
    classify_severity,
    condition_met,
    format_message,
    format_number,
)
from control_plane.monitoring.notifications import (
    EmailNotifier,
    NotificationDispatcher,
    SlackNotifier,
    email_body,
    email_subject,
    slack_payload,
)


CREATED = datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture
def alert_engine(alert_repository, rule_repository, metric_repository, probe, dispatcher, clock, events):
    return AlertEngine(
        alerts=alert_repository,
        rules=rule_repository,
        metrics=metric_repository,
        probe=probe,
        dispatcher=dispatcher,
        clock=clock,
        event_emitters=events,
    )


@pytest.fixture
def record_sample(metric_repository, clock):
    def _record(**values):
        return metric_repository.add(MetricSample(recorded_at=clock.now(), **values))
    return _record


class TestRuleHelpers:

    @pytest.mark.parametrize("condition,value,threshold,expected", [
        (">", 95, 80, True),
        (">", 80, 80, False),
        ("<", 5, 10, True),
        ("==", 0.005, 0, True),
        ("==", 0.02, 0, False),
        ("!=", 1, 0, True),
        ("!=", 0, 0, False),
        (">=", 100, 0, False),
    ])
    def test_condition_met(self, condition, value, threshold, expected):
        assert condition_met(condition, value, threshold) is expected

    @pytest.mark.parametrize("value,expected", [
        (85, Severity.INFO),
        (95, Severity.WARNING),
        (100.5, Severity.CRITICAL),
    ])
    def test_classify_severity(self, value, expected):
        rule = AlertRule(name="cpu", metric=AlertMetric.CPU, condition=">", threshold=80)
        assert classify_severity(rule, value) is expected

    def test_down_service_is_critical(self):
        rule = AlertRule(name="nginx", metric=AlertMetric.SERVICE, condition="==", threshold=0,
                         service_name="nginx")
        assert classify_severity(rule, 0.0) is Severity.CRITICAL

    def test_format_number(self):
        assert format_number(90.0) == "90"
        assert format_number(85.5) == "85.5"

    def test_format_message(self):
        cpu = AlertRule(name="cpu", metric=AlertMetric.CPU, condition=">", threshold=80.0)
        nginx = AlertRule(name="nginx", metric=AlertMetric.SERVICE, condition="==", threshold=0,
                          service_name="nginx")

        assert format_message(cpu, 95.0) == "cpu is 95% (threshold: 80%)"
        assert format_message(nginx, 0.0) == "nginx is down"
        assert format_message(nginx, 1.0) == "nginx is running"


class TestAlertEngine:

    def test_no_rules(self, alert_engine, record_sample):
        record_sample(cpu_usage=99.0)
        assert alert_engine.check_alerts() == []

    def test_no_sample_yet(self, alert_engine, make_rule):
        make_rule()
        assert alert_engine.check_alerts() == []

    def test_threshold_breach_fires_and_notifies(self, alert_engine, make_rule, record_sample,
                                                 email_notifier, alert_repository, rule_repository, clock):
        rule = make_rule()
        record_sample(cpu_usage=95.0)

        fired = alert_engine.check_alerts()

        assert len(fired) == 1
        alert = fired[0]
        assert alert.title == "Alert: High CPU"
        assert alert.message == "cpu is 95% (threshold: 80%)"
        assert alert.severity == Severity.WARNING
        assert alert.notification_sent is True

        stored = alert_repository.list_for_rule(rule.rule_id)
        assert len(stored) == 1
        assert stored[0].notification_sent is True
        assert rule_repository.get(rule.rule_id).last_triggered_at == clock.now()

        assert email_notifier.sent == [(
            "ops@example.com",
            "[warning] Alert: High CPU",
            "⚠️ Alert: High CPU\n\ncpu is 95% (threshold: 80%)\n\nTime: 2024-01-15 12:00:00",
        )]

    def test_condition_not_met(self, alert_engine, make_rule, record_sample, email_notifier):
        make_rule()
        record_sample(cpu_usage=40.0)

        assert alert_engine.check_alerts() == []
        assert email_notifier.sent == []

    def test_open_alert_suppresses_duplicates(self, alert_engine, make_rule, record_sample, clock):
        make_rule(duration=5)
        record_sample(cpu_usage=95.0)

        assert len(alert_engine.check_alerts()) == 1

        clock.advance(minutes=4)
        assert alert_engine.check_alerts() == []

        clock.advance(minutes=2)
        assert len(alert_engine.check_alerts()) == 1

    def test_resolved_alert_does_not_suppress(self, alert_engine, make_rule, record_sample, alert_repository, clock):
        make_rule()
        record_sample(cpu_usage=95.0)
        first = alert_engine.check_alerts()[0]

        alert_repository.resolve(first.alert_id, clock.now())

        assert len(alert_engine.check_alerts()) == 1

    def test_service_down(self, alert_engine, make_rule, record_sample, probe):
        probe.statuses["nginx"] = 0.0
        make_rule(name="nginx down", metric=AlertMetric.SERVICE, condition="==", threshold=0,
                  service_name="nginx")
        record_sample()

        fired = alert_engine.check_alerts()

        assert fired[0].message == "nginx is down"
        assert fired[0].severity == Severity.CRITICAL

    def test_unknown_service_status_skips_rule(self, alert_engine, make_rule, record_sample):
        make_rule(name="ghost", metric=AlertMetric.SERVICE, condition="==", threshold=0,
                  service_name="ghost")
        record_sample()

        assert alert_engine.check_alerts() == []

    def test_broken_rule_does_not_block_others(self, alert_engine, make_rule, record_sample, probe):
        probe.statuses["flaky"] = RuntimeError("dbus unavailable")
        make_rule(name="flaky", metric=AlertMetric.SERVICE, condition="==", threshold=0,
                  service_name="flaky")
        cpu_rule = make_rule()
        record_sample(cpu_usage=95.0)

        fired = alert_engine.check_alerts()

        assert [alert.rule_id for alert in fired] == [cpu_rule.rule_id]

    def test_inactive_rules_are_ignored(self, alert_engine, make_rule, record_sample):
        make_rule(is_active=False)
        record_sample(cpu_usage=95.0)

        assert alert_engine.check_alerts() == []

    def test_failed_notification_keeps_alert(self, alert_repository, rule_repository, metric_repository,
                                             make_rule, record_sample, clock):
        engine = AlertEngine(
            alerts=alert_repository,
            rules=rule_repository,
            metrics=metric_repository,
            probe=FakeProbe(),
            dispatcher=NotificationDispatcher(email=RecordingEmailNotifier(fail=True)),
            clock=clock,
        )
        rule = make_rule()
        record_sample(cpu_usage=95.0)

        fired = engine.check_alerts()

        assert fired[0].notification_sent is False
        assert alert_repository.list_for_rule(rule.rule_id)[0].notification_sent is False

    def test_alert_event_emitted(self, alert_engine, make_rule, record_sample, events):
        make_rule()
        record_sample(cpu_usage=95.0)

        alert_engine.check_alerts()

        assert events.events[-1].event_type == "alert.triggered"
        assert events.events[-1].metadata["severity"] == "warning"


class TestNotifications:

    @pytest.fixture
    def alert(self):
        return Alert(rule_id=1, title="Alert: Disk", message="disk is 97% (threshold: 90%)",
                     severity=Severity.CRITICAL, created_at=CREATED)

    def test_email_format(self, alert):
        assert email_subject(alert) == "[critical] Alert: Disk"
        assert email_body(alert).startswith("🔴 Alert: Disk\n\n")

    def test_info_email_uses_default_emoji(self, alert):
        alert.severity = Severity.INFO
        assert email_body(alert).startswith("ℹ️ ")

    def test_slack_payload(self, alert):
        payload = slack_payload(alert, "Test Plane")

        assert payload["text"] == ":rotating_light: Alert: Disk"
        attachment = payload["attachments"][0]
        assert attachment["color"] == "danger"
        assert attachment["text"] == "disk is 97% (threshold: 90%)"
        assert attachment["footer"] == "Test Plane"
        assert attachment["ts"] == 1705320000

    def test_both_channels(self, alert):
        email, slack = RecordingEmailNotifier(), RecordingSlackNotifier()
        rule = AlertRule(name="disk", metric=AlertMetric.DISK, condition=">", threshold=90,
                         channel=NotificationChannel.BOTH, email="ops@example.com",
                         slack_webhook="https://hooks.slack.com/services/T/B/X")

        assert NotificationDispatcher(email=email, slack=slack).dispatch(rule, alert) is True
        assert len(email.sent) == 1
        assert slack.sent[0][0] == "https://hooks.slack.com/services/T/B/X"

    def test_one_failing_channel_does_not_block_the_other(self, alert):
        email, slack = RecordingEmailNotifier(fail=True), RecordingSlackNotifier()
        rule = AlertRule(name="disk", metric=AlertMetric.DISK, condition=">", threshold=90,
                         channel=NotificationChannel.BOTH, email="ops@example.com",
                         slack_webhook="https://hooks.slack.com/services/T/B/X")

        assert NotificationDispatcher(email=email, slack=slack).dispatch(rule, alert) is False
        assert len(slack.sent) == 1

    def test_slack_notifier_posts_json(self, alert):
        class Response:
            def raise_for_status(self):
                pass

        class Session:
            def __init__(self):
                self.posts = []

            def post(self, url, json=None, timeout=None):
                self.posts.append((url, json, timeout))
                return Response()

        session = Session()
        SlackNotifier(timeout=7, session=session).send("https://hooks.example/x", {"text": "hi"})

        assert session.posts == [("https://hooks.example/x", {"text": "hi"}, 7)]

    def test_email_notifier_uses_smtp(self, monkeypatch):
        sessions = []

        class FakeSMTP:
            def __init__(self, host, port, timeout=None):
                self.host, self.port = host, port
                self.calls = []
                sessions.append(self)

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self):
                self.calls.append("starttls")

            def login(self, username, password):
                self.calls.append(("login", username, password))

            def sendmail(self, sender, recipients, message):
                self.calls.append(("sendmail", sender, recipients, message))

        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

        EmailNotifier(host="smtp.example.com", port=2525, username="bot", password="pw",
                      mail_from="alerts@example.com").send("ops@example.com", "[info] hi", "body")

        smtp = sessions[0]
        assert (smtp.host, smtp.port) == ("smtp.example.com", 2525)
        assert smtp.calls[0] == "starttls"
        assert smtp.calls[1] == ("login", "bot", "pw")
        assert smtp.calls[2][:3] == ("sendmail", "alerts@example.com", ["ops@example.com"])
        assert "Subject: [info] hi" in smtp.calls[2][3]
