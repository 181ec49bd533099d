# control_plane/monitoring/alerts.py
"""Alert engine - evaluates rules against the latest metric sample."""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from control_plane.core.clock import Clock, SystemClock
from control_plane.core.events import NullEventEmitter
from control_plane.core.events_model import ControlPlaneEvent
from control_plane.core.models import Alert, AlertMetric, AlertRule, MetricSample, Severity
from control_plane.core.repository import AlertRepository, AlertRuleRepository, MetricRepository

logger = logging.getLogger(__name__)

EQUALITY_TOLERANCE = 0.01


# ============================================
# Rule evaluation helpers
# ============================================

def condition_met(condition: str, value: float, threshold: float) -> bool:
    """Unknown operators never match."""
    if condition == ">":
        return value > threshold
    if condition == "<":
        return value < threshold
    if condition == "==":
        return abs(value - threshold) < EQUALITY_TOLERANCE
    if condition == "!=":
        return abs(value - threshold) >= EQUALITY_TOLERANCE
    return False


def classify_severity(rule: AlertRule, value: float) -> Severity:
    if rule.metric == AlertMetric.SERVICE and value == 0:
        return Severity.CRITICAL

    diff = abs(value - rule.threshold)
    if diff > 20:
        return Severity.CRITICAL
    if diff > 10:
        return Severity.WARNING
    return Severity.INFO


def format_number(value: float) -> str:
    """90.0 -> '90', 85.5 -> '85.5'."""
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def format_message(rule: AlertRule, value: float) -> str:
    if rule.metric == AlertMetric.SERVICE:
        state = "running" if value > 0 else "down"
        return f"{rule.service_name} is {state}"

    return (
        f"{rule.metric.value} is {format_number(value)}% "
        f"(threshold: {format_number(rule.threshold)}%)"
    )


# ============================================
# Engine
# ============================================

class AlertEngine:
    """
    One evaluation per monitoring tick.

    Rules are isolated from each other: an error while evaluating one
    rule is logged and the remaining rules are still evaluated.
    """

    def __init__(
        self,
        *,
        alerts: AlertRepository,
        rules: AlertRuleRepository,
        metrics: MetricRepository,
        probe,
        dispatcher,
        clock: Optional[Clock] = None,
        event_emitters=None,
    ):
        self._alerts = alerts
        self._rules = rules
        self._metrics = metrics
        self._probe = probe
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._emitters = event_emitters or NullEventEmitter()

    def check_alerts(self) -> List[Alert]:
        """Load active rules and the latest sample, then evaluate."""
        rules = self._rules.list_active()
        if not rules:
            return []

        sample = self._metrics.latest()
        if sample is None:
            logger.info("[alerts] No metric sample recorded yet, skipping evaluation")
            return []

        return self.evaluate(rules, sample)

    def evaluate(self, rules: Iterable[AlertRule], sample: MetricSample) -> List[Alert]:
        fired = []
        for rule in rules:
            try:
                alert = self._check_rule(rule, sample)
            except Exception as e:
                logger.error(f"[alerts] Rule {rule.rule_id} ({rule.name}) evaluation failed: {e}", exc_info=True)
                continue

            if alert is not None:
                fired.append(alert)
        return fired

    # -------------------------
    # PER RULE
    # -------------------------

    def _metric_value(self, rule: AlertRule, sample: MetricSample) -> Optional[float]:
        if rule.metric == AlertMetric.CPU:
            return sample.cpu_usage
        if rule.metric == AlertMetric.MEMORY:
            return sample.memory_usage
        if rule.metric == AlertMetric.DISK:
            return sample.disk_usage
        if rule.metric == AlertMetric.SERVICE:
            return self._probe.status(rule.service_name)
        return None

    def _check_rule(self, rule: AlertRule, sample: MetricSample) -> Optional[Alert]:
        value = self._metric_value(rule, sample)
        if value is None:
            return None

        if not condition_met(rule.condition, value, rule.threshold):
            return None

        now = self._clock.now()
        recent = self._alerts.find_recent_unresolved(
            rule.rule_id,
            since=now - timedelta(minutes=rule.duration),
        )
        if recent is not None:
            logger.debug(f"[alerts] Rule {rule.rule_id} already has open alert {recent.alert_id}")
            return None

        return self._trigger(rule, value, now)

    def _trigger(self, rule: AlertRule, value: float, now) -> Alert:
        alert = Alert(
            rule_id=rule.rule_id,
            title=f"Alert: {rule.name}",
            message=format_message(rule, value),
            severity=classify_severity(rule, value),
            created_at=now,
        )
        alert = self._alerts.create(alert)

        self._rules.mark_triggered(rule.rule_id, now)
        rule.last_triggered_at = now

        logger.warning(f"[alerts] 🚨 {alert.title} [{alert.severity.value}] {alert.message}")
        self._emitters.emit([ControlPlaneEvent.alert_triggered(alert, rule)])

        if self._dispatcher.dispatch(rule, alert):
            self._alerts.mark_notification_sent(alert.alert_id)
            alert.notification_sent = True

        return alert
