# control_plane/monitoring/notifications.py
"""Alert notifications - email (SMTP) and Slack (incoming webhook)."""

import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import requests

from control_plane.core.clock import utcnow
from control_plane.core.models import Alert, AlertRule, NotificationChannel, Severity
from control_plane.jobqueue.base import to_timestamp

logger = logging.getLogger(__name__)

EMAIL_EMOJI = {
    Severity.CRITICAL: "🔴",
    Severity.WARNING: "⚠️",
}

SLACK_EMOJI = {
    Severity.CRITICAL: ":rotating_light:",
    Severity.WARNING: ":warning:",
}

SLACK_COLOR = {
    Severity.CRITICAL: "danger",
    Severity.WARNING: "warning",
}


# ============================================
# Message formatting
# ============================================

def email_subject(alert: Alert) -> str:
    return f"[{alert.severity.value}] {alert.title}"


def email_body(alert: Alert) -> str:
    emoji = EMAIL_EMOJI.get(alert.severity, "ℹ️")
    created_at = (alert.created_at or utcnow()).strftime("%Y-%m-%d %H:%M:%S")
    return f"{emoji} {alert.title}\n\n{alert.message}\n\nTime: {created_at}"


def slack_payload(alert: Alert, footer: str) -> Dict[str, Any]:
    emoji = SLACK_EMOJI.get(alert.severity, ":information_source:")
    return {
        "text": f"{emoji} {alert.title}",
        "attachments": [{
            "color": SLACK_COLOR.get(alert.severity, "good"),
            "text": alert.message,
            "footer": footer,
            "ts": int(to_timestamp(alert.created_at or utcnow())),
        }],
    }


# ============================================
# Channels
# ============================================

class EmailNotifier:
    """Plain-text mail over SMTP. Raises on delivery failure."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        mail_from: str = "alerts@localhost",
        timeout: int = 30,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.mail_from = mail_from
        self.timeout = timeout

    def send(self, to_email: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.mail_from
        msg["To"] = to_email

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.sendmail(self.mail_from, [to_email], msg.as_string())

        logger.info(f"[notify] Email sent to {to_email}: {subject}")


class SlackNotifier:
    """Posts to a Slack incoming webhook. Raises on HTTP failure."""

    def __init__(self, timeout: int = 10, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._http = session or requests

    def send(self, webhook_url: str, payload: Dict[str, Any]) -> None:
        response = self._http.post(webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.info("[notify] Slack message delivered")


class NotificationDispatcher:
    """Sends an alert through the channels configured on its rule."""

    def __init__(
        self,
        email: Optional[EmailNotifier] = None,
        slack: Optional[SlackNotifier] = None,
        slack_footer: str = "Control Plane",
    ):
        self._email = email
        self._slack = slack
        self._slack_footer = slack_footer

    def dispatch(self, rule: AlertRule, alert: Alert) -> bool:
        """
        Attempt every configured channel independently.

        A failing channel is logged and does not stop the others. Returns
        True only when every attempted channel delivered.
        """
        try:
            delivered = True

            if rule.channel in (NotificationChannel.EMAIL, NotificationChannel.BOTH) and rule.email:
                delivered = self._send_email(rule, alert) and delivered

            if rule.channel in (NotificationChannel.SLACK, NotificationChannel.BOTH) and rule.slack_webhook:
                delivered = self._send_slack(rule, alert) and delivered

            return delivered
        except Exception as e:
            logger.error(f"[notify] Failed to send alert notifications for alert {alert.alert_id}: {e}")
            return False

    def _send_email(self, rule: AlertRule, alert: Alert) -> bool:
        if self._email is None:
            logger.warning(f"[notify] No email notifier configured, skipping alert {alert.alert_id}")
            return False
        try:
            self._email.send(rule.email, email_subject(alert), email_body(alert))
            return True
        except Exception as e:
            logger.error(f"[notify] Failed to send email alert {alert.alert_id}: {e}")
            return False

    def _send_slack(self, rule: AlertRule, alert: Alert) -> bool:
        if self._slack is None:
            logger.warning(f"[notify] No Slack notifier configured, skipping alert {alert.alert_id}")
            return False
        try:
            self._slack.send(rule.slack_webhook, slack_payload(alert, self._slack_footer))
            return True
        except Exception as e:
            logger.error(f"[notify] Failed to send Slack alert {alert.alert_id}: {e}")
            return False
