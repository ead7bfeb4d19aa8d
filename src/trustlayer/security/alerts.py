"""
TrustLayer Alert Dispatching
Delivers SecurityAlerts by email and push notification with per-alert
throttling. Channels are independent: one failing never blocks another.
"""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Dict, List, Optional, Sequence, TYPE_CHECKING

import httpx
from jinja2 import DictLoader, Environment, select_autoescape

from trustlayer.core.clock import Clock, SystemClock, to_iso
from trustlayer.core.errors import TrustLayerError
from trustlayer.core.logging import LoggerMixin
from trustlayer.security.audit import AuditLogger
from trustlayer.security.models import AuditAction, AuditEvent, SecurityAlert, Severity

if TYPE_CHECKING:
    from trustlayer.security.monitor import DashboardSummary


class AlertDeliveryError(TrustLayerError):
    """A channel could not deliver a notification"""
    pass


SEVERITY_COLORS = {
    Severity.CRITICAL: "#e74c3c",
    Severity.HIGH: "#f39c12",
    Severity.MEDIUM: "#f1c40f",
    Severity.LOW: "#3498db",
}

RECOMMENDED_ACTIONS = {
    "brute_force_attempt": (
        "Review the IP address and consider adding it to the blocklist. "
        "Check if the account needs additional protection."
    ),
    "suspicious_activity": (
        "Investigate the user activity and verify if it is legitimate. "
        "Consider contacting the user if necessary."
    ),
    "rate_limit_exceeded": (
        "Review the API usage patterns and determine if this is abuse "
        "or a legitimate spike in traffic."
    ),
    "certificate_pinning_failure": (
        "CRITICAL: Possible man-in-the-middle attack. "
        "Investigate immediately and verify the server certificates."
    ),
}
DEFAULT_ACTION = "Review the security logs and take appropriate action based on the alert details."

TEMPLATES = {
    "alert.html": """\
<html>
<body style="font-family: Arial, sans-serif;">
  <div style="border-left: 6px solid {{ color }}; padding: 12px;">
    <h2 style="color: {{ color }};">[{{ alert.severity.value | upper }}] {{ alert.title }}</h2>
    <p>{{ alert.description }}</p>
    <p><strong>Type:</strong> {{ alert.type }}<br>
       <strong>Time:</strong> {{ timestamp }}<br>
       <strong>Alert ID:</strong> {{ alert.id }}</p>
    {% if alert.metadata %}
    <table cellpadding="4">
      {% for key, value in alert.metadata.items() %}
      <tr><td><strong>{{ key }}</strong></td><td>{{ value }}</td></tr>
      {% endfor %}
    </table>
    {% endif %}
    <p><strong>Recommended Action:</strong></p>
    <p>{{ action }}</p>
  </div>
</body>
</html>
""",
    "daily_summary.html": """\
<html>
<body style="font-family: Arial, sans-serif;">
  <h2>Daily Security Summary - {{ date }}</h2>
  <table cellpadding="6">
    <tr><td>Failed login attempts</td><td>{{ summary.failed_login_attempts }}</td></tr>
    <tr><td>Active sessions</td><td>{{ summary.active_sessions }}</td></tr>
    <tr><td>API requests (1h)</td><td>{{ summary.api_requests }}</td></tr>
    <tr><td>Locked identifiers</td><td>{{ summary.locked_identifiers }}</td></tr>
    <tr><td>Critical alerts</td><td>{{ summary.critical_alerts }}</td></tr>
    <tr><td>High alerts</td><td>{{ summary.high_alerts }}</td></tr>
    <tr><td>Medium alerts</td><td>{{ summary.medium_alerts }}</td></tr>
    <tr><td>Total alerts</td><td>{{ summary.total_alerts }}</td></tr>
  </table>
  {% if alerts %}
  <h3>Top alerts</h3>
  <ul>
    {% for alert in alerts %}
    <li style="color: {{ colors[alert.severity] }};">[{{ alert.severity.value | upper }}] {{ alert.title }}: {{ alert.description }}</li>
    {% endfor %}
  </ul>
  {% endif %}
</body>
</html>
""",
}

_templates = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(default=True),
)


@dataclass
class AlertResult:
    """Per channel outcome of one dispatch"""
    delivered: Dict[str, bool] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    throttled: bool = False
    message: str = ""

    @property
    def success(self) -> bool:
        return any(self.delivered.values())

    @property
    def email_sent(self) -> bool:
        return self.delivered.get("email", False)

    @property
    def push_sent(self) -> bool:
        return self.delivered.get("push", False)


class AlertChannel(ABC):
    """A notification transport"""

    name: str = "channel"

    @abstractmethod
    async def send(self, alert: SecurityAlert) -> None:
        """Deliver the alert or raise AlertDeliveryError"""


@dataclass
class EmailConfig:
    smtp_host: str
    smtp_port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    from_email: Optional[str] = None
    from_name: str = "TrustLayer Security"


class EmailChannel(AlertChannel, LoggerMixin):
    """HTML email over SMTP"""

    name = "email"

    def __init__(self, config: EmailConfig, recipients: Sequence[str]):
        self.config = config
        self.recipients = list(recipients)

    async def send(self, alert: SecurityAlert) -> None:
        html = _templates.get_template("alert.html").render(
            alert=alert,
            color=SEVERITY_COLORS[alert.severity],
            timestamp=to_iso(alert.timestamp),
            action=RECOMMENDED_ACTIONS.get(alert.type, DEFAULT_ACTION),
        )
        await self.send_html(f"[{alert.severity.value.upper()}] {alert.title}", html)

    async def send_html(self, subject: str, html: str) -> None:
        if not self.recipients:
            raise AlertDeliveryError("No email recipients configured")
        await asyncio.to_thread(self._send_sync, subject, html)
        self.logger.info(f"Email '{subject}' sent to {len(self.recipients)} recipient(s)")

    def _send_sync(self, subject: str, html: str) -> None:
        from_addr = self.config.from_email or self.config.username or "trustlayer@localhost"

        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.config.from_name, from_addr))
        msg["To"] = ", ".join(self.recipients)
        msg["Subject"] = subject
        msg.attach(MIMEText(html, "html"))

        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as server:
                if self.config.use_tls:
                    server.starttls()
                if self.config.username and self.config.password:
                    server.login(self.config.username, self.config.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise AlertDeliveryError(f"SMTP delivery failed: {e}") from e


class PushChannel(AlertChannel, LoggerMixin):
    """Firebase Cloud Messaging legacy HTTP API"""

    name = "push"

    def __init__(
        self,
        server_key: str,
        device_tokens: Sequence[str],
        endpoint: str = "https://fcm.googleapis.com/fcm/send",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.server_key = server_key
        self.device_tokens = list(device_tokens)
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=15.0)

    async def send(self, alert: SecurityAlert) -> None:
        if not self.device_tokens:
            raise AlertDeliveryError("No push device tokens configured")

        for token in self.device_tokens:
            payload = {
                "to": token,
                "notification": {
                    "title": alert.title,
                    "body": alert.description,
                    "sound": "default",
                    "priority": "high",
                },
                "data": {
                    "alert_id": alert.id,
                    "severity": alert.severity.value,
                    "type": alert.type,
                    "timestamp": to_iso(alert.timestamp),
                },
            }
            try:
                response = await self._client.post(
                    self.endpoint,
                    json=payload,
                    headers={"Authorization": f"key={self.server_key}"},
                )
            except httpx.HTTPError as e:
                raise AlertDeliveryError(f"FCM request failed: {e}") from e
            if response.status_code != 200:
                raise AlertDeliveryError(f"FCM notification failed ({response.status_code}): {response.text[:200]}")

    async def aclose(self) -> None:
        await self._client.aclose()


class AlertDispatcher(LoggerMixin):
    """Throttled multi-channel alert delivery"""

    def __init__(
        self,
        channels: Sequence[AlertChannel],
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        throttle: timedelta = timedelta(hours=1),
        min_severity: Severity = Severity.MEDIUM,
    ):
        self.channels = list(channels)
        self.audit = audit
        self.clock = clock or SystemClock()
        self.throttle = throttle
        self.min_severity = min_severity
        self._last_sent: Dict[str, datetime] = {}

    def is_throttled(self, alert_id: str) -> bool:
        last_sent = self._last_sent.get(alert_id)
        return last_sent is not None and self.clock.now() - last_sent < self.throttle

    def reset_throttle(self, alert_id: Optional[str] = None) -> None:
        if alert_id is None:
            self._last_sent.clear()
        else:
            self._last_sent.pop(alert_id, None)

    def _prune_throttle(self) -> None:
        """Forget alert ids whose throttle window has passed"""
        now = self.clock.now()
        expired = [alert_id for alert_id, sent in self._last_sent.items() if now - sent >= self.throttle]
        for alert_id in expired:
            del self._last_sent[alert_id]

    async def dispatch(self, alert: SecurityAlert, force: bool = False) -> AlertResult:
        """Send through every channel unless the alert id was sent recently"""
        self._prune_throttle()
        if not force and self.is_throttled(alert.id):
            self.logger.debug(f"Alert {alert.id} throttled")
            return AlertResult(throttled=True, message="Alert throttled")

        result = AlertResult()
        for channel in self.channels:
            try:
                await channel.send(alert)
                result.delivered[channel.name] = True
            except Exception as e:
                result.delivered[channel.name] = False
                result.errors[channel.name] = str(e)
                self.logger.error(f"Failed to deliver alert {alert.id} via {channel.name}: {e}")

        if result.success:
            # Only a delivered alert starts a throttle window
            self._last_sent[alert.id] = self.clock.now()
            result.message = "Alert delivered"
        else:
            result.message = "Alert delivery failed" if self.channels else "No alert channels configured"

        await self._audit_dispatch(alert, result, force)
        return result

    async def dispatch_many(
        self,
        alerts: Sequence[SecurityAlert],
        min_severity: Optional[Severity] = None,
        force: bool = False,
    ) -> List[AlertResult]:
        threshold = min_severity or self.min_severity
        return [
            await self.dispatch(alert, force=force)
            for alert in alerts
            if alert.severity.at_least(threshold)
        ]

    async def send_daily_summary(
        self,
        summary: "DashboardSummary",
        alerts: Sequence[SecurityAlert] = (),
    ) -> bool:
        """Email digest of the dashboard; only email channels take part"""
        email_channels = [c for c in self.channels if isinstance(c, EmailChannel)]
        if not email_channels:
            self.logger.warning("Daily summary skipped: no email channel configured")
            return False

        now = self.clock.now()
        html = _templates.get_template("daily_summary.html").render(
            summary=summary,
            alerts=list(alerts)[:10],
            colors=SEVERITY_COLORS,
            date=now.date().isoformat(),
        )
        subject = f"Daily Security Summary - {now.date().isoformat()}"

        errors = []
        for channel in email_channels:
            try:
                await channel.send_html(subject, html)
            except AlertDeliveryError as e:
                errors.append(str(e))

        sent = not errors
        await self._record(AuditEvent(
            action=AuditAction.DAILY_SUMMARY_SENT if sent else AuditAction.DAILY_SUMMARY_FAILED,
            resource="alerting",
            username="system",
            success=sent,
            metadata={"alerts_count": len(alerts), "errors": errors},
        ))
        return sent

    async def aclose(self) -> None:
        for channel in self.channels:
            if isinstance(channel, PushChannel):
                await channel.aclose()

    async def _audit_dispatch(self, alert: SecurityAlert, result: AlertResult, force: bool) -> None:
        # Logged under the alerting resource so the monitor does not turn
        # dispatch records back into alerts
        await self._record(AuditEvent(
            action=AuditAction.SECURITY_ALERT_SENT if result.success else AuditAction.SECURITY_ALERT_FAILED,
            resource="alerting",
            username="system",
            success=result.success,
            metadata={
                "alert_id": alert.id,
                "alert_type": alert.type,
                "alert_severity": alert.severity.value,
                "forced": force,
                "email_sent": result.email_sent,
                "push_sent": result.push_sent,
                "errors": sorted(f"{k}: {v}" for k, v in result.errors.items()),
            },
        ))

    async def _record(self, event: AuditEvent) -> None:
        if self.audit is not None:
            await self.audit.record(event)
