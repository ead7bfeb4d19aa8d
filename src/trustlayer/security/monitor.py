"""
TrustLayer Security Monitoring
Aggregates audit and rate limit data into dashboard metrics and
SecurityAlerts, optionally refreshing and dispatching on a schedule.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from trustlayer.core.clock import Clock, SystemClock, to_iso
from trustlayer.core.logging import LoggerMixin
from trustlayer.core.scheduler import PeriodicTask
from trustlayer.security.alerts import AlertDispatcher
from trustlayer.security.audit import AuditLogger
from trustlayer.security.models import (
    AuditAction, AuditEvent, LimitScope, SecurityAlert, Severity, sort_alerts,
)
from trustlayer.security.rate_limiter import RateLimiter, RateLimitRecord


@dataclass
class SuspiciousSource:
    """An IP or user whose activity crossed a threshold"""
    kind: str
    identifier: str
    count: int
    severity: Severity
    ips: List[str] = field(default_factory=list)


@dataclass
class FailedLoginMetrics:
    total_attempts: int
    unique_ips: int
    unique_users: int
    top_ips: List[Tuple[str, int]]
    top_users: List[Tuple[str, int]]
    hourly_distribution: Dict[str, int]
    suspicious_ips: List[SuspiciousSource]


@dataclass
class ActiveSession:
    username: str
    last_activity: datetime
    last_action: str
    ip_address: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None


@dataclass
class ActiveSessionMetrics:
    total_active_sessions: int
    sessions: List[ActiveSession]
    suspicious_users: List[SuspiciousSource]


@dataclass
class ApiUsageMetrics:
    total_requests: int
    avg_response_time_ms: float
    top_actions: List[Tuple[str, int]]
    top_users: List[Tuple[str, int]]
    top_ips: List[Tuple[str, int]]
    suspicious: List[SuspiciousSource]


@dataclass
class DashboardSummary:
    failed_login_attempts: int
    active_sessions: int
    api_requests: int
    locked_identifiers: int
    critical_alerts: int
    high_alerts: int
    medium_alerts: int
    low_alerts: int
    total_alerts: int
    generated_at: datetime


class SecurityMonitor(LoggerMixin):
    """Security dashboard metrics and alert derivation"""

    SUSPICIOUS_IP_FAILURES = 10
    HIGH_IP_FAILURES = 20
    CRITICAL_IP_FAILURES = 50
    ACTIVE_WINDOW = timedelta(minutes=5)
    MULTI_IP_THRESHOLD = 3
    USER_REQUEST_LIMIT = 100
    USER_REQUEST_HIGH = 500
    IP_REQUEST_LIMIT = 200
    IP_REQUEST_HIGH = 1000
    TOP_N = 10
    QUERY_LIMIT = 10000

    def __init__(
        self,
        audit: AuditLogger,
        rate_limiter: Optional[RateLimiter] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        clock: Optional[Clock] = None,
        refresh_interval: timedelta = timedelta(minutes=5),
    ):
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.latest_alerts: List[SecurityAlert] = []
        self.latest_summary: Optional[DashboardSummary] = None
        self._refresh_task = PeriodicTask("security-dashboard", refresh_interval, self.refresh)

    async def failed_login_metrics(self, window: timedelta = timedelta(hours=24)) -> FailedLoginMetrics:
        events = await self.audit.failed_login_attempts(window=window, limit=self.QUERY_LIMIT)

        ip_counts: Counter = Counter()
        user_counts: Counter = Counter()
        hourly: Counter = Counter()
        for event in events:
            ip_counts[event.ip_address or "unknown"] += 1
            user_counts[event.username or "unknown"] += 1
            if event.timestamp is not None:
                hourly[f"{event.timestamp.hour}:00"] += 1

        suspicious = [
            SuspiciousSource("ip", ip, count, self._failed_login_severity(count))
            for ip, count in ip_counts.most_common()
            if count >= self.SUSPICIOUS_IP_FAILURES
        ]
        return FailedLoginMetrics(
            total_attempts=len(events),
            unique_ips=len(ip_counts),
            unique_users=len(user_counts),
            top_ips=ip_counts.most_common(self.TOP_N),
            top_users=user_counts.most_common(self.TOP_N),
            hourly_distribution=dict(hourly),
            suspicious_ips=suspicious,
        )

    async def active_session_metrics(self) -> ActiveSessionMetrics:
        now = self.clock.now()
        active_since = now - self.ACTIVE_WINDOW
        logins = await self.audit.query(
            action=AuditAction.LOGIN_SUCCESS,
            since=active_since - timedelta(hours=24),
            limit=1000,
        )
        recent = await self.audit.query(since=active_since, limit=self.QUERY_LIMIT)

        sessions: Dict[str, ActiveSession] = {}
        for event in recent:
            if not event.username or event.timestamp is None:
                continue
            current = sessions.get(event.username)
            if current is None or event.timestamp > current.last_activity:
                sessions[event.username] = ActiveSession(
                    username=event.username,
                    last_activity=event.timestamp,
                    last_action=event.action_name,
                    ip_address=event.ip_address,
                )

        # Logins come newest first, so the first match is the latest login
        for session in sessions.values():
            login = next((e for e in logins if e.username == session.username), None)
            if login is not None:
                session.role = str(login.metadata.get("role") or "user")
                session.email = str(login.metadata.get("email") or "")

        ips_by_user: Dict[str, Set[str]] = defaultdict(set)
        for event in logins:
            if event.ip_address:
                ips_by_user[event.username or "unknown"].add(event.ip_address)

        suspicious = [
            SuspiciousSource("user", username, len(ips), Severity.MEDIUM, sorted(ips))
            for username, ips in ips_by_user.items()
            if len(ips) >= self.MULTI_IP_THRESHOLD
        ]
        return ActiveSessionMetrics(
            total_active_sessions=len(sessions),
            sessions=sorted(sessions.values(), key=lambda s: s.last_activity, reverse=True),
            suspicious_users=suspicious,
        )

    async def api_usage_metrics(self, window: timedelta = timedelta(hours=1)) -> ApiUsageMetrics:
        events = await self.audit.query(since=self.clock.now() - window, limit=self.QUERY_LIMIT)

        action_counts: Counter = Counter()
        user_counts: Counter = Counter()
        ip_counts: Counter = Counter()
        response_times: List[float] = []
        for event in events:
            action_counts[event.action_name] += 1
            user_counts[event.username or "unknown"] += 1
            ip_counts[event.ip_address or "unknown"] += 1
            elapsed = event.metadata.get("response_time_ms")
            if isinstance(elapsed, (int, float)) and not isinstance(elapsed, bool):
                response_times.append(float(elapsed))

        suspicious = [
            SuspiciousSource(
                "user", user, count,
                Severity.HIGH if count > self.USER_REQUEST_HIGH else Severity.MEDIUM,
            )
            for user, count in user_counts.most_common()
            if count > self.USER_REQUEST_LIMIT
        ]
        suspicious += [
            SuspiciousSource(
                "ip", ip, count,
                Severity.HIGH if count > self.IP_REQUEST_HIGH else Severity.MEDIUM,
            )
            for ip, count in ip_counts.most_common()
            if count > self.IP_REQUEST_LIMIT
        ]
        return ApiUsageMetrics(
            total_requests=len(events),
            avg_response_time_ms=sum(response_times) / len(response_times) if response_times else 0.0,
            top_actions=action_counts.most_common(self.TOP_N),
            top_users=user_counts.most_common(self.TOP_N),
            top_ips=ip_counts.most_common(self.TOP_N),
            suspicious=suspicious,
        )

    async def security_alerts(self, window: timedelta = timedelta(hours=24)) -> List[SecurityAlert]:
        failed = await self.failed_login_metrics(window)
        sessions = await self.active_session_metrics()
        api_usage = await self.api_usage_metrics()
        events = await self.audit.security_events(window=window)
        locked = await self._locked()
        return self._build_alerts(failed, sessions, api_usage, events, locked)

    async def dashboard_summary(self) -> DashboardSummary:
        failed = await self.failed_login_metrics()
        sessions = await self.active_session_metrics()
        api_usage = await self.api_usage_metrics()
        events = await self.audit.security_events()
        locked = await self._locked()
        alerts = self._build_alerts(failed, sessions, api_usage, events, locked)

        severities = Counter(a.severity for a in alerts)
        summary = DashboardSummary(
            failed_login_attempts=failed.total_attempts,
            active_sessions=sessions.total_active_sessions,
            api_requests=api_usage.total_requests,
            locked_identifiers=len(locked),
            critical_alerts=severities[Severity.CRITICAL],
            high_alerts=severities[Severity.HIGH],
            medium_alerts=severities[Severity.MEDIUM],
            low_alerts=severities[Severity.LOW],
            total_alerts=len(alerts),
            generated_at=self.clock.now(),
        )
        self.latest_alerts = alerts
        self.latest_summary = summary
        return summary

    async def refresh(self) -> None:
        """Recompute the dashboard and dispatch alerts at or above the threshold"""
        summary = await self.dashboard_summary()
        self.logger.debug(
            f"Dashboard refreshed: {summary.total_alerts} alerts, "
            f"{summary.failed_login_attempts} failed logins"
        )
        if self.dispatcher is not None and self.latest_alerts:
            await self.dispatcher.dispatch_many(self.latest_alerts)

    def start(self) -> None:
        self._refresh_task.start()

    async def stop(self) -> None:
        await self._refresh_task.stop()

    def _build_alerts(
        self,
        failed: FailedLoginMetrics,
        sessions: ActiveSessionMetrics,
        api_usage: ApiUsageMetrics,
        events: List[AuditEvent],
        locked: List[RateLimitRecord],
    ) -> List[SecurityAlert]:
        now = self.clock.now()
        alerts: List[SecurityAlert] = []

        for source in failed.suspicious_ips:
            alerts.append(SecurityAlert(
                id=f"failed_login_{source.identifier}",
                type="brute_force_attempt",
                severity=source.severity,
                title="Brute Force Attack Detected",
                description=f"IP {source.identifier} attempted {source.count} failed logins",
                timestamp=now,
                metadata={"ip": source.identifier, "attempts": source.count},
            ))

        for source in sessions.suspicious_users:
            alerts.append(SecurityAlert(
                id=f"multi_ip_{source.identifier}",
                type="suspicious_activity",
                severity=source.severity,
                title="Multiple IP Addresses Detected",
                description=f"User {source.identifier} accessed from {source.count} different IPs",
                timestamp=now,
                metadata={"username": source.identifier, "ip_count": source.count, "ips": source.ips},
            ))

        for source in api_usage.suspicious:
            label = "User" if source.kind == "user" else "IP"
            alerts.append(SecurityAlert(
                id=f"rate_limit_{source.identifier}",
                type="rate_limit_exceeded",
                severity=source.severity,
                title="Rate Limit Exceeded",
                description=f"{label} {source.identifier} made {source.count} requests in 1 hour",
                timestamp=now,
                metadata={"type": source.kind, "identifier": source.identifier, "request_count": source.count},
            ))

        for record in locked:
            alerts.append(SecurityAlert(
                id=f"account_locked_{record.scope.value}_{record.identifier}",
                type="account_locked",
                severity=Severity.MEDIUM,
                title="Account Locked",
                description=(
                    f"{'IP' if record.scope == LimitScope.IP else 'User'} {record.identifier} locked after "
                    f"{record.failed_attempts} failed attempts"
                ),
                timestamp=now,
                metadata={
                    "identifier": record.identifier,
                    "scope": record.scope.value,
                    "failed_attempts": record.failed_attempts,
                    "locked_until": to_iso(record.locked_until) if record.locked_until else None,
                },
            ))

        for event in events:
            timestamp = event.timestamp or now
            description = str(event.metadata.get("description") or "A security event occurred")
            alerts.append(SecurityAlert(
                id=f"security_event_{event.action_name}_{int(timestamp.timestamp() * 1000)}",
                type=event.action_name.lower(),
                severity=event.severity or Severity.MEDIUM,
                title=description if event.metadata.get("description") else "Security Event",
                description=description,
                timestamp=timestamp,
                metadata=dict(event.metadata),
            ))

        return sort_alerts(alerts)

    async def _locked(self) -> List[RateLimitRecord]:
        if self.rate_limiter is None:
            return []
        return await self.rate_limiter.locked_identifiers()

    def _failed_login_severity(self, count: int) -> Severity:
        if count >= self.CRITICAL_IP_FAILURES:
            return Severity.CRITICAL
        if count >= self.HIGH_IP_FAILURES:
            return Severity.HIGH
        return Severity.MEDIUM
