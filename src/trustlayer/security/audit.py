"""
TrustLayer Audit Logging
Append-only security event trail stored in the AuditLogs table.

Writes are best-effort: a store outage is logged but never propagated, so
that audit logging cannot block a login or an alert.
"""

import dataclasses
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from trustlayer.core.clock import Clock, SystemClock, to_iso
from trustlayer.core.logging import LoggerMixin
from trustlayer.security.models import (
    DATA_OPERATIONS, AuditAction, AuditEvent, Metadata, Severity,
)
from trustlayer.store.base import Filter, RecordStore


SECURITY_RESOURCE = "security"


@dataclass
class AuditStatistics:
    """Aggregate view of the audit trail over a period"""
    total_events: int
    failed_logins: int
    successful_logins: int
    data_operations: int
    unique_users: int
    unique_ips: int
    action_counts: Dict[str, int] = field(default_factory=dict)
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class AuditLogger(LoggerMixin):
    """Records and queries AuditEvents"""

    DEFAULT_LIMIT = 100
    STATISTICS_LIMIT = 5000

    def __init__(
        self,
        store: RecordStore,
        clock: Optional[Clock] = None,
        table: str = "AuditLogs",
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.table = table

    async def record(self, event: AuditEvent) -> bool:
        """
        Persist an event. Returns False instead of raising when the store
        cannot be reached; callers carry on regardless.
        """
        if event.timestamp is None:
            event = dataclasses.replace(event, timestamp=self.clock.now())

        self.logger.log(
            self._get_log_level(event),
            f"Audit: {event.action_name} on {event.resource} "
            f"(User: {event.username or 'N/A'}, IP: {event.ip_address or 'N/A'}, "
            f"success={event.success})"
        )

        try:
            await self.store.create(self.table, event.to_fields())
            return True
        except Exception as e:
            # Deliberately best-effort: audit outages must not block callers
            self.log_with_context(
                logging.WARNING,
                f"Failed to record audit event {event.action_name}: {e}",
                {"action": event.action_name, "username": event.username},
            )
            return False

    async def log_auth_event(
        self,
        action: AuditAction,
        username: Optional[str],
        success: bool,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Metadata] = None,
    ) -> bool:
        return await self.record(AuditEvent(
            action=action,
            resource="authentication",
            username=username,
            user_id=user_id,
            success=success,
            ip_address=ip_address,
            device_fingerprint=device_fingerprint,
            user_agent=user_agent,
            metadata=metadata or {},
        ))

    async def log_data_operation(
        self,
        action: AuditAction,
        resource: str,
        username: Optional[str],
        record_id: Optional[int] = None,
        success: bool = True,
        ip_address: Optional[str] = None,
        metadata: Optional[Metadata] = None,
    ) -> bool:
        return await self.record(AuditEvent(
            action=action,
            resource=resource,
            username=username,
            record_id=record_id,
            success=success,
            ip_address=ip_address,
            metadata=metadata or {},
        ))

    async def log_admin_action(
        self,
        action: AuditAction,
        actor: Optional[str],
        target: Optional[str] = None,
        success: bool = True,
        metadata: Optional[Metadata] = None,
    ) -> bool:
        details: Metadata = dict(metadata or {})
        if target:
            details["target"] = target
        return await self.record(AuditEvent(
            action=action,
            resource="administration",
            username=actor,
            success=success,
            metadata=details,
        ))

    async def log_security_event(
        self,
        action: AuditAction,
        severity: Severity,
        description: str,
        username: Optional[str] = None,
        ip_address: Optional[str] = None,
        success: bool = False,
        metadata: Optional[Metadata] = None,
    ) -> bool:
        details: Metadata = dict(metadata or {})
        details["severity"] = severity.value
        details["description"] = description
        return await self.record(AuditEvent(
            action=action,
            resource=SECURITY_RESOURCE,
            username=username,
            ip_address=ip_address,
            success=success,
            metadata=details,
        ))

    async def query(
        self,
        username: Optional[str] = None,
        action: Optional[Union[AuditAction, str]] = None,
        resource: Optional[str] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> List[AuditEvent]:
        """
        Filtered read, newest first. Only the given predicates are sent.
        """
        expression = Filter()
        if username is not None:
            expression.eq("username", username)
        if action is not None:
            expression.eq("action", action)
        if resource is not None:
            expression.eq("resource", resource)
        if success is not None:
            expression.eq("success", success)
        if ip_address is not None:
            expression.eq("ip_address", ip_address)
        if since is not None:
            expression.gte("timestamp", to_iso(since))
        if until is not None:
            expression.lte("timestamp", to_iso(until))

        try:
            records = await self.store.list(
                self.table,
                filter=expression or None,
                sort="-timestamp",
                limit=limit,
            )
        except Exception as e:
            self.logger.warning(f"Audit query failed ({expression!r}): {e}")
            return []

        return [AuditEvent.from_fields(r.fields) for r in records]

    async def failed_login_attempts(
        self,
        username: Optional[str] = None,
        ip_address: Optional[str] = None,
        window: timedelta = timedelta(hours=24),
        limit: int = STATISTICS_LIMIT,
    ) -> List[AuditEvent]:
        return await self.query(
            username=username,
            ip_address=ip_address,
            action=AuditAction.LOGIN_FAILED,
            since=self.clock.now() - window,
            limit=limit,
        )

    async def user_activity(
        self,
        username: str,
        window: timedelta = timedelta(days=7),
        limit: int = DEFAULT_LIMIT,
    ) -> List[AuditEvent]:
        return await self.query(username=username, since=self.clock.now() - window, limit=limit)

    async def events_by_resource(
        self,
        resource: str,
        window: timedelta = timedelta(hours=24),
        limit: int = DEFAULT_LIMIT,
    ) -> List[AuditEvent]:
        return await self.query(resource=resource, since=self.clock.now() - window, limit=limit)

    async def security_events(
        self,
        severity: Optional[Severity] = None,
        window: timedelta = timedelta(hours=24),
        limit: int = DEFAULT_LIMIT,
    ) -> List[AuditEvent]:
        events = await self.events_by_resource(SECURITY_RESOURCE, window=window, limit=limit)
        if severity is None:
            return events
        # Severity lives inside the JSON metadata column, so filter locally
        return [e for e in events if e.severity == severity]

    async def statistics(self, window: timedelta = timedelta(hours=24)) -> AuditStatistics:
        period_end = self.clock.now()
        period_start = period_end - window
        events = await self.query(since=period_start, limit=self.STATISTICS_LIMIT)

        action_counts = Counter(e.action_name for e in events)
        return AuditStatistics(
            total_events=len(events),
            failed_logins=action_counts.get(AuditAction.LOGIN_FAILED.value, 0),
            successful_logins=action_counts.get(AuditAction.LOGIN_SUCCESS.value, 0),
            data_operations=sum(1 for e in events if e.action in DATA_OPERATIONS),
            unique_users=len({e.username for e in events if e.username}),
            unique_ips=len({e.ip_address for e in events if e.ip_address}),
            action_counts=dict(action_counts),
            period_start=period_start,
            period_end=period_end,
        )

    def _get_log_level(self, event: AuditEvent) -> int:
        """Map event severity to a logging level"""
        severity = event.severity
        if severity == Severity.CRITICAL:
            return logging.CRITICAL
        if severity == Severity.HIGH:
            return logging.ERROR
        if severity == Severity.MEDIUM or not event.success:
            return logging.WARNING
        return logging.INFO
