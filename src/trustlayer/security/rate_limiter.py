"""
TrustLayer Rate Limiting
Failed-login lockout per identifier and scope, plus a fixed-window API
request counter, both persisted in the remote store.

Availability over strictness: when the store cannot be reached every check
fails OPEN (the attempt is allowed) and the degradation is logged. A store
outage must never turn into a login outage.

Known limitation: counters are read-then-write without a transaction, so two
concurrent failures for the same identifier may both increment the same
stale value (last writer wins). The Grist records API offers no atomic
increment to avoid this.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from trustlayer.core.clock import Clock, SystemClock, parse_iso, to_iso
from trustlayer.core.logging import LoggerMixin
from trustlayer.security.audit import AuditLogger
from trustlayer.security.models import AuditAction, LimitScope, Metadata, Severity
from trustlayer.store.base import Filter, Record, RecordStore, StoreError


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit decision"""
    allowed: bool
    remaining_attempts: int
    locked_until: Optional[datetime] = None
    reason: Optional[str] = None
    degraded: bool = False

    @property
    def locked(self) -> bool:
        return not self.allowed and self.locked_until is not None

    @property
    def message(self) -> str:
        if self.reason:
            return self.reason
        suffix = "" if self.remaining_attempts == 1 else "s"
        return f"{self.remaining_attempts} attempt{suffix} remaining"


@dataclass(frozen=True)
class RateLimitRecord:
    """Failed-attempt state of one identifier in one scope"""
    id: int
    identifier: str
    scope: LimitScope
    failed_attempts: int
    last_failed_at: Optional[datetime]
    locked_until: Optional[datetime]

    @classmethod
    def from_record(cls, record: Record) -> "RateLimitRecord":
        return cls(
            id=record.id,
            identifier=record.get("identifier", ""),
            scope=LimitScope.IP if record.get("is_ip_based") else LimitScope.USERNAME,
            failed_attempts=int(record.get("failed_attempts") or 0),
            last_failed_at=parse_iso(record.get("last_failed_at")),
            locked_until=parse_iso(record.get("locked_until")),
        )


class RateLimiter(LoggerMixin):
    """Brute force protection backed by the RateLimits tables"""

    def __init__(
        self,
        store: RecordStore,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        max_failed_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        api_window: timedelta = timedelta(minutes=1),
        max_requests_per_window: int = 100,
        table: str = "RateLimits",
        api_table: str = "RateLimits_API",
    ):
        self.store = store
        self.audit = audit
        self.clock = clock or SystemClock()
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = lockout_duration
        self.api_window = api_window
        self.max_requests_per_window = max_requests_per_window
        self.table = table
        self.api_table = api_table

    async def check_login(
        self,
        identifier: str,
        scope: LimitScope = LimitScope.USERNAME,
    ) -> RateLimitResult:
        """Decide whether a login attempt for identifier may proceed"""
        try:
            now = self.clock.now()
            record = await self._get_record(identifier, scope)
            if record is None:
                return RateLimitResult(allowed=True, remaining_attempts=self.max_failed_attempts)

            if record.locked_until is not None and now < record.locked_until:
                return RateLimitResult(
                    allowed=False,
                    remaining_attempts=0,
                    locked_until=record.locked_until,
                    reason=self._locked_reason(scope),
                )

            window_start = now - self.lockout_duration
            if record.last_failed_at is not None and record.last_failed_at > window_start:
                if record.failed_attempts >= self.max_failed_attempts:
                    locked_until = now + self.lockout_duration
                    await self._lock(record, locked_until)
                    return RateLimitResult(
                        allowed=False,
                        remaining_attempts=0,
                        locked_until=locked_until,
                        reason=self._lock_applied_reason(scope),
                    )
                return RateLimitResult(
                    allowed=True,
                    remaining_attempts=self.max_failed_attempts - record.failed_attempts,
                )

            # Window expired: start counting afresh
            if record.failed_attempts or record.locked_until is not None:
                await self._reset(record)
            return RateLimitResult(allowed=True, remaining_attempts=self.max_failed_attempts)

        except StoreError as e:
            return self._fail_open("check_login", identifier, e, self.max_failed_attempts)

    async def record_failure(
        self,
        identifier: str,
        scope: LimitScope = LimitScope.USERNAME,
        metadata: Optional[Metadata] = None,
    ) -> RateLimitResult:
        """Count a failed attempt and lock once the threshold is reached"""
        try:
            now = self.clock.now()
            record = await self._get_record(identifier, scope)
            encoded = json.dumps(metadata) if metadata else ""

            if record is None:
                attempts = 1
                record_id = await self.store.create(self.table, {
                    "identifier": identifier,
                    "is_ip_based": scope == LimitScope.IP,
                    "failed_attempts": attempts,
                    "last_failed_at": to_iso(now),
                    "locked_until": "",
                    "metadata": encoded,
                })
            else:
                window_start = now - self.lockout_duration
                in_window = record.last_failed_at is not None and record.last_failed_at > window_start
                attempts = record.failed_attempts + 1 if in_window else 1
                record_id = record.id
                await self.store.update(self.table, record_id, {
                    "failed_attempts": attempts,
                    "last_failed_at": to_iso(now),
                    "metadata": encoded,
                })

            if attempts >= self.max_failed_attempts:
                locked_until = now + self.lockout_duration
                await self.store.update(self.table, record_id, {"locked_until": to_iso(locked_until)})
                await self._audit_lock(identifier, scope, attempts, locked_until)
                return RateLimitResult(
                    allowed=False,
                    remaining_attempts=0,
                    locked_until=locked_until,
                    reason=self._lock_applied_reason(scope),
                )

            return RateLimitResult(
                allowed=True,
                remaining_attempts=self.max_failed_attempts - attempts,
            )

        except StoreError as e:
            return self._fail_open("record_failure", identifier, e, self.max_failed_attempts)

    async def record_success(
        self,
        identifier: str,
        scope: LimitScope = LimitScope.USERNAME,
    ) -> None:
        """Reset the counter and clear any lock"""
        try:
            record = await self._get_record(identifier, scope)
            if record is not None and (record.failed_attempts or record.locked_until is not None):
                await self._reset(record)
        except StoreError as e:
            self._fail_open("record_success", identifier, e, self.max_failed_attempts)

    async def unlock(
        self,
        identifier: str,
        scope: LimitScope = LimitScope.USERNAME,
        actor: Optional[str] = None,
    ) -> bool:
        """Administrative override; returns False when nothing was unlocked"""
        try:
            record = await self._get_record(identifier, scope)
            if record is None:
                return False
            await self._reset(record)
        except StoreError as e:
            self.logger.error(f"Failed to unlock {scope.value} '{identifier}': {e}")
            return False

        self.logger.info(f"{scope.value} '{identifier}' unlocked by {actor or 'system'}")
        if self.audit is not None:
            await self.audit.log_admin_action(
                AuditAction.ACCOUNT_UNLOCKED,
                actor=actor,
                target=identifier,
                metadata={"scope": scope.value, "previous_attempts": record.failed_attempts},
            )
        return True

    async def locked_identifiers(self) -> List[RateLimitRecord]:
        """Records whose lock is still active"""
        now = self.clock.now()
        try:
            records = await self.store.list(
                self.table, filter=Filter().gte("locked_until", to_iso(now))
            )
        except StoreError as e:
            self.logger.warning(f"Could not list locked identifiers: {e}")
            return []
        return [
            r for r in map(RateLimitRecord.from_record, records)
            if r.locked_until is not None and r.locked_until > now
        ]

    async def check_api_rate(self, identifier: str) -> RateLimitResult:
        """Fixed-window API request limit"""
        try:
            now = self.clock.now()
            record = await self._get_api_record(identifier)
            count = self._current_window_count(record, now)
            if count >= self.max_requests_per_window:
                return RateLimitResult(
                    allowed=False,
                    remaining_attempts=0,
                    reason=(
                        f"Rate limit exceeded. Maximum {self.max_requests_per_window} requests "
                        f"per {int(self.api_window.total_seconds())} seconds"
                    ),
                )
            return RateLimitResult(
                allowed=True,
                remaining_attempts=self.max_requests_per_window - count,
            )
        except StoreError as e:
            return self._fail_open("check_api_rate", identifier, e, self.max_requests_per_window)

    async def record_api_request(self, identifier: str, endpoint: Optional[str] = None) -> None:
        """Count a request in the current window, superseding an expired one"""
        try:
            now = self.clock.now()
            record = await self._get_api_record(identifier)
            metadata = endpoint or ""

            if record is None:
                await self.store.create(self.api_table, {
                    "identifier": identifier,
                    "request_count": 1,
                    "window_start": to_iso(now),
                    "metadata": metadata,
                })
                return

            if self._window_expired(record, now):
                await self.store.update(self.api_table, record.id, {
                    "request_count": 1,
                    "window_start": to_iso(now),
                    "metadata": metadata,
                })
                return

            count = int(record.get("request_count") or 0) + 1
            await self.store.update(self.api_table, record.id, {
                "request_count": count,
                "metadata": metadata,
            })
            if count == self.max_requests_per_window and self.audit is not None:
                await self.audit.log_security_event(
                    AuditAction.RATE_LIMIT_EXCEEDED,
                    Severity.LOW,
                    f"API rate limit reached for {identifier}",
                    username=identifier,
                    metadata={"request_count": count, "endpoint": endpoint},
                )
        except StoreError as e:
            self._fail_open("record_api_request", identifier, e, self.max_requests_per_window)

    async def _get_record(self, identifier: str, scope: LimitScope) -> Optional[RateLimitRecord]:
        record = await self.store.first(
            self.table,
            Filter().eq("identifier", identifier).eq("is_ip_based", scope == LimitScope.IP),
        )
        return RateLimitRecord.from_record(record) if record else None

    async def _get_api_record(self, identifier: str) -> Optional[Record]:
        return await self.store.first(self.api_table, Filter().eq("identifier", identifier))

    def _window_expired(self, record: Record, now: datetime) -> bool:
        window_start = parse_iso(record.get("window_start"))
        return window_start is None or now - window_start >= self.api_window

    def _current_window_count(self, record: Optional[Record], now: datetime) -> int:
        if record is None or self._window_expired(record, now):
            return 0
        return int(record.get("request_count") or 0)

    async def _lock(self, record: RateLimitRecord, locked_until: datetime) -> None:
        await self.store.update(self.table, record.id, {"locked_until": to_iso(locked_until)})
        await self._audit_lock(record.identifier, record.scope, record.failed_attempts, locked_until)

    async def _reset(self, record: RateLimitRecord) -> None:
        await self.store.update(self.table, record.id, {
            "failed_attempts": 0,
            "locked_until": "",
        })

    async def _audit_lock(
        self,
        identifier: str,
        scope: LimitScope,
        attempts: int,
        locked_until: datetime,
    ) -> None:
        self.logger.warning(
            f"{scope.value} '{identifier}' locked until {to_iso(locked_until)} "
            f"after {attempts} failed attempts"
        )
        if self.audit is None:
            return
        await self.audit.log_security_event(
            AuditAction.ACCOUNT_LOCKED,
            Severity.MEDIUM,
            f"{scope.value} locked after {attempts} failed attempts",
            username=identifier if scope == LimitScope.USERNAME else None,
            ip_address=identifier if scope == LimitScope.IP else None,
            metadata={
                "scope": scope.value,
                "failed_attempts": attempts,
                "locked_until": to_iso(locked_until),
            },
        )

    def _fail_open(self, operation: str, identifier: str, error: Exception, remaining: int) -> RateLimitResult:
        # Deliberate: store outages allow the attempt instead of locking everyone out
        self.logger.warning(f"Rate limiter {operation} failed open for '{identifier}': {error}")
        return RateLimitResult(allowed=True, remaining_attempts=remaining, degraded=True)

    def _locked_reason(self, scope: LimitScope) -> str:
        if scope == LimitScope.IP:
            return "IP address temporarily blocked due to too many failed attempts"
        return "Account temporarily locked due to too many failed attempts"

    def _lock_applied_reason(self, scope: LimitScope) -> str:
        minutes = int(self.lockout_duration.total_seconds() // 60)
        if scope == LimitScope.IP:
            return f"IP address has been blocked for {minutes} minutes"
        return f"Account has been locked for {minutes} minutes"
