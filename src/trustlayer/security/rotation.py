"""
TrustLayer API Key Rotation
Rotates the long-lived store API key on a schedule, keeping the previous key
valid for a grace period so that in-flight clients keep working.

All schedule decisions are derived from the persisted RotationState, so a
restarted process picks up exactly where the previous one stopped.
"""

import asyncio
import dataclasses
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from trustlayer.core.clock import Clock, SystemClock, parse_iso, to_iso
from trustlayer.core.encryption import EncryptionError, SecureStorage
from trustlayer.core.logging import LoggerMixin
from trustlayer.core.scheduler import PeriodicTask
from trustlayer.security.audit import AuditLogger
from trustlayer.security.models import AuditAction, Severity
from trustlayer.store.base import RecordStore, StoreError


class KeyHealth(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass
class RotationState:
    """Current key plus at most one previous key still inside its grace period"""
    current_key: str
    current_expiry: Optional[datetime] = None
    previous_key: Optional[str] = None
    previous_expiry: Optional[datetime] = None
    rotated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_key": self.current_key,
            "current_expiry": to_iso(self.current_expiry) if self.current_expiry else None,
            "previous_key": self.previous_key,
            "previous_expiry": to_iso(self.previous_expiry) if self.previous_expiry else None,
            "rotated_at": to_iso(self.rotated_at) if self.rotated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RotationState":
        return cls(
            current_key=data["current_key"],
            current_expiry=parse_iso(data.get("current_expiry")),
            previous_key=data.get("previous_key"),
            previous_expiry=parse_iso(data.get("previous_expiry")),
            rotated_at=parse_iso(data.get("rotated_at")),
        )


@dataclass
class RotationResult:
    success: bool
    message: str
    new_key: Optional[str] = None
    expires_at: Optional[datetime] = None
    skipped: bool = False


@dataclass
class RotationStatus:
    status: KeyHealth
    expires_at: Optional[datetime]
    days_until_expiry: Optional[int]
    grace_active: bool


class CredentialRotator(LoggerMixin):
    """Scheduled API key rotation with an overlapping grace period"""

    STATE_KEY = "credential_rotation_state"

    def __init__(
        self,
        store: RecordStore,
        storage: SecureStorage,
        initial_key: str,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        rotation_interval: timedelta = timedelta(days=90),
        grace_period: timedelta = timedelta(hours=24),
        expiry_warning: timedelta = timedelta(days=7),
        check_interval: timedelta = timedelta(hours=24),
        key_prefix: str = "grist",
        table: str = "APIKeys",
    ):
        self.store = store
        self.storage = storage
        self.initial_key = initial_key
        self.audit = audit
        self.clock = clock or SystemClock()
        self.rotation_interval = rotation_interval
        self.grace_period = grace_period
        self.expiry_warning = expiry_warning
        self.key_prefix = key_prefix
        self.table = table

        self._state: Optional[RotationState] = None
        self._schedule = PeriodicTask("credential-rotation", check_interval, self.run_scheduled_check)
        self._purge_task: Optional[asyncio.Task] = None

    @property
    def current_key(self) -> str:
        """Key to authenticate with; the cached state wins over the bootstrap key"""
        return self._state.current_key if self._state else self.initial_key

    def generate_api_key(self) -> str:
        return f"{self.key_prefix}_{uuid.uuid4().hex}{secrets.token_hex(4)}"

    async def load_state(self) -> RotationState:
        if self._state is None:
            stored = await self.storage.read(self.STATE_KEY)
            self._state = (
                RotationState.from_dict(stored) if stored
                else RotationState(current_key=self.initial_key)
            )
        return self._state

    async def check_rotation_needed(self) -> bool:
        """True once we are inside the warning period before expiry"""
        state = await self.load_state()
        now = self.clock.now()

        if state.current_expiry is None:
            state = dataclasses.replace(state, current_expiry=now + self.rotation_interval)
            await self._save(state)
            self.logger.info(f"API key expiry initialized to {to_iso(state.current_expiry)}")
            await self._audit_admin(
                AuditAction.API_KEY_EXPIRY_INITIALIZED,
                None,
                {"expires_at": to_iso(state.current_expiry)},
            )
            return False

        return now >= state.current_expiry - self.expiry_warning

    async def rotate(self, force: bool = False, actor: Optional[str] = None) -> RotationResult:
        """
        Register a new key with the backend, then switch to it locally.
        Nothing local changes unless the backend accepted the new key.
        """
        try:
            state = await self.load_state()
            if not force and not await self.check_rotation_needed():
                return RotationResult(success=False, message="Rotation not needed yet", skipped=True)
        except EncryptionError as e:
            return await self._rotation_failed(f"Cannot read rotation state: {e}", actor)

        now = self.clock.now()
        new_key = self.generate_api_key()
        new_expiry = now + self.rotation_interval

        try:
            await self.store.create(self.table, {
                "key": new_key,
                "created_at": to_iso(now),
                "expires_at": to_iso(new_expiry),
                "status": "active",
            })
        except StoreError as e:
            return await self._rotation_failed(f"Failed to register new API key: {e}", actor)

        new_state = RotationState(
            current_key=new_key,
            current_expiry=new_expiry,
            previous_key=state.current_key,
            previous_expiry=now + self.grace_period,
            rotated_at=now,
        )
        try:
            await self._save(new_state)
        except EncryptionError as e:
            # The backend knows both keys, the old one stays in use
            return await self._rotation_failed(f"Failed to persist new API key: {e}", actor)

        self._schedule_purge()
        self.logger.info(f"API key rotated, new key expires {to_iso(new_expiry)}")
        await self._audit_admin(AuditAction.API_KEY_ROTATED, actor, {
            "forced": force,
            "expires_at": to_iso(new_expiry),
            "grace_period_hours": int(self.grace_period.total_seconds() // 3600),
        })
        return RotationResult(
            success=True,
            message="API key rotated successfully",
            new_key=new_key,
            expires_at=new_expiry,
        )

    async def is_key_valid(self, key: str) -> bool:
        """Current key, or the previous key while its grace period lasts"""
        state = await self.load_state()
        if hmac.compare_digest(key, state.current_key):
            return True
        return (
            state.previous_key is not None
            and state.previous_expiry is not None
            and self.clock.now() < state.previous_expiry
            and hmac.compare_digest(key, state.previous_key)
        )

    async def purge_expired_previous(self) -> bool:
        """Drop the previous key once its grace period has elapsed"""
        state = await self.load_state()
        if state.previous_key is None:
            return False
        if state.previous_expiry is not None and self.clock.now() < state.previous_expiry:
            return False

        await self._save(dataclasses.replace(state, previous_key=None, previous_expiry=None))
        self.logger.info("Previous API key purged after grace period")
        await self._audit_admin(AuditAction.API_KEY_GRACE_PERIOD_EXPIRED, None, {
            "grace_period_hours": int(self.grace_period.total_seconds() // 3600),
        })
        return True

    async def status(self) -> RotationStatus:
        state = await self.load_state()
        now = self.clock.now()
        grace_active = (
            state.previous_key is not None
            and state.previous_expiry is not None
            and now < state.previous_expiry
        )

        if state.current_expiry is None:
            return RotationStatus(KeyHealth.UNKNOWN, None, None, grace_active)

        remaining = state.current_expiry - now
        days = int(remaining.total_seconds() // 86400)
        if remaining <= timedelta(0):
            health = KeyHealth.EXPIRED
        elif remaining < self.expiry_warning:
            health = KeyHealth.EXPIRING_SOON
        else:
            health = KeyHealth.VALID
        return RotationStatus(health, state.current_expiry, days, grace_active)

    async def run_scheduled_check(self) -> None:
        """One tick of the background schedule"""
        await self.purge_expired_previous()
        if await self.check_rotation_needed():
            result = await self.rotate(force=False)
            if not result.success:
                self.logger.error(f"Scheduled rotation failed: {result.message}")

    async def start(self) -> None:
        await self.load_state()
        self._schedule.start()
        self._schedule_purge()

    async def stop(self) -> None:
        await self._schedule.stop()
        if self._purge_task is not None:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
            self._purge_task = None

    def _schedule_purge(self) -> None:
        state = self._state
        if state is None or state.previous_expiry is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return

        if self._purge_task is not None:
            self._purge_task.cancel()
        delay = max((state.previous_expiry - self.clock.now()).total_seconds(), 0)
        self._purge_task = asyncio.create_task(self._purge_after(delay))

    async def _purge_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.purge_expired_previous()
        except EncryptionError as e:
            self.logger.error(f"Grace period purge failed: {e}")

    async def _save(self, state: RotationState) -> None:
        await self.storage.write(self.STATE_KEY, state.to_dict())
        self._state = state

    async def _rotation_failed(self, message: str, actor: Optional[str]) -> RotationResult:
        self.logger.error(message)
        if self.audit is not None:
            await self.audit.log_security_event(
                AuditAction.API_KEY_ROTATION_FAILED,
                Severity.HIGH,
                message,
                username=actor or "system",
            )
        return RotationResult(success=False, message=message)

    async def _audit_admin(self, action: AuditAction, actor: Optional[str], metadata: dict) -> None:
        if self.audit is None:
            return
        await self.audit.log_admin_action(action, actor=actor or "system", target="api_keys", metadata=metadata)
