"""
TrustLayer Login Flow
Ties rate limiting, authentication, the optional MFA step, session
persistence and audit logging together for a single login attempt.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from trustlayer.core.encryption import SecureStorage
from trustlayer.core.logging import LoggerMixin
from trustlayer.security.audit import AuditLogger
from trustlayer.security.mfa import MfaEngine
from trustlayer.security.models import AuditAction, LimitScope
from trustlayer.security.rate_limiter import RateLimiter, RateLimitResult
from trustlayer.security.session import SessionTimeoutMonitor


USER_EMAIL_KEY = "user_email"
USER_ROLE_KEY = "user_role"

INVALID_CREDENTIALS = "Invalid credentials"
INACTIVE_ACCOUNT = "Account is inactive"
INVALID_MFA_CODE = "Invalid code"
MFA_REQUIRED = "MFA code required"
AUTHENTICATOR_ERROR = "Authenticator unavailable"


@dataclass
class Principal:
    """An authenticated user as returned by the Authenticator"""
    identifier: str
    email: Optional[str] = None
    role: str = "user"
    active: bool = True
    attributes: Dict[str, Any] = field(default_factory=dict)


class Authenticator(Protocol):
    """Verifies credentials against the user directory"""

    async def authenticate(self, identifier: str, secret: str) -> Optional[Principal]:
        ...


@dataclass
class LoginResult:
    success: bool
    principal: Optional[Principal] = None
    error: Optional[str] = None
    remaining_attempts: Optional[int] = None
    locked: bool = False
    locked_until: Optional[datetime] = None
    mfa_required: bool = False


class LoginService(LoggerMixin):
    """Single entry point for interactive logins"""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        authenticator: Authenticator,
        sessions: SessionTimeoutMonitor,
        mfa: Optional[MfaEngine] = None,
    ):
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.authenticator = authenticator
        self.sessions = sessions
        self.mfa = mfa
        self.current: Optional[Principal] = None

    @property
    def storage(self) -> SecureStorage:
        return self.sessions.storage

    async def login(
        self,
        identifier: str,
        secret: str,
        ip_address: Optional[str] = None,
        mfa_code: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        denied = await self._check_limits(identifier, ip_address)
        if denied is not None:
            await self.audit.log_auth_event(
                AuditAction.LOGIN_FAILED,
                username=identifier,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": "rate_limit_exceeded"},
            )
            return LoginResult(
                success=False,
                error=denied.message,
                remaining_attempts=denied.remaining_attempts,
                locked=denied.locked,
                locked_until=denied.locked_until,
            )

        try:
            principal = await self.authenticator.authenticate(identifier, secret)
        except Exception as e:
            # Authenticator outages count as failures and look like bad credentials
            self.logger.error(f"Authenticator error for {identifier}: {e}")
            return await self._fail(
                identifier, ip_address, user_agent, INVALID_CREDENTIALS, audit_reason=AUTHENTICATOR_ERROR
            )

        if principal is None:
            return await self._fail(identifier, ip_address, user_agent, INVALID_CREDENTIALS)
        if not principal.active:
            return await self._fail(identifier, ip_address, user_agent, INACTIVE_ACCOUNT)

        if self.mfa is not None and await self.mfa.is_enabled(principal.identifier):
            if not mfa_code:
                # Not an attempt yet: the caller must prompt for the second factor
                return LoginResult(success=False, error=MFA_REQUIRED, mfa_required=True)
            if self.mfa.is_recovery_code(mfa_code):
                verification = await self.mfa.verify_recovery_code(principal.identifier, mfa_code)
            else:
                verification = await self.mfa.verify(principal.identifier, mfa_code)
            if not verification.succeeded:
                return await self._fail(identifier, ip_address, user_agent, INVALID_MFA_CODE)

        await self.rate_limiter.record_success(identifier, LimitScope.USERNAME)
        if ip_address:
            await self.rate_limiter.record_success(ip_address, LimitScope.IP)

        await self.storage.write(USER_EMAIL_KEY, principal.email or principal.identifier)
        await self.storage.write(USER_ROLE_KEY, principal.role)
        await self.sessions.record_activity()
        self.current = principal

        await self.audit.log_auth_event(
            AuditAction.LOGIN_SUCCESS,
            username=identifier,
            success=True,
            ip_address=ip_address,
            user_id=principal.email or principal.identifier,
            user_agent=user_agent,
            metadata={"role": principal.role, "email": principal.email or ""},
        )
        self.logger.info(f"User logged in: {identifier}")
        return LoginResult(success=True, principal=principal)

    async def logout(
        self,
        username: Optional[str] = None,
        reason: str = "user_logout",
        ip_address: Optional[str] = None,
    ) -> None:
        timed_out = reason == "timed_out"
        if username is None:
            username = await self.storage.read(USER_EMAIL_KEY) or "unknown"

        await self.storage.delete(USER_EMAIL_KEY)
        await self.storage.delete(USER_ROLE_KEY)
        await self.sessions.clear()
        self.current = None

        await self.audit.log_auth_event(
            AuditAction.SESSION_TIMEOUT if timed_out else AuditAction.LOGOUT,
            username=username,
            success=True,
            ip_address=ip_address,
            metadata={"reason": reason, "timed_out": timed_out},
        )
        self.logger.info(f"User logged out: {username} ({reason})")

    async def expire_session(self) -> None:
        """Timeout callback for SessionTimeoutMonitor"""
        await self.logout(reason="timed_out")

    async def _check_limits(self, identifier: str, ip_address: Optional[str]) -> Optional[RateLimitResult]:
        result = await self.rate_limiter.check_login(identifier, LimitScope.USERNAME)
        if not result.allowed:
            return result
        if ip_address:
            result = await self.rate_limiter.check_login(ip_address, LimitScope.IP)
            if not result.allowed:
                return result
        return None

    async def _fail(
        self,
        identifier: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        reason: str,
        audit_reason: Optional[str] = None,
    ) -> LoginResult:
        audit_reason = audit_reason or reason
        result = await self.rate_limiter.record_failure(
            identifier, LimitScope.USERNAME, metadata={"reason": audit_reason}
        )
        if ip_address:
            ip_result = await self.rate_limiter.record_failure(
                ip_address, LimitScope.IP, metadata={"reason": audit_reason}
            )
            if ip_result.locked and not result.locked:
                result = ip_result

        await self.audit.log_auth_event(
            AuditAction.LOGIN_FAILED,
            username=identifier,
            success=False,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"reason": audit_reason, "remaining_attempts": result.remaining_attempts},
        )
        return LoginResult(
            success=False,
            error=reason if result.allowed else result.message,
            remaining_attempts=result.remaining_attempts,
            locked=result.locked,
            locked_until=result.locked_until,
        )
