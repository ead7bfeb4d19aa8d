"""
TrustLayer Service Composition
Builds every security component from Settings and wires them together.
Components never look each other up; this module is the only place that
knows how they connect.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from trustlayer.core.clock import Clock, SystemClock
from trustlayer.core.config import ConfigurationError, Settings, get_settings
from trustlayer.core.encryption import SecureStorage, VaultManager
from trustlayer.core.logging import get_logger
from trustlayer.security.alerts import (
    AlertChannel, AlertDispatcher, EmailChannel, EmailConfig, PushChannel,
)
from trustlayer.security.audit import AuditLogger
from trustlayer.security.login import Authenticator, LoginService
from trustlayer.security.mfa import MfaEngine
from trustlayer.security.models import Severity
from trustlayer.security.monitor import SecurityMonitor
from trustlayer.security.pinning import CertificatePinner
from trustlayer.security.rate_limiter import RateLimiter
from trustlayer.security.rotation import CredentialRotator
from trustlayer.security.session import SessionTimeoutMonitor
from trustlayer.store.base import RecordStore
from trustlayer.store.grist import GristRecordStore

logger = get_logger(__name__)


@dataclass
class SecurityLayer:
    """All security components sharing one store, clock and secure storage"""
    settings: Settings
    clock: Clock
    store: RecordStore
    storage: SecureStorage
    audit: AuditLogger
    rate_limiter: RateLimiter
    mfa: MfaEngine
    rotator: CredentialRotator
    pinner: Optional[CertificatePinner]
    dispatcher: AlertDispatcher
    monitor: SecurityMonitor
    sessions: SessionTimeoutMonitor
    login: Optional[LoginService] = None

    async def start(self) -> None:
        """Start background schedules: key rotation, dashboard refresh, session timeout"""
        await self.rotator.start()
        self.monitor.start()
        self.sessions.start()
        logger.info("Security layer started")

    async def aclose(self) -> None:
        await self.sessions.stop()
        await self.monitor.stop()
        await self.rotator.stop()
        await self.dispatcher.aclose()
        await self.store.aclose()
        logger.info("Security layer stopped")


def build_channels(settings: Settings) -> List[AlertChannel]:
    channels: List[AlertChannel] = []
    if settings.SMTP_HOST and settings.ALERT_EMAIL_RECIPIENTS:
        channels.append(EmailChannel(
            EmailConfig(
                smtp_host=settings.SMTP_HOST,
                smtp_port=settings.SMTP_PORT,
                username=settings.SMTP_USER,
                password=settings.SMTP_PASSWORD,
                use_tls=settings.SMTP_TLS,
                from_email=settings.EMAILS_FROM_EMAIL,
                from_name=settings.EMAILS_FROM_NAME,
            ),
            settings.ALERT_EMAIL_RECIPIENTS,
        ))
    else:
        logger.warning("Email alerts disabled: SMTP host or recipients not configured")

    if settings.FCM_SERVER_KEY:
        channels.append(PushChannel(
            settings.FCM_SERVER_KEY,
            settings.PUSH_DEVICE_TOKENS,
            endpoint=settings.FCM_ENDPOINT,
        ))
    return channels


def build_pinner(settings: Settings) -> Optional[CertificatePinner]:
    if not settings.PINNED_HOSTNAME:
        if settings.is_production:
            raise ConfigurationError("TRUSTLAYER_PINNED_HOSTNAME is required in production")
        return None
    return CertificatePinner(
        settings.PINNED_HOSTNAME,
        settings.PINNED_FINGERPRINTS,
        allow_all=settings.ALLOW_INSECURE_CERTIFICATES,
        require_ca=settings.PINNING_REQUIRE_CA,
    )


def build_security_layer(
    settings: Optional[Settings] = None,
    store: Optional[RecordStore] = None,
    clock: Optional[Clock] = None,
    authenticator: Optional[Authenticator] = None,
    storage: Optional[SecureStorage] = None,
    channels: Optional[List[AlertChannel]] = None,
) -> SecurityLayer:
    """
    Compose the security layer. A store, storage or channel list passed in
    replaces the one that would be built from settings.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()

    if storage is None:
        storage = SecureStorage(VaultManager.from_settings(settings), settings.SECURE_STORE_PATH)

    rotator: Optional[CredentialRotator] = None
    pinner: Optional[CertificatePinner] = None
    if store is None:
        settings.validate_for_startup()
        pinner = build_pinner(settings)
        # Resolved per request so a rotated key takes effect immediately
        store = GristRecordStore(
            settings.STORE_BASE_URL,
            settings.STORE_DOC_ID,
            api_key=lambda: rotator.current_key if rotator else settings.STORE_API_KEY,
            timeout=settings.STORE_TIMEOUT,
            pinner=pinner,
        )

    audit = AuditLogger(store, clock=clock, table=settings.AUDIT_TABLE)
    if pinner is not None:
        pinner.audit = audit

    rate_limiter = RateLimiter(
        store,
        audit=audit,
        clock=clock,
        max_failed_attempts=settings.MAX_FAILED_ATTEMPTS,
        lockout_duration=timedelta(minutes=settings.LOCKOUT_DURATION_MINUTES),
        api_window=timedelta(seconds=settings.API_RATE_WINDOW_SECONDS),
        max_requests_per_window=settings.API_RATE_LIMIT,
        table=settings.RATE_LIMIT_TABLE,
        api_table=settings.API_RATE_LIMIT_TABLE,
    )

    mfa = MfaEngine(
        storage,
        audit=audit,
        clock=clock,
        issuer=settings.MFA_ISSUER,
        recovery_code_count=settings.RECOVERY_CODE_COUNT,
        bcrypt_rounds=settings.RECOVERY_CODE_BCRYPT_ROUNDS,
    )

    rotator = CredentialRotator(
        store,
        storage,
        initial_key=settings.STORE_API_KEY or "",
        audit=audit,
        clock=clock,
        rotation_interval=timedelta(days=settings.KEY_ROTATION_INTERVAL_DAYS),
        grace_period=timedelta(hours=settings.KEY_GRACE_PERIOD_HOURS),
        expiry_warning=timedelta(days=settings.KEY_EXPIRY_WARNING_DAYS),
        check_interval=timedelta(hours=settings.KEY_ROTATION_CHECK_HOURS),
        key_prefix=settings.API_KEY_PREFIX,
        table=settings.API_KEY_TABLE,
    )

    min_severity = Severity(settings.ALERT_SEVERITY_THRESHOLD)
    dispatcher = AlertDispatcher(
        build_channels(settings) if channels is None else channels,
        audit=audit,
        clock=clock,
        throttle=timedelta(minutes=settings.ALERT_THROTTLE_MINUTES),
        min_severity=min_severity,
    )
    monitor = SecurityMonitor(
        audit,
        rate_limiter=rate_limiter,
        dispatcher=dispatcher,
        clock=clock,
        refresh_interval=timedelta(seconds=settings.DASHBOARD_REFRESH_SECONDS),
    )

    sessions = SessionTimeoutMonitor(
        storage,
        clock=clock,
        timeout=timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES),
        check_interval=timedelta(seconds=settings.SESSION_CHECK_SECONDS),
    )
    login = None
    if authenticator is not None:
        login = LoginService(rate_limiter, audit, authenticator, sessions, mfa=mfa)
        sessions.on_timeout = login.expire_session

    return SecurityLayer(
        settings=settings,
        clock=clock,
        store=store,
        storage=storage,
        audit=audit,
        rate_limiter=rate_limiter,
        mfa=mfa,
        rotator=rotator,
        pinner=pinner,
        dispatcher=dispatcher,
        monitor=monitor,
        sessions=sessions,
        login=login,
    )
