"""
TrustLayer Security Module
"""

from .audit import AuditLogger, AuditStatistics
from .alerts import AlertDispatcher, AlertResult, EmailChannel, PushChannel
from .login import Authenticator, LoginResult, LoginService, Principal
from .mfa import MfaEngine, MfaError, MfaSetupResult, MfaVerification
from .models import AuditAction, AuditEvent, LimitScope, SecurityAlert, Severity
from .monitor import DashboardSummary, SecurityMonitor
from .pinning import CertificatePinner, CertificatePinningError
from .rate_limiter import RateLimiter, RateLimitResult
from .rotation import CredentialRotator, RotationResult
from .session import SessionTimeoutMonitor

__all__ = [
    'AuditLogger',
    'AuditStatistics',
    'AlertDispatcher',
    'AlertResult',
    'EmailChannel',
    'PushChannel',
    'Authenticator',
    'LoginResult',
    'LoginService',
    'Principal',
    'MfaEngine',
    'MfaError',
    'MfaSetupResult',
    'MfaVerification',
    'AuditAction',
    'AuditEvent',
    'LimitScope',
    'SecurityAlert',
    'Severity',
    'DashboardSummary',
    'SecurityMonitor',
    'CertificatePinner',
    'CertificatePinningError',
    'RateLimiter',
    'RateLimitResult',
    'CredentialRotator',
    'RotationResult',
    'SessionTimeoutMonitor',
]
