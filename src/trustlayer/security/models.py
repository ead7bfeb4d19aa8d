"""
TrustLayer Security Models
Shared enums and the audit event record.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from trustlayer.core.clock import parse_iso, to_iso


# Metadata attached to audit events and alerts is a flat map of scalars
MetadataValue = Union[str, int, float, bool, None, List[str]]
Metadata = Dict[str, MetadataValue]


class AuditAction(str, Enum):
    """Audit event actions"""
    # Authentication
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"

    # Brute force protection
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Multi-factor authentication
    MFA_SETUP_INITIATED = "MFA_SETUP_INITIATED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_VERIFICATION_FAILED = "MFA_VERIFICATION_FAILED"
    MFA_RECOVERY_CODE_USED = "MFA_RECOVERY_CODE_USED"
    MFA_RECOVERY_CODES_REGENERATED = "MFA_RECOVERY_CODES_REGENERATED"

    # API credentials
    API_KEY_ROTATED = "API_KEY_ROTATED"
    API_KEY_ROTATION_FAILED = "API_KEY_ROTATION_FAILED"
    API_KEY_GRACE_PERIOD_EXPIRED = "API_KEY_GRACE_PERIOD_EXPIRED"
    API_KEY_EXPIRY_INITIALIZED = "API_KEY_EXPIRY_INITIALIZED"

    # Transport security
    CERTIFICATE_PINNING_FAILURE = "CERTIFICATE_PINNING_FAILURE"
    CERTIFICATE_FINGERPRINT_ADDED = "CERTIFICATE_FINGERPRINT_ADDED"
    CERTIFICATE_FINGERPRINT_REMOVED = "CERTIFICATE_FINGERPRINT_REMOVED"

    # Alerting
    SECURITY_ALERT_SENT = "SECURITY_ALERT_SENT"
    SECURITY_ALERT_FAILED = "SECURITY_ALERT_FAILED"
    DAILY_SUMMARY_SENT = "DAILY_SUMMARY_SENT"
    DAILY_SUMMARY_FAILED = "DAILY_SUMMARY_FAILED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"

    # Data operations
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    EXPORT = "EXPORT"
    CONFIG_CHANGE = "CONFIG_CHANGE"


DATA_OPERATIONS = frozenset({
    AuditAction.CREATE, AuditAction.READ, AuditAction.UPDATE,
    AuditAction.DELETE, AuditAction.EXPORT,
})


class Severity(str, Enum):
    """Alert and security event severity"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class LimitScope(str, Enum):
    """Rate limit records are keyed per identifier and scope"""
    USERNAME = "username"
    IP = "ip"


def _coerce_action(value: Any) -> Union[AuditAction, str]:
    try:
        return AuditAction(value)
    except ValueError:
        return str(value)


@dataclass(frozen=True)
class AuditEvent:
    """An immutable security-relevant occurrence"""
    action: Union[AuditAction, str]
    resource: str
    timestamp: Optional[datetime] = None
    username: Optional[str] = None
    user_id: Optional[str] = None
    record_id: Optional[int] = None
    success: bool = True
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Metadata = field(default_factory=dict)

    @property
    def action_name(self) -> str:
        return self.action.value if isinstance(self.action, AuditAction) else str(self.action)

    @property
    def severity(self) -> Optional[Severity]:
        value = self.metadata.get("severity")
        try:
            return Severity(value) if value else None
        except ValueError:
            return None

    def to_fields(self) -> Dict[str, Any]:
        """Columns of the AuditLogs table"""
        return {
            "timestamp": to_iso(self.timestamp) if self.timestamp else None,
            "action": self.action_name,
            "resource": self.resource,
            "username": self.username or "",
            "user_id": self.user_id or "",
            "record_id": self.record_id,
            "success": self.success,
            "ip_address": self.ip_address or "",
            "device_fingerprint": self.device_fingerprint or "",
            "user_agent": self.user_agent or "",
            "metadata": json.dumps(self.metadata, default=str) if self.metadata else "",
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "AuditEvent":
        raw_metadata = fields.get("metadata")
        metadata: Metadata = {}
        if isinstance(raw_metadata, dict):
            metadata = raw_metadata
        elif raw_metadata:
            try:
                decoded = json.loads(raw_metadata)
                if isinstance(decoded, dict):
                    metadata = decoded
            except (TypeError, ValueError):
                metadata = {"raw": str(raw_metadata)}

        return cls(
            action=_coerce_action(fields.get("action", "")),
            resource=fields.get("resource") or "",
            timestamp=parse_iso(fields.get("timestamp")),
            username=fields.get("username") or None,
            user_id=fields.get("user_id") or None,
            record_id=fields.get("record_id"),
            success=bool(fields.get("success", False)),
            ip_address=fields.get("ip_address") or None,
            device_fingerprint=fields.get("device_fingerprint") or None,
            user_agent=fields.get("user_agent") or None,
            metadata=metadata,
        )


@dataclass(frozen=True)
class SecurityAlert:
    """Alert derived from audit and rate limit data; never stored directly"""
    id: str
    type: str
    severity: Severity
    title: str
    description: str
    timestamp: datetime
    metadata: Metadata = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "timestamp": to_iso(self.timestamp),
            "metadata": dict(self.metadata),
        }


def sort_alerts(alerts: List[SecurityAlert]) -> List[SecurityAlert]:
    """Most severe first, then newest first"""
    return sorted(alerts, key=lambda a: (-a.severity.rank, -a.timestamp.timestamp()))
