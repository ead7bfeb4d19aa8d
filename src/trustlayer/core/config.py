"""
TrustLayer Core Configuration
Security settings for lockout, MFA, key rotation, pinning and alerting.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from trustlayer.core.errors import TrustLayerError


SEVERITY_LEVELS = ("low", "medium", "high", "critical")


class ConfigurationError(TrustLayerError):
    """Missing or inconsistent configuration detected at startup"""
    pass


class Settings(BaseSettings):
    """
    TrustLayer Configuration Settings
    """

    # Application
    APP_NAME: str = "TrustLayer"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[Path] = None

    # Remote table store (Grist document API)
    STORE_BASE_URL: Optional[str] = None
    STORE_DOC_ID: Optional[str] = None
    STORE_API_KEY: Optional[str] = None
    STORE_TIMEOUT: float = Field(default=30.0, gt=0)

    # Table names
    AUDIT_TABLE: str = "AuditLogs"
    RATE_LIMIT_TABLE: str = "RateLimits"
    API_RATE_LIMIT_TABLE: str = "RateLimits_API"
    API_KEY_TABLE: str = "APIKeys"

    # Brute force protection
    MAX_FAILED_ATTEMPTS: int = Field(default=5, gt=0)
    LOCKOUT_DURATION_MINUTES: int = Field(default=15, gt=0)
    API_RATE_WINDOW_SECONDS: int = Field(default=60, gt=0)
    API_RATE_LIMIT: int = Field(default=100, gt=0)

    # Multi-factor authentication
    MFA_ISSUER: str = "TrustLayer"
    RECOVERY_CODE_COUNT: int = Field(default=10, gt=0)
    RECOVERY_CODE_BCRYPT_ROUNDS: int = Field(default=10, ge=4, le=31)

    # API key rotation
    API_KEY_PREFIX: str = "grist"
    KEY_ROTATION_INTERVAL_DAYS: int = Field(default=90, gt=0)
    KEY_GRACE_PERIOD_HOURS: int = Field(default=24, ge=0)
    KEY_EXPIRY_WARNING_DAYS: int = Field(default=7, ge=0)
    KEY_ROTATION_CHECK_HOURS: int = Field(default=24, gt=0)

    # Certificate pinning
    PINNED_HOSTNAME: Optional[str] = None
    PINNED_FINGERPRINTS: Annotated[List[str], NoDecode] = []
    ALLOW_INSECURE_CERTIFICATES: bool = False
    PINNING_REQUIRE_CA: bool = False

    # Alerting
    ALERT_SEVERITY_THRESHOLD: str = "medium"
    ALERT_THROTTLE_MINUTES: int = Field(default=60, ge=0)
    ALERT_EMAIL_RECIPIENTS: Annotated[List[str], NoDecode] = []
    DASHBOARD_REFRESH_SECONDS: int = Field(default=300, gt=0)

    # Email
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_TLS: bool = True
    EMAILS_FROM_EMAIL: Optional[str] = None
    EMAILS_FROM_NAME: str = "TrustLayer Security"

    # Push notifications
    FCM_SERVER_KEY: Optional[str] = None
    FCM_ENDPOINT: str = "https://fcm.googleapis.com/fcm/send"
    PUSH_DEVICE_TOKENS: Annotated[List[str], NoDecode] = []

    # Sessions
    SESSION_TIMEOUT_MINUTES: int = Field(default=30, gt=0)
    SESSION_CHECK_SECONDS: int = Field(default=60, gt=0)

    # Secure storage
    SECURE_STORE_PATH: Path = Path("secure_store.enc")
    MASTER_KEY: Optional[str] = None

    @field_validator(
        "PINNED_FINGERPRINTS", "ALERT_EMAIL_RECIPIENTS", "PUSH_DEVICE_TOKENS",
        mode="before",
    )
    @classmethod
    def split_comma_separated(cls, v: Any) -> List[str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, str):
            return json.loads(v)
        elif isinstance(v, list):
            return v
        raise ValueError(v)

    @field_validator("ALERT_SEVERITY_THRESHOLD")
    @classmethod
    def check_severity(cls, v: str) -> str:
        value = v.lower()
        if value not in SEVERITY_LEVELS:
            raise ValueError(f"Unknown severity '{v}', expected one of {SEVERITY_LEVELS}")
        return value

    @field_validator("STORE_BASE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v

    @model_validator(mode="after")
    def forbid_insecure_production(self) -> "Settings":
        if self.ALLOW_INSECURE_CERTIFICATES and self.ENVIRONMENT == "production":
            raise ValueError("ALLOW_INSECURE_CERTIFICATES cannot be enabled in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def validate_for_startup(self) -> None:
        """
        Fail fast when settings required to talk to the store are missing
        """
        missing = [
            name for name in ("STORE_BASE_URL", "STORE_DOC_ID", "STORE_API_KEY")
            if not getattr(self, name)
        ]
        if self.is_production and not self.MASTER_KEY:
            missing.append("MASTER_KEY")
        if missing:
            raise ConfigurationError(
                "Missing required settings: " + ", ".join(f"TRUSTLAYER_{m}" for m in missing)
            )

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_prefix="TRUSTLAYER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
