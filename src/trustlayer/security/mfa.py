"""
TrustLayer Multi-Factor Authentication
TOTP (RFC 6238) secrets, verification with clock drift tolerance, and
single-use recovery codes.
"""

import asyncio
import base64
import io
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional
from urllib.parse import quote

import bcrypt
import pyotp
import qrcode

from trustlayer.core.clock import Clock, SystemClock
from trustlayer.core.encryption import EncryptionError, SecureStorage
from trustlayer.core.errors import TrustLayerError
from trustlayer.core.logging import LoggerMixin
from trustlayer.security.audit import AuditLogger
from trustlayer.security.models import AuditAction, Metadata


class MfaError(TrustLayerError):
    """MFA state could not be read or changed"""
    pass


class MfaVerification(str, Enum):
    """Result of checking a TOTP or recovery code"""
    SUCCESS = "success"
    INVALID_CODE = "invalid_code"
    NOT_ENABLED = "not_enabled"
    NOT_CONFIGURED = "not_configured"

    @property
    def succeeded(self) -> bool:
        return self is MfaVerification.SUCCESS


@dataclass
class MfaSetupResult:
    """Everything shown to the user once during setup"""
    secret: str
    provisioning_uri: str
    qr_code_base64: str
    recovery_codes: List[str]


@dataclass
class MfaStatus:
    enabled: bool
    pending_setup: bool
    remaining_recovery_codes: int


class MfaEngine(LoggerMixin):
    """TOTP second factor with recovery codes kept in secure storage"""

    TOTP_DIGITS = 6
    TOTP_INTERVAL = 30
    TOTP_WINDOW = 1  # accept one step before and after for clock drift
    SECRET_LENGTH = 32  # base32 characters, 160 bits
    RECOVERY_CODE_DIGITS = 8
    LOW_RECOVERY_CODES = 2

    def __init__(
        self,
        storage: SecureStorage,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        issuer: str = "TrustLayer",
        recovery_code_count: int = 10,
        bcrypt_rounds: int = 10,
    ):
        self.storage = storage
        self.audit = audit
        self.clock = clock or SystemClock()
        self.issuer = issuer
        self.recovery_code_count = recovery_code_count
        self.bcrypt_rounds = bcrypt_rounds

        self.qr_size = 10
        self.qr_border = 4

    @staticmethod
    def generate_secret() -> str:
        """Random 160-bit secret, base32 without padding"""
        return pyotp.random_base32(length=MfaEngine.SECRET_LENGTH)

    @classmethod
    def code_at(cls, secret: str, when: datetime, digits: int = TOTP_DIGITS) -> str:
        """TOTP value for the time step containing `when`, zero padded"""
        return pyotp.TOTP(secret, digits=digits, interval=cls.TOTP_INTERVAL).at(when)

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        """otpauth:// URI understood by Google Authenticator and compatible apps"""
        label = quote(f"{self.issuer}:{account_name}", safe=":@")
        return (
            f"otpauth://totp/{label}"
            f"?secret={secret}"
            f"&issuer={quote(self.issuer, safe='')}"
            f"&algorithm=SHA1"
            f"&digits={self.TOTP_DIGITS}"
            f"&period={self.TOTP_INTERVAL}"
        )

    async def setup(self, owner_id: str, account_name: Optional[str] = None) -> MfaSetupResult:
        """
        Issue a secret and recovery codes. MFA stays disabled until the
        first code is confirmed through enable().
        """
        if await self._read(self._enabled_key(owner_id)):
            raise MfaError("MFA is already enabled; disable it before setting it up again")

        secret = self.generate_secret()
        recovery_codes = self._generate_recovery_codes()
        hashes = await self._hash_codes(recovery_codes)
        provisioning_uri = self.provisioning_uri(secret, account_name or owner_id)

        try:
            await self.storage.write(self._secret_key(owner_id), secret)
            await self.storage.write(self._enabled_key(owner_id), False)
            await self.storage.write(self._codes_key(owner_id), hashes)
        except EncryptionError as e:
            await self._discard(owner_id)
            self.logger.error(f"MFA setup failed for {owner_id}: {e}")
            raise MfaError(f"MFA setup failed: {e}")

        await self._log_mfa_event(AuditAction.MFA_SETUP_INITIATED, owner_id, True)
        self.logger.info(f"TOTP setup initiated for {owner_id}")

        return MfaSetupResult(
            secret=secret,
            provisioning_uri=provisioning_uri,
            qr_code_base64=self._generate_qr_code(provisioning_uri),
            recovery_codes=recovery_codes,
        )

    async def enable(self, owner_id: str, code: str) -> MfaVerification:
        """Confirm setup with a code from the authenticator app"""
        secret = await self._read(self._secret_key(owner_id))
        if not secret:
            return MfaVerification.NOT_CONFIGURED

        if not self._matches(secret, code, self.clock.now()):
            await self._log_mfa_event(
                AuditAction.MFA_VERIFICATION_FAILED, owner_id, False, {"stage": "enable"}
            )
            return MfaVerification.INVALID_CODE

        try:
            await self.storage.write(self._enabled_key(owner_id), True)
        except EncryptionError as e:
            self.logger.error(f"Could not enable MFA for {owner_id}: {e}")
            raise MfaError(f"Could not enable MFA: {e}")

        await self._log_mfa_event(AuditAction.MFA_ENABLED, owner_id, True)
        self.logger.info(f"MFA enabled for {owner_id}")
        return MfaVerification.SUCCESS

    async def verify(
        self,
        owner_id: str,
        code: str,
        at: Optional[datetime] = None,
    ) -> MfaVerification:
        """Check a login code against steps t-1, t and t+1"""
        secret = await self._read(self._secret_key(owner_id))
        if not secret:
            return MfaVerification.NOT_CONFIGURED
        if not await self._read(self._enabled_key(owner_id)):
            return MfaVerification.NOT_ENABLED

        if self._matches(secret, code, at or self.clock.now()):
            return MfaVerification.SUCCESS

        await self._log_mfa_event(
            AuditAction.MFA_VERIFICATION_FAILED, owner_id, False, {"stage": "login"}
        )
        return MfaVerification.INVALID_CODE

    async def verify_recovery_code(self, owner_id: str, code: str) -> MfaVerification:
        """Accept and consume a recovery code"""
        if not await self._read(self._enabled_key(owner_id)):
            return MfaVerification.NOT_ENABLED

        normalized = self._normalize_recovery_code(code)
        hashes: List[str] = list(await self._read(self._codes_key(owner_id)) or [])
        if not normalized or not hashes:
            return await self._recovery_failed(owner_id)

        match = await asyncio.to_thread(self._find_hash, normalized, hashes)
        if match is None:
            return await self._recovery_failed(owner_id)

        remaining = [h for i, h in enumerate(hashes) if i != match]
        try:
            await self.storage.write(self._codes_key(owner_id), remaining)
        except EncryptionError as e:
            # A code that cannot be consumed must not be accepted
            self.logger.error(f"Could not consume recovery code for {owner_id}: {e}")
            raise MfaError(f"Could not consume recovery code: {e}")

        await self._log_mfa_event(
            AuditAction.MFA_RECOVERY_CODE_USED, owner_id, True, {"remaining_codes": len(remaining)}
        )
        if len(remaining) <= self.LOW_RECOVERY_CODES:
            self.logger.warning(f"{owner_id} has only {len(remaining)} recovery codes left")
        return MfaVerification.SUCCESS

    async def regenerate_recovery_codes(self, owner_id: str) -> List[str]:
        """Replace the whole set; earlier codes stop working"""
        if not await self._read(self._secret_key(owner_id)):
            raise MfaError("MFA is not set up")

        recovery_codes = self._generate_recovery_codes()
        hashes = await self._hash_codes(recovery_codes)
        try:
            await self.storage.write(self._codes_key(owner_id), hashes)
        except EncryptionError as e:
            raise MfaError(f"Could not store recovery codes: {e}")

        await self._log_mfa_event(
            AuditAction.MFA_RECOVERY_CODES_REGENERATED, owner_id, True,
            {"code_count": len(recovery_codes)},
        )
        return recovery_codes

    async def disable(self, owner_id: str, actor: Optional[str] = None) -> None:
        """Delete secret, enabled flag and recovery codes, all or nothing"""
        keys = (self._enabled_key(owner_id), self._secret_key(owner_id), self._codes_key(owner_id))
        snapshot = {key: await self._read(key) for key in keys}

        try:
            for key in keys:
                await self.storage.delete(key)
        except EncryptionError as e:
            self.logger.error(f"Disabling MFA for {owner_id} failed, restoring state: {e}")
            await self._restore(snapshot)
            raise MfaError(f"Could not disable MFA: {e}")

        await self._log_mfa_event(
            AuditAction.MFA_DISABLED, owner_id, True, {"actor": actor or owner_id}
        )
        self.logger.info(f"MFA disabled for {owner_id}")

    async def is_enabled(self, owner_id: str) -> bool:
        return bool(await self._read(self._enabled_key(owner_id)))

    async def status(self, owner_id: str) -> MfaStatus:
        secret = await self._read(self._secret_key(owner_id))
        enabled = bool(await self._read(self._enabled_key(owner_id)))
        codes = await self._read(self._codes_key(owner_id)) or []
        return MfaStatus(
            enabled=enabled,
            pending_setup=bool(secret) and not enabled,
            remaining_recovery_codes=len(codes),
        )

    def _matches(self, secret: str, code: str, when: datetime) -> bool:
        candidate = re.sub(r"\s", "", code or "")
        if len(candidate) != self.TOTP_DIGITS or not candidate.isdigit():
            return False
        totp = pyotp.TOTP(secret, digits=self.TOTP_DIGITS, interval=self.TOTP_INTERVAL)
        return totp.verify(candidate, for_time=when, valid_window=self.TOTP_WINDOW)

    def _generate_recovery_codes(self) -> List[str]:
        codes = []
        for _ in range(self.recovery_code_count):
            digits = f"{secrets.randbelow(10 ** self.RECOVERY_CODE_DIGITS):0{self.RECOVERY_CODE_DIGITS}d}"
            codes.append(f"{digits[:4]}-{digits[4:]}")
        return codes

    @classmethod
    def is_recovery_code(cls, code: str) -> bool:
        """Recovery codes are 8 digits, TOTP codes are 6"""
        return cls._normalize_recovery_code(code) is not None

    @classmethod
    def _normalize_recovery_code(cls, code: str) -> Optional[str]:
        normalized = re.sub(r"[\s-]", "", code or "")
        if len(normalized) != cls.RECOVERY_CODE_DIGITS or not normalized.isdigit():
            return None
        return normalized

    async def _hash_codes(self, codes: List[str]) -> List[str]:
        def hash_all() -> List[str]:
            return [
                bcrypt.hashpw(
                    self._normalize_recovery_code(code).encode("utf-8"),
                    bcrypt.gensalt(rounds=self.bcrypt_rounds),
                ).decode("utf-8")
                for code in codes
            ]
        return await asyncio.to_thread(hash_all)

    @staticmethod
    def _find_hash(normalized: str, hashes: List[str]) -> Optional[int]:
        encoded = normalized.encode("utf-8")
        for index, hashed in enumerate(hashes):
            if bcrypt.checkpw(encoded, hashed.encode("utf-8")):
                return index
        return None

    async def _recovery_failed(self, owner_id: str) -> MfaVerification:
        await self._log_mfa_event(
            AuditAction.MFA_VERIFICATION_FAILED, owner_id, False, {"stage": "recovery_code"}
        )
        return MfaVerification.INVALID_CODE

    def _generate_qr_code(self, provisioning_uri: str) -> str:
        """PNG data URI for the provisioning URI"""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=self.qr_size,
            border=self.qr_border,
        )
        qr.add_data(provisioning_uri)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()

    async def _read(self, key: str) -> Any:
        try:
            return await self.storage.read(key)
        except EncryptionError as e:
            raise MfaError(f"Cannot read MFA state: {e}")

    async def _discard(self, owner_id: str) -> None:
        for key in (self._enabled_key(owner_id), self._secret_key(owner_id), self._codes_key(owner_id)):
            try:
                await self.storage.delete(key)
            except EncryptionError as e:
                self.logger.error(f"Could not discard {key}: {e}")

    async def _restore(self, snapshot: dict) -> None:
        for key, value in snapshot.items():
            if value is None:
                continue
            try:
                await self.storage.write(key, value)
            except EncryptionError as e:
                self.logger.critical(f"Could not restore {key} after failed MFA disable: {e}")

    async def _log_mfa_event(
        self,
        action: AuditAction,
        owner_id: str,
        success: bool,
        metadata: Optional[Metadata] = None,
    ) -> None:
        if self.audit is None:
            return
        details: Metadata = {"mfa_type": "totp"}
        details.update(metadata or {})
        await self.audit.log_auth_event(
            action, username=owner_id, user_id=owner_id, success=success, metadata=details
        )

    @staticmethod
    def _secret_key(owner_id: str) -> str:
        return f"mfa_secret_{owner_id}"

    @staticmethod
    def _enabled_key(owner_id: str) -> str:
        return f"mfa_enabled_{owner_id}"

    @staticmethod
    def _codes_key(owner_id: str) -> str:
        return f"mfa_recovery_codes_{owner_id}"
