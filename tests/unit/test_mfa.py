"""
Unit tests for the TOTP engine and recovery codes.
"""
import base64
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from trustlayer.core.encryption import EncryptionError
from trustlayer.security.mfa import MfaEngine, MfaError, MfaVerification
from trustlayer.security.models import AuditAction


# RFC 6238 appendix B, SHA1 key "12345678901234567890"
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
RFC_VECTORS = [
    (59, "94287082"),
    (1111111109, "07081804"),
    (1111111111, "14050471"),
    (1234567890, "89005924"),
    (2000000000, "69279037"),
    (20000000000, "65353130"),
]


def at(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class TestTotp:
    """Test cases for TOTP generation."""

    @pytest.mark.parametrize("seconds,expected", RFC_VECTORS)
    def test_rfc6238_vectors(self, seconds, expected):
        """Test 8 digit codes against the published vectors."""
        assert MfaEngine.code_at(RFC_SECRET, at(seconds), digits=8) == expected

    @pytest.mark.parametrize("seconds,expected", RFC_VECTORS)
    def test_six_digit_codes(self, seconds, expected):
        """Test 6 digit codes are the vector modulo 10^6."""
        assert MfaEngine.code_at(RFC_SECRET, at(seconds)) == expected[-6:]

    def test_codes_zero_padded(self):
        """Test codes keep leading zeros."""
        code = MfaEngine.code_at(RFC_SECRET, at(1111111109), digits=8)

        assert code == "07081804"
        assert len(MfaEngine.code_at("JBSWY3DPEHPK3PXP", at(0))) == 6

    def test_code_stable_within_step(self):
        """Test every instant of a 30 second step yields the same code."""
        base = 1700000010
        codes = {MfaEngine.code_at("JBSWY3DPEHPK3PXP", at(base + offset)) for offset in range(20)}

        assert len(codes) == 1

    def test_generate_secret(self):
        """Test secrets are 32 base32 characters decoding to 160 bits."""
        secret = MfaEngine.generate_secret()

        assert re.fullmatch(r"[A-Z2-7]{32}", secret)
        assert len(base64.b32decode(secret)) == 20
        assert MfaEngine.generate_secret() != secret

    def test_provisioning_uri(self, mfa):
        """Test the otpauth URI layout."""
        uri = mfa.provisioning_uri("JBSWY3DPEHPK3PXP", "alice@example.com")

        assert uri == (
            "otpauth://totp/TrustLayer:alice@example.com"
            "?secret=JBSWY3DPEHPK3PXP&issuer=TrustLayer&algorithm=SHA1&digits=6&period=30"
        )


async def enabled_secret(mfa: MfaEngine, clock, owner: str = "alice"):
    setup = await mfa.setup(owner, f"{owner}@example.com")
    code = MfaEngine.code_at(setup.secret, clock.now())
    assert await mfa.enable(owner, code) == MfaVerification.SUCCESS
    return setup


class TestMfaEngine:
    """Test cases for setup, verification and recovery codes."""

    @pytest.mark.asyncio
    async def test_setup(self, mfa, storage):
        """Test setup issues a secret, QR code and recovery codes but stays disabled."""
        setup = await mfa.setup("alice", "alice@example.com")

        assert len(setup.recovery_codes) == 10
        assert all(re.fullmatch(r"\d{4}-\d{4}", c) for c in setup.recovery_codes)
        assert setup.qr_code_base64.startswith("data:image/png;base64,")
        assert setup.secret in setup.provisioning_uri
        assert await mfa.is_enabled("alice") is False
        assert (await mfa.status("alice")).pending_setup is True

        stored_codes = await storage.read("mfa_recovery_codes_alice")
        assert setup.recovery_codes[0] not in stored_codes

    @pytest.mark.asyncio
    async def test_enable_requires_valid_code(self, mfa, audit_events):
        """Test enabling with a wrong code keeps MFA disabled."""
        await mfa.setup("alice")

        result = await mfa.enable("alice", "000000")

        assert result == MfaVerification.INVALID_CODE
        assert await mfa.is_enabled("alice") is False
        assert len(audit_events(AuditAction.MFA_VERIFICATION_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_enable_without_setup(self, mfa):
        """Test enabling without a secret is reported."""
        assert await mfa.enable("alice", "123456") == MfaVerification.NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_setup_twice_rejected(self, mfa, clock):
        """Test setup refuses to replace an enabled secret."""
        await enabled_secret(mfa, clock)

        with pytest.raises(MfaError):
            await mfa.setup("alice")

    @pytest.mark.asyncio
    async def test_verify_window(self, mfa, clock):
        """Test codes from adjacent steps are accepted and two steps away rejected."""
        setup = await enabled_secret(mfa, clock)
        now = clock.now()
        code = MfaEngine.code_at(setup.secret, now)

        assert await mfa.verify("alice", code, at=now) == MfaVerification.SUCCESS
        assert await mfa.verify("alice", code, at=now + timedelta(seconds=30)) == MfaVerification.SUCCESS
        assert await mfa.verify("alice", code, at=now - timedelta(seconds=30)) == MfaVerification.SUCCESS
        assert await mfa.verify("alice", code, at=now + timedelta(seconds=60)) == MfaVerification.INVALID_CODE
        assert await mfa.verify("alice", code, at=now - timedelta(seconds=60)) == MfaVerification.INVALID_CODE

    @pytest.mark.asyncio
    async def test_verify_rejects_malformed_codes(self, mfa, clock):
        """Test non-numeric or wrong length codes are invalid."""
        await enabled_secret(mfa, clock)

        assert await mfa.verify("alice", "abcdef") == MfaVerification.INVALID_CODE
        assert await mfa.verify("alice", "12345") == MfaVerification.INVALID_CODE

    @pytest.mark.asyncio
    async def test_verify_not_enabled(self, mfa):
        """Test verification states before enablement."""
        assert await mfa.verify("alice", "123456") == MfaVerification.NOT_CONFIGURED

        await mfa.setup("alice")
        assert await mfa.verify("alice", "123456") == MfaVerification.NOT_ENABLED

    @pytest.mark.asyncio
    async def test_recovery_code_single_use(self, mfa, clock, audit_events):
        """Test a recovery code works exactly once."""
        setup = await enabled_secret(mfa, clock)
        code = setup.recovery_codes[0]

        assert await mfa.verify_recovery_code("alice", code) == MfaVerification.SUCCESS
        assert await mfa.verify_recovery_code("alice", code) == MfaVerification.INVALID_CODE
        assert (await mfa.status("alice")).remaining_recovery_codes == 9
        assert len(audit_events(AuditAction.MFA_RECOVERY_CODE_USED)) == 1

    @pytest.mark.asyncio
    async def test_recovery_code_normalized(self, mfa, clock):
        """Test recovery codes are accepted without the hyphen."""
        setup = await enabled_secret(mfa, clock)

        entered = " " + setup.recovery_codes[1].replace("-", "") + " "
        assert await mfa.verify_recovery_code("alice", entered) == MfaVerification.SUCCESS

    @pytest.mark.asyncio
    async def test_regenerate_recovery_codes(self, mfa, clock):
        """Test regeneration invalidates previous codes."""
        setup = await enabled_secret(mfa, clock)

        new_codes = await mfa.regenerate_recovery_codes("alice")

        assert len(new_codes) == 10
        assert await mfa.verify_recovery_code("alice", setup.recovery_codes[0]) == MfaVerification.INVALID_CODE
        assert await mfa.verify_recovery_code("alice", new_codes[0]) == MfaVerification.SUCCESS

    @pytest.mark.asyncio
    async def test_disable(self, mfa, clock, storage):
        """Test disable removes every MFA entry."""
        await enabled_secret(mfa, clock)

        await mfa.disable("alice", actor="admin")

        assert await mfa.is_enabled("alice") is False
        assert await storage.read("mfa_secret_alice") is None
        assert await storage.read("mfa_recovery_codes_alice") is None

    @pytest.mark.asyncio
    async def test_disable_failure_restores_state(self, mfa, clock, storage):
        """Test a failing delete leaves MFA enabled."""
        await enabled_secret(mfa, clock)
        original_delete = storage.delete
        calls = {"n": 0}

        async def flaky_delete(key):
            calls["n"] += 1
            if calls["n"] == 2:
                raise EncryptionError("disk full")
            await original_delete(key)

        storage.delete = flaky_delete

        with pytest.raises(MfaError):
            await mfa.disable("alice")

        assert await mfa.is_enabled("alice") is True
        assert await storage.read("mfa_secret_alice") is not None

    @pytest.mark.asyncio
    async def test_setup_failure_rolls_back(self, mfa, storage):
        """Test a failed write during setup leaves no partial state."""
        storage.write = AsyncMock(side_effect=EncryptionError("disk full"))

        with pytest.raises(MfaError):
            await mfa.setup("alice")

        assert await storage.read("mfa_secret_alice") is None
        assert await mfa.is_enabled("alice") is False
