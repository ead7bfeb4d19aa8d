"""
Unit tests for API key rotation.
"""
import re
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from trustlayer.core.encryption import EncryptionError
from trustlayer.security.models import AuditAction
from trustlayer.security.rotation import CredentialRotator, KeyHealth
from trustlayer.store.base import StoreError


class TestCredentialRotator:
    """Test cases for CredentialRotator."""

    def test_generate_api_key_format(self, rotator):
        """Test generated keys carry the prefix and 40 hex characters."""
        key = rotator.generate_api_key()

        assert re.fullmatch(r"grist_[0-9a-f]{40}", key)
        assert rotator.generate_api_key() != key

    @pytest.mark.asyncio
    async def test_first_check_initializes_expiry(self, rotator, clock, audit_events):
        """Test a fresh state gets an expiry instead of rotating."""
        assert await rotator.check_rotation_needed() is False

        state = await rotator.load_state()
        assert state.current_expiry == clock.now() + timedelta(days=90)
        assert len(audit_events(AuditAction.API_KEY_EXPIRY_INITIALIZED)) == 1

    @pytest.mark.asyncio
    async def test_rotation_needed_in_warning_period(self, rotator, clock):
        """Test rotation becomes due seven days before expiry."""
        await rotator.check_rotation_needed()

        clock.advance(timedelta(days=82, hours=23))
        assert await rotator.check_rotation_needed() is False

        clock.advance(timedelta(hours=1))
        assert await rotator.check_rotation_needed() is True

    @pytest.mark.asyncio
    async def test_rotate_not_due(self, rotator):
        """Test unforced rotation is skipped when the key is fresh."""
        await rotator.check_rotation_needed()

        result = await rotator.rotate()

        assert result.success is False
        assert result.skipped is True
        assert rotator.current_key == "grist_initial"

    @pytest.mark.asyncio
    async def test_forced_rotation(self, rotator, store, clock, audit_events):
        """Test forced rotation registers and activates a new key."""
        result = await rotator.rotate(force=True, actor="admin")

        assert result.success is True
        assert result.new_key.startswith("grist_")
        assert result.expires_at == clock.now() + timedelta(days=90)
        assert rotator.current_key == result.new_key

        row = store.rows("APIKeys")[0]
        assert row["key"] == result.new_key
        assert row["status"] == "active"
        assert len(audit_events(AuditAction.API_KEY_ROTATED)) == 1

    @pytest.mark.asyncio
    async def test_grace_period(self, rotator, clock):
        """Test both keys work during the grace period and only the new one after."""
        result = await rotator.rotate(force=True)

        assert await rotator.is_key_valid("grist_initial") is True
        assert await rotator.is_key_valid(result.new_key) is True
        assert (await rotator.status()).grace_active is True

        clock.advance(timedelta(hours=24, seconds=1))

        assert await rotator.is_key_valid("grist_initial") is False
        assert await rotator.is_key_valid(result.new_key) is True
        assert await rotator.is_key_valid("grist_unknown") is False

    @pytest.mark.asyncio
    async def test_purge_expired_previous(self, rotator, clock, audit_events):
        """Test the previous key is removed once its grace period ended."""
        await rotator.rotate(force=True)
        assert await rotator.purge_expired_previous() is False

        clock.advance(timedelta(hours=25))

        assert await rotator.purge_expired_previous() is True
        assert (await rotator.load_state()).previous_key is None
        assert len(audit_events(AuditAction.API_KEY_GRACE_PERIOD_EXPIRED)) == 1

    @pytest.mark.asyncio
    async def test_store_failure_keeps_old_key(self, rotator, store, audit_events):
        """Test nothing changes locally when the backend rejects the new key."""
        create = store.create

        async def reject_keys(table, fields):
            if table == "APIKeys":
                raise StoreError("down", status_code=503)
            return await create(table, fields)

        store.create = reject_keys

        result = await rotator.rotate(force=True)

        assert result.success is False
        assert rotator.current_key == "grist_initial"
        assert store.rows("APIKeys") == []
        assert len(audit_events(AuditAction.API_KEY_ROTATION_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_old_key(self, rotator, storage):
        """Test a failed state write leaves the old key in use."""
        await rotator.load_state()
        storage.write = AsyncMock(side_effect=EncryptionError("disk full"))

        result = await rotator.rotate(force=True)

        assert result.success is False
        assert rotator.current_key == "grist_initial"

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, rotator, store, storage, clock):
        """Test a new rotator resumes from the persisted state."""
        result = await rotator.rotate(force=True)

        restarted = CredentialRotator(store, storage, initial_key="grist_initial", clock=clock)
        state = await restarted.load_state()

        assert state.current_key == result.new_key
        assert state.previous_key == "grist_initial"
        assert restarted.current_key == result.new_key

    @pytest.mark.asyncio
    async def test_status(self, rotator, clock):
        """Test health classification over the key lifetime."""
        assert (await rotator.status()).status == KeyHealth.UNKNOWN

        await rotator.check_rotation_needed()
        assert (await rotator.status()).status == KeyHealth.VALID
        assert (await rotator.status()).days_until_expiry == 90

        clock.advance(timedelta(days=85))
        assert (await rotator.status()).status == KeyHealth.EXPIRING_SOON

        clock.advance(timedelta(days=6))
        assert (await rotator.status()).status == KeyHealth.EXPIRED

    @pytest.mark.asyncio
    async def test_scheduled_check_rotates_when_due(self, rotator, clock):
        """Test the scheduled tick rotates inside the warning period."""
        await rotator.run_scheduled_check()
        assert rotator.current_key == "grist_initial"

        clock.advance(timedelta(days=84))
        await rotator.run_scheduled_check()

        assert rotator.current_key != "grist_initial"
