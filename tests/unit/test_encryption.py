"""
Unit tests for the vault and encrypted secure storage.
"""
import base64
import json
import os

import pytest

from trustlayer.core.config import ConfigurationError, Settings
from trustlayer.core.encryption import EncryptionError, SecureStorage, VaultManager


class TestVaultManager:
    """Test cases for VaultManager."""

    def test_encrypt_decrypt(self, vault):
        """Test data survives an encrypt/decrypt cycle."""
        data = {"user": "alice", "codes": ["1234-5678"], "enabled": True}

        encrypted = vault.encrypt_data(data, "mfa")

        assert "alice" not in encrypted
        assert vault.decrypt_data(encrypted) == data

    def test_nonce_is_random(self, vault):
        """Test two encryptions of the same value differ."""
        assert vault.encrypt_data("secret") != vault.encrypt_data("secret")

    def test_wrong_master_key(self, vault):
        """Test decrypting with another master key fails cleanly."""
        encrypted = vault.encrypt_data({"a": 1})
        other = VaultManager(os.urandom(32))

        with pytest.raises(EncryptionError):
            other.decrypt_data(encrypted)

    def test_tampered_ciphertext(self, vault):
        """Test authenticated encryption detects tampering."""
        package = json.loads(base64.b64decode(vault.encrypt_data({"a": 1})))
        ciphertext = bytearray(base64.b64decode(package["ciphertext"]))
        ciphertext[0] ^= 0x01
        package["ciphertext"] = base64.b64encode(bytes(ciphertext)).decode()
        tampered = base64.b64encode(json.dumps(package).encode()).decode()

        with pytest.raises(EncryptionError):
            vault.decrypt_data(tampered)

    def test_malformed_package(self, vault):
        """Test garbage input raises EncryptionError."""
        with pytest.raises(EncryptionError):
            vault.decrypt_data("not-base64-json")

    def test_short_master_key_rejected(self):
        """Test master keys below 128 bits are refused."""
        with pytest.raises(EncryptionError):
            VaultManager(b"short")

    def test_from_settings(self):
        """Test vault creation from a base64 master key."""
        key = base64.b64encode(os.urandom(32)).decode()
        vault = VaultManager.from_settings(Settings(_env_file=None, MASTER_KEY=key))

        assert vault.decrypt_data(vault.encrypt_data("x")) == "x"

    def test_production_requires_master_key(self):
        """Test production refuses an ephemeral master key."""
        with pytest.raises(ConfigurationError):
            VaultManager.from_settings(Settings(_env_file=None, ENVIRONMENT="production"))


class TestSecureStorage:
    """Test cases for SecureStorage."""

    @pytest.mark.asyncio
    async def test_write_read_delete(self, storage):
        """Test basic key-value operations."""
        await storage.write("user_email", "alice@example.com")

        assert await storage.read("user_email") == "alice@example.com"
        assert await storage.contains("user_email") is True

        await storage.delete("user_email")

        assert await storage.read("user_email") is None
        assert await storage.contains("user_email") is False

    @pytest.mark.asyncio
    async def test_persisted_encrypted(self, storage, vault):
        """Test values are persisted encrypted and readable by a new instance."""
        await storage.write("mfa_secret_alice", "JBSWY3DPEHPK3PXP")

        raw = storage.path.read_text()
        assert "JBSWY3DPEHPK3PXP" not in raw

        reopened = SecureStorage(vault, storage.path)
        assert await reopened.read("mfa_secret_alice") == "JBSWY3DPEHPK3PXP"

    @pytest.mark.asyncio
    async def test_file_permissions(self, storage):
        """Test the storage file is only readable by its owner."""
        await storage.write("k", "v")

        assert storage.path.stat().st_mode & 0o777 == 0o600

    @pytest.mark.asyncio
    async def test_clear(self, storage):
        """Test clear removes every entry."""
        await storage.write("a", 1)
        await storage.write("b", 2)

        await storage.clear()

        assert await storage.read("a") is None
        assert await storage.read("b") is None

    @pytest.mark.asyncio
    async def test_unreadable_with_other_key(self, storage):
        """Test a storage file written with another key raises EncryptionError."""
        await storage.write("a", 1)
        other = SecureStorage(VaultManager(os.urandom(32)), storage.path)

        with pytest.raises(EncryptionError):
            await other.read("a")
