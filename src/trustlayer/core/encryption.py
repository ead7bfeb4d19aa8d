"""
TrustLayer Encryption Module
AES-256-GCM vault and the encrypted key-value store backing secrets,
rotation state and session timestamps.
"""

import asyncio
import base64
import json
import os
import secrets
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from trustlayer.core.config import ConfigurationError, Settings
from trustlayer.core.errors import TrustLayerError
from trustlayer.core.logging import LoggerMixin


class EncryptionError(TrustLayerError):
    """Encryption-related errors"""
    pass


class VaultManager(LoggerMixin):
    """
    AES-256-GCM encryption with PBKDF2 derived per-purpose keys
    """

    PACKAGE_VERSION = "1.0"
    KDF_ITERATIONS = 100000

    def __init__(self, master_key: bytes):
        if len(master_key) < 16:
            raise EncryptionError("Master key must be at least 128 bits")
        self._master_key = master_key
        self._keys: Dict[str, bytes] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "VaultManager":
        """
        Build a vault from TRUSTLAYER_MASTER_KEY (base64)

        Outside production a missing key is replaced by an ephemeral one,
        which means the secure store cannot be read back after a restart.
        """
        if settings.MASTER_KEY:
            try:
                return cls(base64.b64decode(settings.MASTER_KEY))
            except (ValueError, TypeError) as e:
                raise ConfigurationError(f"TRUSTLAYER_MASTER_KEY is not valid base64: {e}")

        if settings.is_production:
            raise ConfigurationError("TRUSTLAYER_MASTER_KEY is required in production")

        vault = cls(AESGCM.generate_key(bit_length=256))
        vault.logger.warning(
            "Generated ephemeral master key - set TRUSTLAYER_MASTER_KEY to persist secure storage"
        )
        return vault

    def encrypt_data(self, data: Any, key_id: str = "default") -> str:
        """
        Encrypt JSON-serializable data

        Returns:
            Base64 encoded package holding nonce, ciphertext and key id
        """
        try:
            plaintext = json.dumps(data).encode("utf-8")
            nonce = secrets.token_bytes(12)  # 96-bit nonce for GCM
            aad = json.dumps({"key_id": key_id, "version": self.PACKAGE_VERSION}).encode("utf-8")
            ciphertext = AESGCM(self._get_key(key_id)).encrypt(nonce, plaintext, aad)
        except (TypeError, ValueError) as e:
            raise EncryptionError(f"Encryption failed: {e}")

        package = {
            "version": self.PACKAGE_VERSION,
            "key_id": key_id,
            "algorithm": "AES-256-GCM",
            "nonce": base64.b64encode(nonce).decode("utf-8"),
            "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
            "aad": base64.b64encode(aad).decode("utf-8"),
        }
        return base64.b64encode(json.dumps(package).encode("utf-8")).decode("utf-8")

    def decrypt_data(self, encrypted_data: str) -> Any:
        """
        Decrypt a package produced by encrypt_data
        """
        try:
            package = json.loads(base64.b64decode(encrypted_data.encode("utf-8")))
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Malformed encrypted package: {e}")

        for field in ("key_id", "nonce", "ciphertext", "aad"):
            if field not in package:
                raise EncryptionError(f"Missing field in encrypted package: {field}")

        try:
            plaintext = AESGCM(self._get_key(package["key_id"])).decrypt(
                base64.b64decode(package["nonce"]),
                base64.b64decode(package["ciphertext"]),
                base64.b64decode(package["aad"]),
            )
        except InvalidTag:
            raise EncryptionError("Decryption failed: wrong master key or tampered data")

        return json.loads(plaintext.decode("utf-8"))

    def _get_key(self, key_id: str) -> bytes:
        if key_id not in self._keys:
            self._keys[key_id] = self._derive_key(key_id)
        return self._keys[key_id]

    def _derive_key(self, key_id: str) -> bytes:
        """Derive a purpose key from the master key using PBKDF2"""
        digest = hashes.Hash(hashes.SHA256())
        digest.update(f"{key_id}:trustlayer".encode("utf-8"))
        salt = digest.finalize()[:16]

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.KDF_ITERATIONS,
        )
        return kdf.derive(self._master_key)


class SecureStorage(LoggerMixin):
    """
    Encrypted key-value store persisted as a single vault package on disk

    Every write re-encrypts the whole map and atomically replaces the file,
    so a reader never observes a half-written entry.
    """

    KEY_ID = "secure_storage"

    def __init__(self, vault: VaultManager, path: Path):
        self.vault = vault
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._cache: Optional[Dict[str, Any]] = None

    async def read(self, key: str) -> Optional[Any]:
        entries = await self._load()
        return entries.get(key)

    async def contains(self, key: str) -> bool:
        entries = await self._load()
        return key in entries

    async def write(self, key: str, value: Any) -> None:
        async with self._lock:
            entries = dict(await self._load())
            entries[key] = value
            self._persist(entries)

    async def delete(self, key: str) -> None:
        async with self._lock:
            entries = dict(await self._load())
            if key not in entries:
                return
            del entries[key]
            self._persist(entries)

    async def clear(self) -> None:
        async with self._lock:
            self._persist({})
            self.logger.info("Secure storage cleared")

    async def _load(self) -> Dict[str, Any]:
        if self._cache is not None:
            return self._cache

        if not self.path.exists():
            self._cache = {}
            return self._cache

        try:
            encrypted = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise EncryptionError(f"Cannot read secure storage {self.path}: {e}")

        entries = self.vault.decrypt_data(encrypted) if encrypted.strip() else {}
        if not isinstance(entries, dict):
            raise EncryptionError("Secure storage is corrupted")
        self._cache = entries
        return entries

    def _persist(self, entries: Dict[str, Any]) -> None:
        encrypted = self.vault.encrypt_data(entries, self.KEY_ID)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(encrypted, encoding="utf-8")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise EncryptionError(f"Cannot write secure storage {self.path}: {e}")
        self._cache = entries
