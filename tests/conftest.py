"""
PyTest configuration and shared fixtures for the TrustLayer test suite.

Every component runs against the in-memory record store, a manual clock and
a secure storage file in a temporary directory.
"""
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio

from trustlayer.core.clock import ManualClock
from trustlayer.core.encryption import SecureStorage, VaultManager
from trustlayer.security.alerts import AlertDispatcher
from trustlayer.security.audit import AuditLogger
from trustlayer.security.login import Principal
from trustlayer.security.mfa import MfaEngine
from trustlayer.security.models import AuditAction, AuditEvent
from trustlayer.security.rate_limiter import RateLimiter
from trustlayer.security.rotation import CredentialRotator
from trustlayer.store.memory import InMemoryRecordStore


START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> ManualClock:
    """Deterministic clock starting at a fixed UTC instant."""
    return ManualClock(START)


@pytest.fixture
def store() -> InMemoryRecordStore:
    """Empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def vault() -> VaultManager:
    """Vault with a random 256-bit master key."""
    return VaultManager(os.urandom(32))


@pytest.fixture
def storage(vault: VaultManager, tmp_path: Path) -> SecureStorage:
    """Encrypted key-value storage in a temporary directory."""
    return SecureStorage(vault, tmp_path / "secure_store.enc")


@pytest.fixture
def audit(store: InMemoryRecordStore, clock: ManualClock) -> AuditLogger:
    """Audit logger writing to the in-memory AuditLogs table."""
    return AuditLogger(store, clock=clock)


@pytest.fixture
def limiter(store: InMemoryRecordStore, audit: AuditLogger, clock: ManualClock) -> RateLimiter:
    """Rate limiter with the default five attempts and 15 minute lockout."""
    return RateLimiter(store, audit=audit, clock=clock)


@pytest.fixture
def mfa(storage: SecureStorage, audit: AuditLogger, clock: ManualClock) -> MfaEngine:
    """MFA engine with cheap bcrypt rounds for fast tests."""
    return MfaEngine(storage, audit=audit, clock=clock, issuer="TrustLayer", bcrypt_rounds=4)


@pytest_asyncio.fixture
async def rotator(
    store: InMemoryRecordStore,
    storage: SecureStorage,
    audit: AuditLogger,
    clock: ManualClock,
) -> AsyncGenerator[CredentialRotator, None]:
    """Credential rotator bootstrapped with a known key; background tasks cancelled on teardown."""
    rotator = CredentialRotator(store, storage, initial_key="grist_initial", audit=audit, clock=clock)
    yield rotator
    await rotator.stop()


@pytest.fixture
def dispatcher(audit: AuditLogger, clock: ManualClock) -> AlertDispatcher:
    """Dispatcher without channels; tests attach their own."""
    return AlertDispatcher([], audit=audit, clock=clock)


class FakeAuthenticator:
    """Authenticator backed by a dict of identifier -> (secret, principal)."""

    def __init__(self) -> None:
        self.users = {}
        self.calls = 0

    def add(self, identifier: str, secret: str, role: str = "user", active: bool = True) -> Principal:
        principal = Principal(identifier=identifier, email=identifier, role=role, active=active)
        self.users[identifier] = (secret, principal)
        return principal

    async def authenticate(self, identifier: str, secret: str) -> Optional[Principal]:
        self.calls += 1
        entry = self.users.get(identifier)
        if entry is None or entry[0] != secret:
            return None
        return entry[1]


@pytest.fixture
def authenticator() -> FakeAuthenticator:
    """Authenticator that knows alice@example.com with password 'correct-horse'."""
    fake = FakeAuthenticator()
    fake.add("alice@example.com", "correct-horse", role="admin")
    return fake


@pytest.fixture
def audit_events(store: InMemoryRecordStore):
    """Callable returning the stored AuditEvents, optionally for one action."""
    def read(action: Optional[AuditAction] = None):
        events = [AuditEvent.from_fields(row) for row in store.rows("AuditLogs")]
        if action is not None:
            events = [e for e in events if e.action == action]
        return events
    return read
