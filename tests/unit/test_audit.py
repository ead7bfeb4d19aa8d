"""
Unit tests for audit logging.
"""
import json
from datetime import timedelta

import pytest

from trustlayer.core.clock import to_iso
from trustlayer.security.audit import AuditLogger
from trustlayer.security.models import AuditAction, AuditEvent, Severity
from trustlayer.store.base import StoreError


class TestAuditLogger:
    """Test cases for AuditLogger."""

    @pytest.mark.asyncio
    async def test_log_auth_event(self, audit, store, clock):
        """Test an authentication event is stored with all columns."""
        stored = await audit.log_auth_event(
            AuditAction.LOGIN_SUCCESS,
            username="alice@example.com",
            success=True,
            ip_address="10.0.0.1",
            user_agent="pytest",
            metadata={"role": "admin"},
        )

        assert stored is True
        row = store.rows("AuditLogs")[0]
        assert row["action"] == "LOGIN_SUCCESS"
        assert row["resource"] == "authentication"
        assert row["username"] == "alice@example.com"
        assert row["success"] is True
        assert row["ip_address"] == "10.0.0.1"
        assert row["timestamp"] == to_iso(clock.now())
        assert json.loads(row["metadata"]) == {"role": "admin"}

    @pytest.mark.asyncio
    async def test_log_data_operation(self, audit, store):
        """Test data operations carry resource and record id."""
        await audit.log_data_operation(AuditAction.UPDATE, "Customers", "bob", record_id=12)

        row = store.rows("AuditLogs")[0]
        assert row["action"] == "UPDATE"
        assert row["resource"] == "Customers"
        assert row["record_id"] == 12

    @pytest.mark.asyncio
    async def test_log_security_event(self, audit, audit_events):
        """Test security events carry severity and description in metadata."""
        await audit.log_security_event(
            AuditAction.BRUTE_FORCE_ATTEMPT,
            Severity.HIGH,
            "Many failures",
            ip_address="10.0.0.9",
        )

        event = audit_events()[0]
        assert event.resource == "security"
        assert event.success is False
        assert event.severity == Severity.HIGH
        assert event.metadata["description"] == "Many failures"

    @pytest.mark.asyncio
    async def test_log_admin_action(self, audit, audit_events):
        """Test admin actions record actor and target."""
        await audit.log_admin_action(AuditAction.ACCOUNT_UNLOCKED, actor="admin", target="alice")

        event = audit_events()[0]
        assert event.resource == "administration"
        assert event.username == "admin"
        assert event.metadata["target"] == "alice"

    @pytest.mark.asyncio
    async def test_store_failure_is_not_raised(self, audit, store):
        """Test audit writes are best-effort when the store is down."""
        store.fail_with = StoreError("down")

        stored = await audit.log_auth_event(AuditAction.LOGIN_FAILED, username="alice", success=False)

        assert stored is False

    @pytest.mark.asyncio
    async def test_query_failure_returns_empty(self, audit, store):
        """Test reads degrade to an empty list."""
        store.fail_with = StoreError("down")

        assert await audit.query(username="alice") == []

    @pytest.mark.asyncio
    async def test_query_filters_and_order(self, audit, clock):
        """Test query filters by user and action, newest first."""
        await audit.log_auth_event(AuditAction.LOGIN_FAILED, username="alice", success=False)
        clock.advance(timedelta(minutes=1))
        await audit.log_auth_event(AuditAction.LOGIN_FAILED, username="bob", success=False)
        clock.advance(timedelta(minutes=1))
        await audit.log_auth_event(AuditAction.LOGIN_SUCCESS, username="alice", success=True)
        clock.advance(timedelta(minutes=1))
        await audit.log_auth_event(AuditAction.LOGIN_FAILED, username="alice", success=False)

        events = await audit.query(username="alice", action=AuditAction.LOGIN_FAILED)

        assert len(events) == 2
        assert all(e.username == "alice" for e in events)
        assert events[0].timestamp > events[1].timestamp

    @pytest.mark.asyncio
    async def test_query_time_range(self, audit, clock):
        """Test since and until bound the results."""
        start = clock.now()
        for _ in range(5):
            await audit.log_auth_event(AuditAction.LOGIN_FAILED, username="alice", success=False)
            clock.advance(timedelta(hours=1))

        events = await audit.query(since=start + timedelta(hours=1), until=start + timedelta(hours=3))

        assert len(events) == 3

    @pytest.mark.asyncio
    async def test_failed_login_attempts_window(self, audit, clock):
        """Test failed logins outside the window are ignored."""
        await audit.log_auth_event(AuditAction.LOGIN_FAILED, username="alice", success=False)
        clock.advance(timedelta(hours=25))
        await audit.log_auth_event(AuditAction.LOGIN_FAILED, username="alice", success=False)

        events = await audit.failed_login_attempts(username="alice")

        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_security_events_by_severity(self, audit):
        """Test severity filtering of security events."""
        await audit.log_security_event(AuditAction.ACCOUNT_LOCKED, Severity.MEDIUM, "locked")
        await audit.log_security_event(
            AuditAction.CERTIFICATE_PINNING_FAILURE, Severity.CRITICAL, "bad pin"
        )

        critical = await audit.security_events(severity=Severity.CRITICAL)

        assert [e.action for e in critical] == [AuditAction.CERTIFICATE_PINNING_FAILURE]
        assert len(await audit.security_events()) == 2

    @pytest.mark.asyncio
    async def test_statistics(self, audit):
        """Test aggregate statistics."""
        await audit.log_auth_event(AuditAction.LOGIN_FAILED, username="alice", success=False, ip_address="1.1.1.1")
        await audit.log_auth_event(AuditAction.LOGIN_SUCCESS, username="alice", success=True, ip_address="1.1.1.1")
        await audit.log_data_operation(AuditAction.READ, "Customers", "bob", ip_address="2.2.2.2")

        stats = await audit.statistics()

        assert stats.total_events == 3
        assert stats.failed_logins == 1
        assert stats.successful_logins == 1
        assert stats.data_operations == 1
        assert stats.unique_users == 2
        assert stats.unique_ips == 2


class TestAuditEvent:
    """Test cases for AuditEvent conversion."""

    def test_unknown_action_preserved(self):
        """Test actions written by other clients survive decoding."""
        event = AuditEvent.from_fields({"action": "CUSTOM_ACTION", "resource": "x"})

        assert event.action == "CUSTOM_ACTION"
        assert event.action_name == "CUSTOM_ACTION"

    def test_invalid_metadata(self):
        """Test non-JSON metadata is kept raw."""
        event = AuditEvent.from_fields({"action": "LOGIN_FAILED", "metadata": "not json"})

        assert event.metadata == {"raw": "not json"}
        assert event.severity is None

    def test_logger_without_clock(self, store):
        """Test the system clock is used by default."""
        logger = AuditLogger(store)

        assert logger.clock.now().tzinfo is not None
