"""
Unit tests for the record store layer: filter serialization, the in-memory
store and the Grist HTTP client.
"""
import json

import httpx
import pytest

from trustlayer.security.models import AuditAction
from trustlayer.store.base import Filter, StoreError
from trustlayer.store.grist import GristRecordStore
from trustlayer.store.memory import InMemoryRecordStore


class TestFilter:
    """Test cases for Filter."""

    def test_expression(self):
        """Test conjunction serialization."""
        expression = (
            Filter()
            .eq("identifier", "alice")
            .eq("is_ip_based", False)
            .gte("timestamp", "2024-01-01T00:00:00.000000+00:00")
        )

        assert expression.to_expression() == (
            'identifier == "alice" and is_ip_based == 0 '
            'and timestamp >= "2024-01-01T00:00:00.000000+00:00"'
        )

    def test_enum_and_numbers(self):
        """Test enums serialize by value and numbers unquoted."""
        expression = Filter().eq("action", AuditAction.LOGIN_FAILED).lte("failed_attempts", 5)

        assert expression.to_expression() == 'action == "LOGIN_FAILED" and failed_attempts <= 5'

    def test_quotes_escaped(self):
        """Test string values cannot break out of the formula."""
        expression = Filter().eq("username", 'bob" or 1 == 1')

        assert expression.to_expression() == 'username == "bob\\" or 1 == 1"'

    def test_invalid_column(self):
        """Test column names must be identifiers."""
        with pytest.raises(ValueError):
            Filter().eq("user name", "x")

    def test_empty_is_falsy(self):
        """Test an empty filter is falsy."""
        assert not Filter()
        assert Filter().eq("a", 1)

    def test_matches(self):
        """Test local evaluation used by the in-memory store."""
        expression = Filter().eq("identifier", "alice").gte("locked_until", "2024-01-01")

        assert expression.matches({"identifier": "alice", "locked_until": "2024-02-01"})
        assert not expression.matches({"identifier": "alice", "locked_until": "2023-12-31"})
        assert not expression.matches({"identifier": "alice", "locked_until": ""})
        assert not expression.matches({"identifier": "bob", "locked_until": "2024-02-01"})


class TestInMemoryRecordStore:
    """Test cases for InMemoryRecordStore."""

    @pytest.mark.asyncio
    async def test_create_list_update(self, store):
        """Test basic record lifecycle."""
        record_id = await store.create("RateLimits", {"identifier": "alice", "failed_attempts": 1})
        await store.update("RateLimits", record_id, {"failed_attempts": 2})

        records = await store.list("RateLimits", Filter().eq("identifier", "alice"))

        assert len(records) == 1
        assert records[0].id == record_id
        assert records[0].get("failed_attempts") == 2

    @pytest.mark.asyncio
    async def test_sort_and_limit(self, store):
        """Test descending sort and limit."""
        for ts in ("2024-01-01", "2024-01-03", "2024-01-02"):
            await store.create("AuditLogs", {"timestamp": ts})

        records = await store.list("AuditLogs", sort="-timestamp", limit=2)

        assert [r.get("timestamp") for r in records] == ["2024-01-03", "2024-01-02"]

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store):
        """Test updating an unknown record raises StoreError."""
        with pytest.raises(StoreError) as exc_info:
            await store.update("RateLimits", 99, {"failed_attempts": 1})

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_simulated_outage(self, store):
        """Test fail_with makes every call raise."""
        store.fail_with = StoreError("unreachable")

        with pytest.raises(StoreError):
            await store.list("AuditLogs")
        with pytest.raises(StoreError):
            await store.create("AuditLogs", {})


def grist_store(handler, api_key="secret-key") -> GristRecordStore:
    return GristRecordStore(
        "https://grist.example.com/",
        "doc123",
        api_key=api_key,
        transport=httpx.MockTransport(handler),
    )


class TestGristRecordStore:
    """Test cases for the Grist HTTP client."""

    @pytest.mark.asyncio
    async def test_list_request(self):
        """Test list sends filter, sort, limit and bearer token."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"records": [
                {"id": 7, "fields": {"identifier": "alice", "failed_attempts": 3}},
            ]})

        store = grist_store(handler)
        records = await store.list(
            "RateLimits",
            filter=Filter().eq("identifier", "alice"),
            sort="-timestamp",
            limit=1,
        )
        await store.aclose()

        assert seen["url"].path == "/api/docs/doc123/tables/RateLimits/records"
        assert seen["url"].params["filter"] == 'identifier == "alice"'
        assert seen["url"].params["sort"] == "-timestamp"
        assert seen["url"].params["limit"] == "1"
        assert seen["auth"] == "Bearer secret-key"
        assert records[0].id == 7
        assert records[0].get("failed_attempts") == 3

    @pytest.mark.asyncio
    async def test_create_request(self):
        """Test create posts a records envelope and returns the id."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"records": [{"id": 42}]})

        store = grist_store(handler)
        record_id = await store.create("AuditLogs", {"action": "LOGIN_SUCCESS"})
        await store.aclose()

        assert record_id == 42
        assert seen["method"] == "POST"
        assert seen["body"] == {"records": [{"fields": {"action": "LOGIN_SUCCESS"}}]}

    @pytest.mark.asyncio
    async def test_update_request(self):
        """Test update patches the record by id."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200)

        store = grist_store(handler)
        await store.update("RateLimits", 3, {"failed_attempts": 0})
        await store.aclose()

        assert seen["method"] == "PATCH"
        assert seen["body"] == {"records": [{"id": 3, "fields": {"failed_attempts": 0}}]}

    @pytest.mark.asyncio
    async def test_error_status(self):
        """Test non-2xx responses become StoreError with the status code."""
        store = grist_store(lambda request: httpx.Response(403, text="forbidden"))

        with pytest.raises(StoreError) as exc_info:
            await store.list("AuditLogs")
        await store.aclose()

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_transport_error(self):
        """Test connection failures become StoreError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        store = grist_store(handler)

        with pytest.raises(StoreError):
            await store.create("AuditLogs", {})
        await store.aclose()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Test unparsable bodies become StoreError."""
        store = grist_store(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(StoreError):
            await store.list("AuditLogs")
        await store.aclose()

    @pytest.mark.asyncio
    async def test_api_key_callable(self):
        """Test a callable key source is resolved per request."""
        keys = iter(["first", "second"])
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={"records": []})

        store = grist_store(handler, api_key=lambda: next(keys))
        await store.list("AuditLogs")
        await store.list("AuditLogs")
        await store.aclose()

        assert seen == ["Bearer first", "Bearer second"]

    @pytest.mark.asyncio
    async def test_memory_store_agrees_with_filter_semantics(self):
        """Test the in-memory store accepts the same filters as the client."""
        store = InMemoryRecordStore()
        await store.create("RateLimits", {"identifier": "10.0.0.1", "is_ip_based": True})
        await store.create("RateLimits", {"identifier": "10.0.0.1", "is_ip_based": False})

        records = await store.list(
            "RateLimits", Filter().eq("identifier", "10.0.0.1").eq("is_ip_based", True)
        )

        assert len(records) == 1
        assert records[0].get("is_ip_based") is True
