"""
Unit tests for the Redis document store (mocked client).
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoPermissionError, ResponseError, WatchError

from shared.errors import PermissionDeniedError, StoreUnavailableError, TransactionConflictError
from service_entitlements.app.store.base import subscription_ref, usage_ref
from service_entitlements.app.store.redis_store import RedisDocumentStore, translate_redis_error


class TestRedisDocumentStore:
    """Test cases for RedisDocumentStore."""

    @pytest.fixture
    def pipe(self):
        """Mock WATCH/MULTI pipeline."""
        pipe = MagicMock()
        pipe.watch = AsyncMock()
        pipe.get = AsyncMock(return_value=None)
        pipe.execute = AsyncMock(return_value=[True, 1])
        pipe.reset = AsyncMock()
        return pipe

    @pytest.fixture
    def client(self, pipe):
        """Mock redis.asyncio client."""
        client = MagicMock()
        pipeline_ctx = MagicMock()
        pipeline_ctx.__aenter__ = AsyncMock(return_value=pipe)
        pipeline_ctx.__aexit__ = AsyncMock(return_value=False)
        client.pipeline.return_value = pipeline_ctx
        client.get = AsyncMock(return_value=None)
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def store(self, client):
        """Create RedisDocumentStore instance."""
        return RedisDocumentStore("redis://localhost:6379/0", key_prefix="ent", client=client)

    def test_key_and_channel_layout(self, store):
        """Test key namespacing."""
        ref = usage_ref("user-1", "2024-03-01")
        assert store.key(ref) == "ent:daily_usage/user-1_2024-03-01"
        assert store.channel(ref) == "ent:changes:daily_usage/user-1_2024-03-01"

    @pytest.mark.asyncio
    async def test_start_pings_server(self, store, client):
        """Test start."""
        await store.start()
        client.ping.assert_awaited()

    @pytest.mark.asyncio
    async def test_get_document_decodes_json(self, store, client):
        """Test reading a document."""
        client.get.return_value = json.dumps({"tierId": "pro-monthly"})

        data = await store.get_document(subscription_ref("user-1"))

        assert data == {"tierId": "pro-monthly"}
        client.get.assert_awaited_once_with("ent:subscriptions/user-1")

    @pytest.mark.asyncio
    async def test_transaction_watches_reads_and_publishes_writes(self, store, pipe):
        """Test a read-modify-write transaction."""
        ref = usage_ref("user-1", "2024-03-01")
        pipe.get.return_value = json.dumps({"aiMessages": 1})

        async def increment(txn):
            data = await txn.get(ref)
            data["aiMessages"] += 1
            txn.set(ref, data)
            return data["aiMessages"]

        assert await store.run_transaction(increment) == 2

        pipe.watch.assert_awaited_once_with("ent:daily_usage/user-1_2024-03-01")
        pipe.multi.assert_called_once()
        pipe.set.assert_called_once_with("ent:daily_usage/user-1_2024-03-01", json.dumps({"aiMessages": 2}))
        channel, payload = pipe.publish.call_args[0]
        assert channel == "ent:changes:daily_usage/user-1_2024-03-01"
        assert json.loads(payload) == {"type": "modified", "id": "user-1_2024-03-01", "data": {"aiMessages": 2}}
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_blind_write_is_watched_and_reported_as_added(self, store, pipe):
        """Test that writes without a prior read still learn existence."""
        ref = subscription_ref("user-1")

        async def create(txn):
            txn.set(ref, {"tierId": "free"})

        await store.run_transaction(create)

        pipe.watch.assert_awaited_once_with("ent:subscriptions/user-1")
        payload = json.loads(pipe.publish.call_args[0][1])
        assert payload["type"] == "added"

    @pytest.mark.asyncio
    async def test_delete_of_missing_document_publishes_nothing(self, store, pipe):
        """Test deletes of absent keys."""
        ref = usage_ref("user-1", "2024-03-01")

        async def remove(txn):
            txn.delete(ref)

        await store.run_transaction(remove)

        pipe.delete.assert_not_called()
        pipe.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_read_only_transaction_does_not_execute(self, store, pipe):
        """Test read-only transactions."""
        async def read(txn):
            return await txn.get(subscription_ref("user-1"))

        assert await store.run_transaction(read) is None
        pipe.execute.assert_not_awaited()
        pipe.reset.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_watch_error_maps_to_conflict(self, store, pipe):
        """Test that a lost race raises TransactionConflictError."""
        pipe.execute.side_effect = WatchError("Watched variable changed.")
        ref = usage_ref("user-1", "2024-03-01")

        async def write(txn):
            await txn.get(ref)
            txn.set(ref, {"aiMessages": 1})

        with pytest.raises(TransactionConflictError):
            await store.run_transaction(write)

    @pytest.mark.asyncio
    async def test_connection_error_maps_to_store_unavailable(self, store, client):
        """Test driver error translation on reads."""
        client.get.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(StoreUnavailableError):
            await store.get_document(subscription_ref("user-1"))

    @pytest.mark.asyncio
    async def test_permission_error_maps_to_permission_denied(self, store, pipe):
        """Test ACL error translation inside transactions."""
        pipe.watch.side_effect = NoPermissionError("NOPERM this user has no permissions")

        async def read(txn):
            return await txn.get(subscription_ref("user-1"))

        with pytest.raises(PermissionDeniedError):
            await store.run_transaction(read)

    @pytest.mark.asyncio
    async def test_conditional_increment_runs_script(self, store, client):
        """Test the server-side conditional increment call."""
        script = AsyncMock(return_value=[1, 3])
        client.register_script.return_value = script
        ref = usage_ref("user-1", "2024-03-01")

        result = await store.conditional_increment(
            ref, "aiMessages", 5, {"aiMessages": 0}, updates={"lastUpdated": "t1"}
        )

        assert result == (True, 3)
        kwargs = script.await_args.kwargs
        assert kwargs["keys"] == ["ent:daily_usage/user-1_2024-03-01", "ent:changes:daily_usage/user-1_2024-03-01"]
        field, limit, initial, updates, doc_id = kwargs["args"]
        assert (field, limit, doc_id) == ("aiMessages", 5, "user-1_2024-03-01")
        assert json.loads(initial) == {"aiMessages": 0}
        assert json.loads(updates) == {"lastUpdated": "t1"}

        await store.conditional_increment(ref, "aiMessages", 5, {"aiMessages": 0})
        client.register_script.assert_called_once()

    @pytest.mark.asyncio
    async def test_conditional_increment_refusal_and_errors(self, store, client):
        """Test refusals and driver error translation for the script."""
        script = AsyncMock(return_value=[0, 5])
        client.register_script.return_value = script
        ref = usage_ref("user-1", "2024-03-01")

        assert await store.conditional_increment(ref, "aiMessages", 5, {"aiMessages": 0}) == (False, 5)

        script.side_effect = RedisConnectionError("Connection refused")
        with pytest.raises(StoreUnavailableError):
            await store.conditional_increment(ref, "aiMessages", 5, {"aiMessages": 0})

    @pytest.mark.asyncio
    async def test_health_check_reports_failure(self, store, client):
        """Test health check."""
        assert await store.health_check() is True
        client.ping.side_effect = RedisConnectionError("down")
        assert await store.health_check() is False

    def test_translate_plain_noperm_response(self):
        """Test NOPERM replies that arrive as generic ResponseError."""
        error = translate_redis_error(ResponseError("NOPERM no permissions to access a key"))
        assert isinstance(error, PermissionDeniedError)

    def test_translate_watch_error(self):
        """Test WatchError translation."""
        assert isinstance(translate_redis_error(WatchError()), TransactionConflictError)
