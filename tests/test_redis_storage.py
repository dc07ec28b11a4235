"""Tests for the Redis storage backend.

Behavior shared with other backends is covered by the contract tests; these
tests cover key layout and connection failures.
"""

from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from src.storage import (
    BackendUnavailable,
    Favorite,
    PlayRecord,
    RedisStorage,
    SkipConfig,
)

fakeredis = pytest.importorskip("fakeredis")


@pytest.fixture
def client():
    """Create an in-process fake Redis client."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
async def storage(client) -> RedisStorage:
    """Create a connected Redis storage instance."""
    storage = RedisStorage(client, key_prefix="mt")
    await storage.connect()
    yield storage
    await storage.close()


class TestKeyLayout:
    """Tests for the documented key layout."""

    @pytest.mark.asyncio
    async def test_user_keys(self, storage: RedisStorage, client):
        """Test user data lands under the user's namespace."""
        await storage.register_user("alice", "pw")
        await storage.set_play_record("alice", "k", PlayRecord(title="T", source_name="S"))
        await storage.set_favorite("alice", "k", Favorite(title="T", source_name="S"))
        await storage.set_skip_config("alice", "src", "1", SkipConfig(enable=True))
        await storage.add_search_history("alice", "kw")

        keys = set(await client.keys("mt:*"))

        assert keys == {
            "mt:users",
            "mt:u:alice:password",
            "mt:u:alice:play",
            "mt:u:alice:fav",
            "mt:u:alice:skip",
            "mt:u:alice:search",
        }

    @pytest.mark.asyncio
    async def test_delete_user_removes_all_keys(self, storage: RedisStorage, client):
        """Test user deletion leaves no keys behind for that user."""
        await storage.register_user("alice", "pw")
        await storage.set_play_record("alice", "k", PlayRecord(title="T", source_name="S"))
        await storage.add_search_history("alice", "kw")

        await storage.delete_user("alice")

        assert await client.keys("mt:u:alice:*") == []
        assert await client.sismember("mt:users", "alice") == 0

    @pytest.mark.asyncio
    async def test_clear_all_data_respects_prefix(self, storage: RedisStorage, client):
        """Test clearing only removes keys in this storage's namespace."""
        await client.set("other:key", "value")
        await storage.register_user("alice", "pw")

        await storage.clear_all_data()

        assert await client.keys("mt:*") == []
        assert await client.get("other:key") == "value"

    @pytest.mark.asyncio
    async def test_search_history_trimmed_in_place(self, storage: RedisStorage, client):
        """Test the sorted set never holds more than the limit."""
        for i in range(25):
            await storage.add_search_history("alice", f"kw{i}")

        assert await client.zcard("mt:u:alice:search") == 20


class TestConnectionFailures:
    """Tests for unreachable Redis servers."""

    @pytest.mark.asyncio
    async def test_ping_failure(self):
        """Test a failing ping degrades reads and fails writes."""
        client = AsyncMock()
        client.ping.side_effect = redis.ConnectionError("refused")
        storage = RedisStorage(client)

        with pytest.raises(BackendUnavailable):
            await storage.connect()
        assert await storage.get_all_users() == []
        assert await storage.get_admin_config() is None
        with pytest.raises(BackendUnavailable):
            await storage.add_search_history("alice", "kw")

    @pytest.mark.asyncio
    async def test_command_failure_after_connect(self):
        """Test a failing command after a good ping."""
        client = AsyncMock()
        client.hget.side_effect = redis.TimeoutError("timeout")
        client.hset.side_effect = redis.TimeoutError("timeout")
        storage = RedisStorage(client)

        assert await storage.get_favorite("alice", "k") is None
        with pytest.raises(BackendUnavailable):
            await storage.set_favorite("alice", "k", Favorite(title="T", source_name="S"))

    def test_from_url_builds_client(self):
        """Test from_url creates a configured client without connecting."""
        storage = RedisStorage.from_url("redis://localhost:6379/0", key_prefix="x")

        assert storage.available is True
        assert storage._prefix == "x"
