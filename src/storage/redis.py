"""Redis storage backend (key-value).

Key layout, all under a configurable prefix:

    {prefix}:users                  set of registered usernames
    {prefix}:u:{username}:password  string
    {prefix}:u:{username}:play      hash  key -> PlayRecord JSON
    {prefix}:u:{username}:fav       hash  key -> Favorite JSON
    {prefix}:u:{username}:skip      hash  "source+id" -> SkipConfig JSON
    {prefix}:u:{username}:search    sorted set  keyword scored by timestamp (us)
    {prefix}:admin_config           string, AdminConfig JSON

Multi-key operations run as MULTI/EXEC pipelines.

Requires redis (async): pip install redis
"""

from typing import Any

import redis.asyncio as redis

from src.logger import get_logger
from src.storage.base import (
    SEARCH_HISTORY_LIMIT,
    BaseStorage,
    next_timestamp_us,
    read_operation,
    skip_config_key,
    write_operation,
)
from src.storage.codec import decode_record, decode_records, encode_record
from src.storage.errors import UserAlreadyExists
from src.storage.models import AdminConfig, Favorite, PlayRecord, SkipConfig

logger = get_logger(__name__)

USER_KEY_KINDS = ("password", "play", "fav", "skip", "search")


class RedisStorage(BaseStorage):
    """Redis-backed storage.

    Expects a client created with ``decode_responses=True``.
    """

    backend_name = "redis"
    backend_errors = (redis.RedisError, OSError)

    def __init__(self, client: Any | None, key_prefix: str = "mt"):
        """Initialize Redis storage.

        Args:
            client: redis.asyncio.Redis client, or None for degraded mode
            key_prefix: Namespace for every key
        """
        super().__init__()
        self._client = client
        self._prefix = key_prefix

        if client is None:
            logger.warning("redis_client_not_configured")

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "mt") -> "RedisStorage":
        """Create storage with a client for the given URL."""
        return cls(redis.from_url(url, decode_responses=True), key_prefix)

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Any:
        """Get the Redis client."""
        if self._client is None:
            raise RuntimeError("Redis client not configured")
        return self._client

    async def _initialize(self) -> None:
        """Check the server is reachable; Redis needs no schema."""
        await self.client.ping()

    async def close(self) -> None:
        """Close the client connection pool."""
        if self._client is not None:
            await self._client.aclose()
        self._initialized = False

    def _users_key(self) -> str:
        return f"{self._prefix}:users"

    def _user_key(self, username: str, kind: str) -> str:
        return f"{self._prefix}:u:{username}:{kind}"

    def _admin_key(self) -> str:
        return f"{self._prefix}:admin_config"

    # -------------------------------------------------------------------------
    # Play records
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_play_record(self, username: str, key: str) -> PlayRecord | None:
        payload = await self.client.hget(self._user_key(username, "play"), key)
        return decode_record(PlayRecord, payload)

    @write_operation
    async def set_play_record(self, username: str, key: str, record: PlayRecord) -> None:
        await self.client.hset(self._user_key(username, "play"), key, encode_record(record))

    @read_operation(dict)
    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        payloads = await self.client.hgetall(self._user_key(username, "play"))
        return decode_records(PlayRecord, payloads)

    @write_operation
    async def delete_play_record(self, username: str, key: str) -> None:
        await self.client.hdel(self._user_key(username, "play"), key)

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_favorite(self, username: str, key: str) -> Favorite | None:
        payload = await self.client.hget(self._user_key(username, "fav"), key)
        return decode_record(Favorite, payload)

    @write_operation
    async def set_favorite(self, username: str, key: str, favorite: Favorite) -> None:
        await self.client.hset(self._user_key(username, "fav"), key, encode_record(favorite))

    @read_operation(dict)
    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        payloads = await self.client.hgetall(self._user_key(username, "fav"))
        return decode_records(Favorite, payloads)

    @write_operation
    async def delete_favorite(self, username: str, key: str) -> None:
        await self.client.hdel(self._user_key(username, "fav"), key)

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    @write_operation
    async def register_user(self, username: str, password: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._user_key(username, "password"), password, nx=True)
            pipe.sadd(self._users_key(), username)
            created, _ = await pipe.execute()
        if not created:
            raise UserAlreadyExists(username)
        logger.info("user_registered", backend=self.backend_name, username=username)

    @read_operation(bool)
    async def verify_user(self, username: str, password: str) -> bool:
        stored = await self.client.get(self._user_key(username, "password"))
        return stored is not None and stored == password

    @read_operation(bool)
    async def check_user_exist(self, username: str) -> bool:
        return bool(await self.client.exists(self._user_key(username, "password")))

    @write_operation
    async def change_password(self, username: str, new_password: str) -> None:
        await self.client.set(self._user_key(username, "password"), new_password, xx=True)

    @write_operation
    async def delete_user(self, username: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(*(self._user_key(username, kind) for kind in USER_KEY_KINDS))
            pipe.srem(self._users_key(), username)
            await pipe.execute()
        logger.info("user_deleted", backend=self.backend_name, username=username)

    @read_operation(list)
    async def get_all_users(self) -> list[str]:
        return sorted(await self.client.smembers(self._users_key()))

    # -------------------------------------------------------------------------
    # Search history
    # -------------------------------------------------------------------------

    @read_operation(list)
    async def get_search_history(self, username: str) -> list[str]:
        return await self.client.zrange(
            self._user_key(username, "search"), 0, SEARCH_HISTORY_LIMIT - 1, desc=True
        )

    @write_operation
    async def add_search_history(self, username: str, keyword: str) -> None:
        key = self._user_key(username, "search")
        async with self.client.pipeline(transaction=True) as pipe:
            # ZADD on an existing member only refreshes its score
            pipe.zadd(key, {keyword: next_timestamp_us()})
            pipe.zremrangebyrank(key, 0, -(SEARCH_HISTORY_LIMIT + 1))
            await pipe.execute()

    @write_operation
    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        key = self._user_key(username, "search")
        if keyword:
            await self.client.zrem(key, keyword)
        else:
            await self.client.delete(key)

    # -------------------------------------------------------------------------
    # Skip configs
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_skip_config(self, username: str, source: str, item_id: str) -> SkipConfig | None:
        payload = await self.client.hget(
            self._user_key(username, "skip"), skip_config_key(source, item_id)
        )
        return decode_record(SkipConfig, payload)

    @write_operation
    async def set_skip_config(
        self, username: str, source: str, item_id: str, config: SkipConfig
    ) -> None:
        await self.client.hset(
            self._user_key(username, "skip"),
            skip_config_key(source, item_id),
            encode_record(config),
        )

    @write_operation
    async def delete_skip_config(self, username: str, source: str, item_id: str) -> None:
        await self.client.hdel(self._user_key(username, "skip"), skip_config_key(source, item_id))

    @read_operation(dict)
    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        payloads = await self.client.hgetall(self._user_key(username, "skip"))
        return decode_records(SkipConfig, payloads)

    # -------------------------------------------------------------------------
    # Admin config
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_admin_config(self) -> AdminConfig | None:
        return decode_record(AdminConfig, await self.client.get(self._admin_key()))

    @write_operation
    async def set_admin_config(self, config: AdminConfig) -> None:
        await self.client.set(self._admin_key(), encode_record(config))

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    @write_operation
    async def clear_all_data(self) -> None:
        keys = [key async for key in self.client.scan_iter(match=f"{self._prefix}:*")]
        if keys:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(*keys)
                await pipe.execute()
        logger.info("all_data_cleared", backend=self.backend_name, keys=len(keys))
