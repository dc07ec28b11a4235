"""PostgreSQL storage backend built on asyncpg.

Same tables as the SQLite backend. Multi-statement operations run inside
``conn.transaction()`` so they commit or roll back as one unit; pooled
connections make a client-side lock unnecessary.
"""

from collections.abc import Sequence
from typing import Any

import asyncpg

from src.logger import get_logger
from src.storage.base import (
    SEARCH_HISTORY_LIMIT,
    BaseStorage,
    next_timestamp_ns,
    read_operation,
    skip_config_key,
    write_operation,
)
from src.storage.codec import decode_record, decode_records, encode_record
from src.storage.errors import UserAlreadyExists
from src.storage.models import AdminConfig, Favorite, PlayRecord, SkipConfig

logger = get_logger(__name__)

Statement = tuple[str, Sequence[Any]]

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    username TEXT PRIMARY KEY,
    password TEXT NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS play_records (
    username TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (username, key)
);

CREATE TABLE IF NOT EXISTS favorites (
    username TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (username, key)
);

CREATE TABLE IF NOT EXISTS search_history (
    username TEXT NOT NULL,
    keyword TEXT NOT NULL,
    created_at BIGINT NOT NULL,
    seq BIGSERIAL,
    PRIMARY KEY (username, keyword)
);

CREATE TABLE IF NOT EXISTS skip_configs (
    username TEXT NOT NULL,
    source TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (username, source, id)
);

CREATE TABLE IF NOT EXISTS admin_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    data TEXT NOT NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_play_records_username ON play_records(username);
CREATE INDEX IF NOT EXISTS idx_favorites_username ON favorites(username);
CREATE INDEX IF NOT EXISTS idx_search_history_username
    ON search_history(username, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_skip_configs_username ON skip_configs(username);
"""

USER_TABLES = ("users", "play_records", "favorites", "search_history", "skip_configs")


class PostgresStorage(BaseStorage):
    """PostgreSQL-based storage with asyncpg."""

    backend_name = "postgres"
    backend_errors = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

    def __init__(self, database_url: str | None, min_size: int = 1, max_size: int = 10):
        """Initialize Postgres storage.

        Args:
            database_url: PostgreSQL connection URL, or None for degraded mode
            min_size: Minimum pool size
            max_size: Maximum pool size
        """
        super().__init__()
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Any = None

        if not database_url:
            logger.warning("postgres_url_not_configured")

    @property
    def available(self) -> bool:
        return bool(self._database_url)

    @property
    def pool(self) -> Any:
        """Get active connection pool."""
        if self._pool is None:
            raise RuntimeError("Database not connected. Use 'async with' or call connect()")
        return self._pool

    async def _initialize(self) -> None:
        """Open the pool and create tables and indexes."""
        pool = await asyncpg.create_pool(
            self._database_url, min_size=self._min_size, max_size=self._max_size
        )
        try:
            async with pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except BaseException:
            await pool.close()
            raise
        self._pool = pool
        logger.debug("postgres_connected")

    async def close(self) -> None:
        """Close database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.debug("postgres_disconnected")
        self._initialized = False

    async def _fetchrow(self, sql: str, *params: Any) -> Any:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(sql, *params)

    async def _fetch(self, sql: str, *params: Any) -> list[Any]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(sql, *params)

    async def _batch(self, statements: Sequence[Statement]) -> None:
        """Apply statements inside one transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for sql, params in statements:
                    await conn.execute(sql, *params)

    # -------------------------------------------------------------------------
    # Play records
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_play_record(self, username: str, key: str) -> PlayRecord | None:
        row = await self._fetchrow(
            "SELECT data FROM play_records WHERE username = $1 AND key = $2", username, key
        )
        return decode_record(PlayRecord, row["data"]) if row else None

    @write_operation
    async def set_play_record(self, username: str, key: str, record: PlayRecord) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO play_records (username, key, data, updated_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT (username, key) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                """,
                username,
                key,
                encode_record(record),
            )

    @read_operation(dict)
    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        rows = await self._fetch("SELECT key, data FROM play_records WHERE username = $1", username)
        return decode_records(PlayRecord, {row["key"]: row["data"] for row in rows})

    @write_operation
    async def delete_play_record(self, username: str, key: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM play_records WHERE username = $1 AND key = $2", username, key
            )

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_favorite(self, username: str, key: str) -> Favorite | None:
        row = await self._fetchrow(
            "SELECT data FROM favorites WHERE username = $1 AND key = $2", username, key
        )
        return decode_record(Favorite, row["data"]) if row else None

    @write_operation
    async def set_favorite(self, username: str, key: str, favorite: Favorite) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO favorites (username, key, data, updated_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT (username, key) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                """,
                username,
                key,
                encode_record(favorite),
            )

    @read_operation(dict)
    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        rows = await self._fetch("SELECT key, data FROM favorites WHERE username = $1", username)
        return decode_records(Favorite, {row["key"]: row["data"] for row in rows})

    @write_operation
    async def delete_favorite(self, username: str, key: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM favorites WHERE username = $1 AND key = $2", username, key
            )

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    @write_operation
    async def register_user(self, username: str, password: str) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "INSERT INTO users (username, password) VALUES ($1, $2)", username, password
                )
        except asyncpg.UniqueViolationError as e:
            raise UserAlreadyExists(username) from e
        logger.info("user_registered", backend=self.backend_name, username=username)

    @read_operation(bool)
    async def verify_user(self, username: str, password: str) -> bool:
        row = await self._fetchrow("SELECT password FROM users WHERE username = $1", username)
        return row is not None and row["password"] == password

    @read_operation(bool)
    async def check_user_exist(self, username: str) -> bool:
        row = await self._fetchrow("SELECT 1 FROM users WHERE username = $1", username)
        return row is not None

    @write_operation
    async def change_password(self, username: str, new_password: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE users SET password = $1 WHERE username = $2", new_password, username
            )

    @write_operation
    async def delete_user(self, username: str) -> None:
        await self._batch(
            [(f"DELETE FROM {table} WHERE username = $1", (username,)) for table in USER_TABLES]
        )
        logger.info("user_deleted", backend=self.backend_name, username=username)

    @read_operation(list)
    async def get_all_users(self) -> list[str]:
        rows = await self._fetch("SELECT username FROM users ORDER BY username")
        return [row["username"] for row in rows]

    # -------------------------------------------------------------------------
    # Search history
    # -------------------------------------------------------------------------

    @read_operation(list)
    async def get_search_history(self, username: str) -> list[str]:
        rows = await self._fetch(
            """
            SELECT keyword FROM search_history
            WHERE username = $1
            ORDER BY created_at DESC, seq DESC
            LIMIT $2
            """,
            username,
            SEARCH_HISTORY_LIMIT,
        )
        return [row["keyword"] for row in rows]

    @write_operation
    async def add_search_history(self, username: str, keyword: str) -> None:
        await self._batch(
            [
                (
                    "DELETE FROM search_history WHERE username = $1 AND keyword = $2",
                    (username, keyword),
                ),
                (
                    "INSERT INTO search_history (username, keyword, created_at) VALUES ($1, $2, $3)",
                    (username, keyword, next_timestamp_ns()),
                ),
                (
                    """
                    DELETE FROM search_history
                    WHERE username = $1
                    AND keyword NOT IN (
                        SELECT keyword FROM search_history
                        WHERE username = $1
                        ORDER BY created_at DESC, seq DESC
                        LIMIT $2
                    )
                    """,
                    (username, SEARCH_HISTORY_LIMIT),
                ),
            ]
        )

    @write_operation
    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        async with self.pool.acquire() as conn:
            if keyword:
                await conn.execute(
                    "DELETE FROM search_history WHERE username = $1 AND keyword = $2",
                    username,
                    keyword,
                )
            else:
                await conn.execute("DELETE FROM search_history WHERE username = $1", username)

    # -------------------------------------------------------------------------
    # Skip configs
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_skip_config(self, username: str, source: str, item_id: str) -> SkipConfig | None:
        row = await self._fetchrow(
            "SELECT data FROM skip_configs WHERE username = $1 AND source = $2 AND id = $3",
            username,
            source,
            item_id,
        )
        return decode_record(SkipConfig, row["data"]) if row else None

    @write_operation
    async def set_skip_config(
        self, username: str, source: str, item_id: str, config: SkipConfig
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO skip_configs (username, source, id, data, updated_at)
                VALUES ($1, $2, $3, $4, NOW())
                ON CONFLICT (username, source, id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                """,
                username,
                source,
                item_id,
                encode_record(config),
            )

    @write_operation
    async def delete_skip_config(self, username: str, source: str, item_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM skip_configs WHERE username = $1 AND source = $2 AND id = $3",
                username,
                source,
                item_id,
            )

    @read_operation(dict)
    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        rows = await self._fetch(
            "SELECT source, id, data FROM skip_configs WHERE username = $1", username
        )
        return decode_records(
            SkipConfig,
            {skip_config_key(row["source"], row["id"]): row["data"] for row in rows},
        )

    # -------------------------------------------------------------------------
    # Admin config
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_admin_config(self) -> AdminConfig | None:
        async with self.pool.acquire() as conn:
            payload = await conn.fetchval("SELECT data FROM admin_config WHERE id = 1")
        return decode_record(AdminConfig, payload)

    @write_operation
    async def set_admin_config(self, config: AdminConfig) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO admin_config (id, data, updated_at)
                VALUES (1, $1, NOW())
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                """,
                encode_record(config),
            )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    @write_operation
    async def clear_all_data(self) -> None:
        await self._batch([(f"DELETE FROM {table}", ()) for table in (*USER_TABLES, "admin_config")])
        logger.info("all_data_cleared", backend=self.backend_name)
