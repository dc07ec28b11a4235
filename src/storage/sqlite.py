"""SQLite storage backend built on aiosqlite.

This is the reference relational adapter. Each entity lives in its own table
keyed as in the data model, with JSON payloads in a ``data`` TEXT column.
The schema is created lazily on first use.

Payloads are selected as BLOB so a row holding invalid UTF-8 only fails in
the codec for that row instead of aborting the whole cursor.

All statements go through one shared connection. Access is serialized by a
connection lock so a multi-statement batch (user deletion, search history
trim) is never observed half-applied.
"""

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import aiosqlite

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
from src.storage.errors import BackendUnavailable, UserAlreadyExists
from src.storage.models import AdminConfig, Favorite, PlayRecord, SkipConfig

logger = get_logger(__name__)

Statement = tuple[str, Sequence[Any]]

# Raw payload bytes; text decoding is left to the codec
PAYLOAD = "CAST(data AS BLOB) AS data"

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    username TEXT PRIMARY KEY,
    password TEXT NOT NULL,
    created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS play_records (
    username TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (username, key)
);

CREATE TABLE IF NOT EXISTS favorites (
    username TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (username, key)
);

CREATE TABLE IF NOT EXISTS search_history (
    username TEXT NOT NULL,
    keyword TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (username, keyword)
);

CREATE TABLE IF NOT EXISTS skip_configs (
    username TEXT NOT NULL,
    source TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (username, source, id)
);

CREATE TABLE IF NOT EXISTS admin_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    data TEXT NOT NULL,
    updated_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_play_records_username ON play_records(username);
CREATE INDEX IF NOT EXISTS idx_favorites_username ON favorites(username);
CREATE INDEX IF NOT EXISTS idx_search_history_username
    ON search_history(username, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_skip_configs_username ON skip_configs(username);
"""

# Tables holding per-user rows, deleted together with the user
USER_TABLES = ("users", "play_records", "favorites", "search_history", "skip_configs")


class SQLiteStorage(BaseStorage):
    """SQLite-based storage."""

    backend_name = "sqlite"
    backend_errors = (aiosqlite.Error, OSError)

    def __init__(self, db_path: str | Path | None):
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file, or None for degraded mode
        """
        super().__init__()
        self._db_path = Path(db_path) if db_path is not None else None
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

        if self._db_path is None:
            logger.warning("sqlite_path_not_configured")

    @property
    def available(self) -> bool:
        return self._db_path is not None

    @property
    def db(self) -> aiosqlite.Connection:
        """Get active database connection."""
        if self._db is None:
            raise RuntimeError("Database not connected. Use 'async with' or call connect()")
        return self._db

    async def _initialize(self) -> None:
        """Open the connection and create tables and indexes."""
        if self._db_path is None:
            raise BackendUnavailable("SQLite database path is not configured")
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        db = await aiosqlite.connect(self._db_path)
        try:
            db.row_factory = aiosqlite.Row
            await db.executescript(SCHEMA)
            await db.commit()
        except aiosqlite.Error:
            await db.close()
            raise
        self._db = db
        logger.info("sqlite_schema_ready", db_path=str(self._db_path))

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
        self._initialized = False

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Any:
        async with self._lock:
            async with self.db.execute(sql, params) as cursor:
                return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[Any]:
        async with self._lock:
            async with self.db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def _batch(self, statements: Sequence[Statement]) -> None:
        """Apply statements as one transaction: all commit or none do."""
        async with self._lock:
            try:
                for sql, params in statements:
                    await self.db.execute(sql, params)
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

    # -------------------------------------------------------------------------
    # Play records
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_play_record(self, username: str, key: str) -> PlayRecord | None:
        row = await self._fetchone(
            f"SELECT {PAYLOAD} FROM play_records WHERE username = ? AND key = ?",
            (username, key),
        )
        return decode_record(PlayRecord, row["data"]) if row else None

    @write_operation
    async def set_play_record(self, username: str, key: str, record: PlayRecord) -> None:
        await self._batch(
            [
                (
                    """
                    INSERT INTO play_records (username, key, data, updated_at)
                    VALUES (?, ?, ?, strftime('%s', 'now'))
                    ON CONFLICT(username, key) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (username, key, encode_record(record)),
                )
            ]
        )

    @read_operation(dict)
    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        rows = await self._fetchall(
            f"SELECT key, {PAYLOAD} FROM play_records WHERE username = ?", (username,)
        )
        return decode_records(PlayRecord, {row["key"]: row["data"] for row in rows})

    @write_operation
    async def delete_play_record(self, username: str, key: str) -> None:
        await self._batch(
            [("DELETE FROM play_records WHERE username = ? AND key = ?", (username, key))]
        )

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_favorite(self, username: str, key: str) -> Favorite | None:
        row = await self._fetchone(
            f"SELECT {PAYLOAD} FROM favorites WHERE username = ? AND key = ?",
            (username, key),
        )
        return decode_record(Favorite, row["data"]) if row else None

    @write_operation
    async def set_favorite(self, username: str, key: str, favorite: Favorite) -> None:
        await self._batch(
            [
                (
                    """
                    INSERT INTO favorites (username, key, data, updated_at)
                    VALUES (?, ?, ?, strftime('%s', 'now'))
                    ON CONFLICT(username, key) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (username, key, encode_record(favorite)),
                )
            ]
        )

    @read_operation(dict)
    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        rows = await self._fetchall(
            f"SELECT key, {PAYLOAD} FROM favorites WHERE username = ?", (username,)
        )
        return decode_records(Favorite, {row["key"]: row["data"] for row in rows})

    @write_operation
    async def delete_favorite(self, username: str, key: str) -> None:
        await self._batch(
            [("DELETE FROM favorites WHERE username = ? AND key = ?", (username, key))]
        )

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    @write_operation
    async def register_user(self, username: str, password: str) -> None:
        try:
            await self._batch(
                [("INSERT INTO users (username, password) VALUES (?, ?)", (username, password))]
            )
        except aiosqlite.IntegrityError as e:
            raise UserAlreadyExists(username) from e
        logger.info("user_registered", backend=self.backend_name, username=username)

    @read_operation(bool)
    async def verify_user(self, username: str, password: str) -> bool:
        row = await self._fetchone("SELECT password FROM users WHERE username = ?", (username,))
        return row is not None and row["password"] == password

    @read_operation(bool)
    async def check_user_exist(self, username: str) -> bool:
        row = await self._fetchone("SELECT 1 FROM users WHERE username = ?", (username,))
        return row is not None

    @write_operation
    async def change_password(self, username: str, new_password: str) -> None:
        await self._batch(
            [("UPDATE users SET password = ? WHERE username = ?", (new_password, username))]
        )

    @write_operation
    async def delete_user(self, username: str) -> None:
        await self._batch(
            [(f"DELETE FROM {table} WHERE username = ?", (username,)) for table in USER_TABLES]
        )
        logger.info("user_deleted", backend=self.backend_name, username=username)

    @read_operation(list)
    async def get_all_users(self) -> list[str]:
        rows = await self._fetchall("SELECT username FROM users ORDER BY username")
        return [row["username"] for row in rows]

    # -------------------------------------------------------------------------
    # Search history
    # -------------------------------------------------------------------------

    @read_operation(list)
    async def get_search_history(self, username: str) -> list[str]:
        rows = await self._fetchall(
            """
            SELECT keyword FROM search_history
            WHERE username = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (username, SEARCH_HISTORY_LIMIT),
        )
        return [row["keyword"] for row in rows]

    @write_operation
    async def add_search_history(self, username: str, keyword: str) -> None:
        await self._batch(
            [
                (
                    "DELETE FROM search_history WHERE username = ? AND keyword = ?",
                    (username, keyword),
                ),
                (
                    "INSERT INTO search_history (username, keyword, created_at) VALUES (?, ?, ?)",
                    (username, keyword, next_timestamp_ns()),
                ),
                (
                    """
                    DELETE FROM search_history
                    WHERE username = ?
                    AND rowid NOT IN (
                        SELECT rowid FROM search_history
                        WHERE username = ?
                        ORDER BY created_at DESC, rowid DESC
                        LIMIT ?
                    )
                    """,
                    (username, username, SEARCH_HISTORY_LIMIT),
                ),
            ]
        )

    @write_operation
    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        if keyword:
            statement: Statement = (
                "DELETE FROM search_history WHERE username = ? AND keyword = ?",
                (username, keyword),
            )
        else:
            statement = ("DELETE FROM search_history WHERE username = ?", (username,))
        await self._batch([statement])

    # -------------------------------------------------------------------------
    # Skip configs
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_skip_config(self, username: str, source: str, item_id: str) -> SkipConfig | None:
        row = await self._fetchone(
            f"SELECT {PAYLOAD} FROM skip_configs WHERE username = ? AND source = ? AND id = ?",
            (username, source, item_id),
        )
        return decode_record(SkipConfig, row["data"]) if row else None

    @write_operation
    async def set_skip_config(
        self, username: str, source: str, item_id: str, config: SkipConfig
    ) -> None:
        await self._batch(
            [
                (
                    """
                    INSERT INTO skip_configs (username, source, id, data, updated_at)
                    VALUES (?, ?, ?, ?, strftime('%s', 'now'))
                    ON CONFLICT(username, source, id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (username, source, item_id, encode_record(config)),
                )
            ]
        )

    @write_operation
    async def delete_skip_config(self, username: str, source: str, item_id: str) -> None:
        await self._batch(
            [
                (
                    "DELETE FROM skip_configs WHERE username = ? AND source = ? AND id = ?",
                    (username, source, item_id),
                )
            ]
        )

    @read_operation(dict)
    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        rows = await self._fetchall(
            f"SELECT source, id, {PAYLOAD} FROM skip_configs WHERE username = ?", (username,)
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
        row = await self._fetchone(f"SELECT {PAYLOAD} FROM admin_config WHERE id = 1")
        return decode_record(AdminConfig, row["data"]) if row else None

    @write_operation
    async def set_admin_config(self, config: AdminConfig) -> None:
        await self._batch(
            [
                (
                    """
                    INSERT INTO admin_config (id, data, updated_at)
                    VALUES (1, ?, strftime('%s', 'now'))
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (encode_record(config),),
                )
            ]
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    @write_operation
    async def clear_all_data(self) -> None:
        await self._batch(
            [(f"DELETE FROM {table}", ()) for table in (*USER_TABLES, "admin_config")]
        )
        logger.info("all_data_cleared", backend=self.backend_name)
