"""Backend selection.

The backend is chosen once at process start from settings. A backend whose
connection details are missing is still constructed, in degraded mode, so
the application can boot before storage is provisioned.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from src.config import StorageType, settings
from src.logger import get_logger
from src.storage.base import BaseStorage
from src.storage.errors import BackendUnavailable
from src.storage.memory import MemoryStorage
from src.storage.postgres import PostgresStorage
from src.storage.redis import RedisStorage
from src.storage.sqlite import SQLiteStorage

logger = get_logger(__name__)


def get_storage_backend(
    storage_type: StorageType = "sqlite",
    database_url: str | None = None,
    db_path: str | Path | None = "data/storage.db",
    redis_url: str | None = None,
    redis_key_prefix: str = "mt",
) -> BaseStorage:
    """Get the storage backend for a storage type.

    Args:
        storage_type: One of memory, sqlite, postgres, redis
        database_url: PostgreSQL connection URL (postgres only)
        db_path: SQLite database file (sqlite only)
        redis_url: Redis connection URL (redis only)
        redis_key_prefix: Key namespace (redis only)

    Returns:
        Storage instance, possibly in degraded mode

    Raises:
        ValueError: If storage_type is unknown
    """
    if storage_type == "memory":
        logger.info("using_memory_storage")
        return MemoryStorage()
    if storage_type == "sqlite":
        logger.info("using_sqlite_storage", db_path=str(db_path))
        return SQLiteStorage(db_path)
    if storage_type == "postgres":
        logger.info("using_postgres_storage")
        return PostgresStorage(database_url)
    if storage_type == "redis":
        logger.info("using_redis_storage", key_prefix=redis_key_prefix)
        if not redis_url:
            return RedisStorage(None, redis_key_prefix)
        return RedisStorage.from_url(redis_url, redis_key_prefix)
    raise ValueError(f"Unknown storage type: {storage_type}")


def get_storage_from_settings() -> BaseStorage:
    """Build the backend described by the global settings."""
    database_url = settings.database_url.get_secret_value() if settings.database_url else None
    redis_url = settings.redis_url.get_secret_value() if settings.redis_url else None
    return get_storage_backend(
        settings.storage_type,
        database_url=database_url,
        db_path=settings.sqlite_path,
        redis_url=redis_url,
        redis_key_prefix=settings.redis_key_prefix,
    )


@asynccontextmanager
async def get_storage(storage: BaseStorage | None = None) -> AsyncIterator[BaseStorage]:
    """Get a connected storage instance as a context manager.

    An unreachable backend does not abort the caller: the failure is logged
    and initialization is retried lazily on the next storage call.

    Args:
        storage: Pre-built backend; defaults to the one described by settings

    Yields:
        Storage instance
    """
    if storage is None:
        storage = get_storage_from_settings()
    try:
        await storage.connect()
    except BackendUnavailable as e:
        logger.warning("storage_connect_deferred", backend=storage.backend_name, error=str(e))
    try:
        yield storage
    finally:
        await storage.close()
