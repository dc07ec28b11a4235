"""Storage engine for watch progress, favorites, search history, skip markers
and the admin config.

One contract (BaseStorage) with interchangeable backends: in-memory, SQLite,
Postgres and Redis. Pick one at startup with get_storage_backend() or
get_storage().
"""

from src.storage.base import (
    SEARCH_HISTORY_LIMIT,
    BaseStorage,
    skip_config_key,
)
from src.storage.codec import decode_record, decode_records, encode_record
from src.storage.errors import (
    BackendUnavailable,
    ConstraintViolation,
    DecodeFailure,
    StorageError,
    UserAlreadyExists,
)
from src.storage.factory import get_storage, get_storage_backend, get_storage_from_settings
from src.storage.memory import MemoryStorage
from src.storage.models import (
    AdminConfig,
    Favorite,
    PlayRecord,
    SiteConfig,
    SkipConfig,
    SourceEntry,
    UserConfig,
    UserEntry,
)
from src.storage.postgres import PostgresStorage
from src.storage.redis import RedisStorage
from src.storage.sqlite import SQLiteStorage

__all__ = [
    # Storage backends
    "BaseStorage",
    "MemoryStorage",
    "PostgresStorage",
    "RedisStorage",
    "SQLiteStorage",
    # Factory functions
    "get_storage",
    "get_storage_backend",
    "get_storage_from_settings",
    # Codec
    "decode_record",
    "decode_records",
    "encode_record",
    # Errors
    "BackendUnavailable",
    "ConstraintViolation",
    "DecodeFailure",
    "StorageError",
    "UserAlreadyExists",
    # Models
    "AdminConfig",
    "Favorite",
    "PlayRecord",
    "SiteConfig",
    "SkipConfig",
    "SourceEntry",
    "UserConfig",
    "UserEntry",
    # Constants
    "SEARCH_HISTORY_LIMIT",
    "skip_config_key",
]
