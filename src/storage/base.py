"""Storage contract shared by every backend adapter.

``BaseStorage`` is the only persistence API the rest of the application sees.
Adapters implement its abstract methods and wrap each one in a guard:

- ``@read_operation(default)``: degraded mode and backend failures return
  ``default()`` (None, ``{}``, ``[]``, False). Reads never raise.
- ``@write_operation``: degraded mode raises BackendUnavailable; backend
  failures are re-raised as BackendUnavailable. StorageError subclasses
  raised by the adapter itself (e.g. UserAlreadyExists) pass through.

Both guards run the adapter's schema initialization first. Initialization is
single-shot: it is serialized by a lock and latched only after success.
"""

import asyncio
import functools
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

from src.logger import get_logger
from src.storage.errors import BackendUnavailable, StorageError
from src.storage.models import AdminConfig, Favorite, PlayRecord, SkipConfig

logger = get_logger(__name__)

# Most-recent distinct keywords kept per user
SEARCH_HISTORY_LIMIT = 20

# Joins SkipConfig (source, id) into the key used by get_all_skip_configs
SKIP_CONFIG_KEY_SEPARATOR = "+"

P = ParamSpec("P")
R = TypeVar("R")

_last_timestamp_ns = 0
_last_timestamp_us = 0


def next_timestamp_ns() -> int:
    """Wall-clock nanoseconds, strictly increasing within this process."""
    global _last_timestamp_ns
    _last_timestamp_ns = max(time.time_ns(), _last_timestamp_ns + 1)
    return _last_timestamp_ns


def next_timestamp_us() -> int:
    """Wall-clock microseconds, strictly increasing within this process.

    Fits exactly in a double, for stores that keep scores as floats.
    """
    global _last_timestamp_us
    _last_timestamp_us = max(time.time_ns() // 1000, _last_timestamp_us + 1)
    return _last_timestamp_us


def skip_config_key(source: str, item_id: str) -> str:
    """Build the mapping key for a SkipConfig."""
    return f"{source}{SKIP_CONFIG_KEY_SEPARATOR}{item_id}"


def read_operation(
    default_factory: Callable[[], Any] = lambda: None,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Guard a read method so it degrades to ``default_factory()``."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(self: "BaseStorage", *args: Any, **kwargs: Any) -> Any:
            if not self.available:
                return default_factory()
            try:
                await self._ensure_initialized()
                return await func(self, *args, **kwargs)
            except self.backend_errors as e:
                logger.error(
                    f"{func.__name__}_failed",
                    backend=self.backend_name,
                    error=str(e),
                )
                return default_factory()

        return wrapper

    return decorator


def write_operation(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """Guard a write method so every failure surfaces as a StorageError."""

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        self: BaseStorage = args[0]  # type: ignore[assignment]
        if not self.available:
            raise BackendUnavailable(f"{self.backend_name} backend is not configured")
        try:
            await self._ensure_initialized()
            return await func(*args, **kwargs)
        except StorageError:
            raise
        except self.backend_errors as e:
            logger.error(
                f"{func.__name__}_failed",
                backend=self.backend_name,
                error=str(e),
            )
            raise BackendUnavailable(f"{func.__name__} failed on {self.backend_name}") from e

    return wrapper


class BaseStorage(ABC):
    """Abstract base class for storage backends."""

    backend_name = "base"

    # Exceptions that mean "the store failed", as opposed to caller bugs
    backend_errors: tuple[type[BaseException], ...] = (OSError,)

    def __init__(self) -> None:
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    @abstractmethod
    def available(self) -> bool:
        """Whether a backend handle was configured (False = degraded mode)."""
        pass

    @abstractmethod
    async def _initialize(self) -> None:
        """Open the backend handle and create the schema."""
        pass

    async def _ensure_initialized(self) -> None:
        """Run _initialize once; a failed attempt is retried on the next call."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self._initialize()
            self._initialized = True
            logger.info("storage_initialized", backend=self.backend_name)

    async def connect(self) -> None:
        """Initialize eagerly instead of on first use.

        In degraded mode this only logs a warning.

        Raises:
            BackendUnavailable: If a configured backend cannot be reached
        """
        if not self.available:
            logger.warning("storage_degraded_mode", backend=self.backend_name)
            return
        try:
            await self._ensure_initialized()
        except self.backend_errors as e:
            logger.error("storage_connect_failed", backend=self.backend_name, error=str(e))
            raise BackendUnavailable(f"Cannot connect to {self.backend_name} backend") from e

    @abstractmethod
    async def close(self) -> None:
        """Release the backend handle."""
        pass

    async def __aenter__(self) -> "BaseStorage":
        """Connect to the backend."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object | None,
    ) -> None:
        """Close the backend handle."""
        await self.close()

    # -------------------------------------------------------------------------
    # Play records
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_play_record(self, username: str, key: str) -> PlayRecord | None:
        """Get one play record, or None if absent."""
        pass

    @abstractmethod
    async def set_play_record(self, username: str, key: str, record: PlayRecord) -> None:
        """Create or overwrite a play record."""
        pass

    @abstractmethod
    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        """Get all play records of a user keyed by content key."""
        pass

    @abstractmethod
    async def delete_play_record(self, username: str, key: str) -> None:
        """Delete a play record (no-op if absent)."""
        pass

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_favorite(self, username: str, key: str) -> Favorite | None:
        """Get one favorite, or None if absent."""
        pass

    @abstractmethod
    async def set_favorite(self, username: str, key: str, favorite: Favorite) -> None:
        """Create or overwrite a favorite."""
        pass

    @abstractmethod
    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        """Get all favorites of a user keyed by content key."""
        pass

    @abstractmethod
    async def delete_favorite(self, username: str, key: str) -> None:
        """Delete a favorite (no-op if absent)."""
        pass

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    @abstractmethod
    async def register_user(self, username: str, password: str) -> None:
        """Create a user.

        Raises:
            UserAlreadyExists: If the username is taken
        """
        pass

    @abstractmethod
    async def verify_user(self, username: str, password: str) -> bool:
        """Check a username/password pair."""
        pass

    @abstractmethod
    async def check_user_exist(self, username: str) -> bool:
        """Check whether a username is registered."""
        pass

    @abstractmethod
    async def change_password(self, username: str, new_password: str) -> None:
        """Replace a user's password (no-op for unknown users)."""
        pass

    @abstractmethod
    async def delete_user(self, username: str) -> None:
        """Delete a user and every per-user record as one unit."""
        pass

    @abstractmethod
    async def get_all_users(self) -> list[str]:
        """Get all usernames in ascending order."""
        pass

    # -------------------------------------------------------------------------
    # Search history
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_search_history(self, username: str) -> list[str]:
        """Get keywords, most recent first, at most SEARCH_HISTORY_LIMIT."""
        pass

    @abstractmethod
    async def add_search_history(self, username: str, keyword: str) -> None:
        """Add or refresh a keyword and trim history to SEARCH_HISTORY_LIMIT."""
        pass

    @abstractmethod
    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        """Delete one keyword, or the whole history if keyword is None."""
        pass

    # -------------------------------------------------------------------------
    # Skip configs
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_skip_config(self, username: str, source: str, item_id: str) -> SkipConfig | None:
        """Get skip markers for one title, or None if absent."""
        pass

    @abstractmethod
    async def set_skip_config(
        self, username: str, source: str, item_id: str, config: SkipConfig
    ) -> None:
        """Create or overwrite skip markers."""
        pass

    @abstractmethod
    async def delete_skip_config(self, username: str, source: str, item_id: str) -> None:
        """Delete skip markers (no-op if absent)."""
        pass

    @abstractmethod
    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        """Get all skip markers of a user keyed by ``"{source}+{id}"``."""
        pass

    # -------------------------------------------------------------------------
    # Admin config
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_admin_config(self) -> AdminConfig | None:
        """Get the admin config singleton, or None if never saved."""
        pass

    @abstractmethod
    async def set_admin_config(self, config: AdminConfig) -> None:
        """Create or overwrite the admin config singleton."""
        pass

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    @abstractmethod
    async def clear_all_data(self) -> None:
        """Delete everything, admin config included."""
        pass
