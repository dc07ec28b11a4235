"""In-process storage backend.

Useful for development and tests. Records are kept as encoded payloads so
the memory backend goes through the same codec boundary as the others and
callers never share mutable model instances with the store.

Every method finishes its mutations without awaiting in between, which
makes each operation atomic with respect to other coroutines.
"""

from collections import defaultdict

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


class MemoryStorage(BaseStorage):
    """Dict-backed storage, lost on process exit."""

    backend_name = "memory"
    backend_errors = ()

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._users: dict[str, str] = {}
        self._play_records: defaultdict[str, dict[str, str]] = defaultdict(dict)
        self._favorites: defaultdict[str, dict[str, str]] = defaultdict(dict)
        # keyword -> insertion timestamp
        self._search_history: defaultdict[str, dict[str, int]] = defaultdict(dict)
        self._skip_configs: defaultdict[str, dict[tuple[str, str], str]] = defaultdict(dict)
        self._admin_config: str | None = None

    @property
    def available(self) -> bool:
        return True

    async def _initialize(self) -> None:
        pass

    async def close(self) -> None:
        self._initialized = False

    # -------------------------------------------------------------------------
    # Play records
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_play_record(self, username: str, key: str) -> PlayRecord | None:
        return decode_record(PlayRecord, self._play_records.get(username, {}).get(key))

    @write_operation
    async def set_play_record(self, username: str, key: str, record: PlayRecord) -> None:
        self._play_records[username][key] = encode_record(record)

    @read_operation(dict)
    async def get_all_play_records(self, username: str) -> dict[str, PlayRecord]:
        return decode_records(PlayRecord, self._play_records.get(username, {}))

    @write_operation
    async def delete_play_record(self, username: str, key: str) -> None:
        self._play_records.get(username, {}).pop(key, None)

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_favorite(self, username: str, key: str) -> Favorite | None:
        return decode_record(Favorite, self._favorites.get(username, {}).get(key))

    @write_operation
    async def set_favorite(self, username: str, key: str, favorite: Favorite) -> None:
        self._favorites[username][key] = encode_record(favorite)

    @read_operation(dict)
    async def get_all_favorites(self, username: str) -> dict[str, Favorite]:
        return decode_records(Favorite, self._favorites.get(username, {}))

    @write_operation
    async def delete_favorite(self, username: str, key: str) -> None:
        self._favorites.get(username, {}).pop(key, None)

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    @write_operation
    async def register_user(self, username: str, password: str) -> None:
        if username in self._users:
            raise UserAlreadyExists(username)
        self._users[username] = password
        logger.info("user_registered", backend=self.backend_name, username=username)

    @read_operation(bool)
    async def verify_user(self, username: str, password: str) -> bool:
        stored = self._users.get(username)
        return stored is not None and stored == password

    @read_operation(bool)
    async def check_user_exist(self, username: str) -> bool:
        return username in self._users

    @write_operation
    async def change_password(self, username: str, new_password: str) -> None:
        if username in self._users:
            self._users[username] = new_password

    @write_operation
    async def delete_user(self, username: str) -> None:
        self._users.pop(username, None)
        self._play_records.pop(username, None)
        self._favorites.pop(username, None)
        self._search_history.pop(username, None)
        self._skip_configs.pop(username, None)
        logger.info("user_deleted", backend=self.backend_name, username=username)

    @read_operation(list)
    async def get_all_users(self) -> list[str]:
        return sorted(self._users)

    # -------------------------------------------------------------------------
    # Search history
    # -------------------------------------------------------------------------

    @read_operation(list)
    async def get_search_history(self, username: str) -> list[str]:
        history = self._search_history.get(username, {})
        ordered = sorted(history, key=history.__getitem__, reverse=True)
        return ordered[:SEARCH_HISTORY_LIMIT]

    @write_operation
    async def add_search_history(self, username: str, keyword: str) -> None:
        history = self._search_history[username]
        history.pop(keyword, None)
        history[keyword] = next_timestamp_ns()
        if len(history) > SEARCH_HISTORY_LIMIT:
            keep = sorted(history, key=history.__getitem__, reverse=True)[:SEARCH_HISTORY_LIMIT]
            self._search_history[username] = {k: history[k] for k in keep}

    @write_operation
    async def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        if keyword:
            self._search_history.get(username, {}).pop(keyword, None)
        else:
            self._search_history.pop(username, None)

    # -------------------------------------------------------------------------
    # Skip configs
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_skip_config(self, username: str, source: str, item_id: str) -> SkipConfig | None:
        configs = self._skip_configs.get(username, {})
        return decode_record(SkipConfig, configs.get((source, item_id)))

    @write_operation
    async def set_skip_config(
        self, username: str, source: str, item_id: str, config: SkipConfig
    ) -> None:
        self._skip_configs[username][(source, item_id)] = encode_record(config)

    @write_operation
    async def delete_skip_config(self, username: str, source: str, item_id: str) -> None:
        self._skip_configs.get(username, {}).pop((source, item_id), None)

    @read_operation(dict)
    async def get_all_skip_configs(self, username: str) -> dict[str, SkipConfig]:
        payloads = {
            skip_config_key(source, item_id): payload
            for (source, item_id), payload in self._skip_configs.get(username, {}).items()
        }
        return decode_records(SkipConfig, payloads)

    # -------------------------------------------------------------------------
    # Admin config
    # -------------------------------------------------------------------------

    @read_operation()
    async def get_admin_config(self) -> AdminConfig | None:
        return decode_record(AdminConfig, self._admin_config)

    @write_operation
    async def set_admin_config(self, config: AdminConfig) -> None:
        self._admin_config = encode_record(config)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    @write_operation
    async def clear_all_data(self) -> None:
        self._reset()
        logger.info("all_data_cleared", backend=self.backend_name)
