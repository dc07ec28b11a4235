"""Pydantic models for stored entities.

Payloads are opaque to the storage engine: every model keeps unknown fields
(``extra="allow"``) so data written by newer clients survives a round trip.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StoredModel(BaseModel):
    """Base for models that are persisted as JSON payloads."""

    model_config = ConfigDict(extra="allow")


class PlayRecord(StoredModel):
    """Watch progress for one title from one source."""

    title: str
    source_name: str
    cover: str = ""
    year: str = ""
    index: int = 1  # Current episode, 1-based
    total_episodes: int = 0
    play_time: float = 0  # Seconds into the current episode
    total_time: float = 0  # Episode duration in seconds
    save_time: int = 0  # Unix ms when the client saved progress
    search_title: str = ""


class Favorite(StoredModel):
    """A favorited title."""

    title: str
    source_name: str
    cover: str = ""
    year: str = ""
    total_episodes: int = 0
    save_time: int = 0
    search_title: str = ""
    origin: Literal["vod", "live"] | None = None


class SkipConfig(StoredModel):
    """Intro/outro skip markers for one title from one source."""

    enable: bool = False
    intro_time: float = 0  # Seconds to skip at the start
    outro_time: float = 0  # Seconds before the end to stop


class SiteConfig(StoredModel):
    """Site-wide settings."""

    site_name: str = "MoonTV"
    announcement: str = ""
    search_downstream_max_page: int = Field(default=5, ge=1)
    site_interface_cache_time: int = Field(default=7200, ge=0)
    disable_yellow_filter: bool = False
    fluid_search: bool = True


class UserEntry(StoredModel):
    """Per-user admin settings."""

    username: str
    role: Literal["owner", "admin", "user"] = "user"
    banned: bool = False
    # None means "no override": the site-wide filter setting applies
    disable_adult_filter: bool | None = None
    enabled_apis: list[str] | None = None
    tags: list[str] | None = None


class UserConfig(StoredModel):
    """Admin-managed user list."""

    users: list[UserEntry] = Field(default_factory=list)


class SourceEntry(StoredModel):
    """A configured upstream content source."""

    key: str
    name: str
    api: str
    detail: str | None = None
    disabled: bool = False
    is_adult: bool = False


class AdminConfig(StoredModel):
    """Process-wide admin configuration, stored as a singleton."""

    site_config: SiteConfig = Field(default_factory=SiteConfig)
    user_config: UserConfig = Field(default_factory=UserConfig)
    source_config: list[SourceEntry] = Field(default_factory=list)
    custom_categories: list[dict[str, Any]] = Field(default_factory=list)

    def find_user(self, username: str) -> UserEntry | None:
        """Get the admin entry for a username, if any."""
        for user in self.user_config.users:
            if user.username == username:
                return user
        return None
