"""Adult content filter resolution.

Three layers decide whether adult sources are hidden, first match wins:

1. Query parameters: ``adult`` (1/true shows, 0/false hides), then
   ``filter`` (off/disable shows, on/enable hides).
2. The user's admin override (``UserEntry.disable_adult_filter``), if set.
3. The site-wide ``SiteConfig.disable_yellow_filter`` flag.

The admin can relax filtering per user while users can still override it
for a single request via the URL.
"""

from collections.abc import Iterable, Mapping

from src.storage.models import AdminConfig, SourceEntry

SHOW_ADULT_VALUES = frozenset({"1", "true"})
HIDE_ADULT_VALUES = frozenset({"0", "false"})
FILTER_OFF_VALUES = frozenset({"off", "disable"})
FILTER_ON_VALUES = frozenset({"on", "enable"})


def resolve_adult_filter(
    params: Mapping[str, str],
    disable_yellow_filter: bool,
    user_disable_adult_filter: bool | None = None,
) -> bool:
    """Decide whether adult content should be filtered.

    Args:
        params: Request query parameters
        disable_yellow_filter: Site-wide "filter disabled" flag
        user_disable_adult_filter: Per-user "filter disabled" override, None if unset

    Returns:
        True if adult content should be filtered out
    """
    adult = params.get("adult")
    filter_param = params.get("filter")

    if adult in SHOW_ADULT_VALUES:
        return False
    if adult in HIDE_ADULT_VALUES:
        return True
    if filter_param in FILTER_OFF_VALUES:
        return False
    if filter_param in FILTER_ON_VALUES:
        return True

    if user_disable_adult_filter is not None:
        return not user_disable_adult_filter

    return not disable_yellow_filter


def resolve_adult_filter_legacy(params: Mapping[str, str], disable_yellow_filter: bool) -> bool:
    """Resolve without a per-user layer (older call sites)."""
    return resolve_adult_filter(params, disable_yellow_filter, None)


def resolve_adult_filter_for_user(
    params: Mapping[str, str],
    config: AdminConfig,
    username: str,
) -> bool:
    """Resolve for a user using both layers of the admin config."""
    user = config.find_user(username)
    return resolve_adult_filter(
        params,
        config.site_config.disable_yellow_filter,
        user.disable_adult_filter if user else None,
    )


def filter_adult_sources(sources: Iterable[SourceEntry], should_filter: bool) -> list[SourceEntry]:
    """Drop adult sources when filtering is on."""
    if not should_filter:
        return list(sources)
    return [source for source in sources if not source.is_adult]


def adult_filter_header(should_filter: bool) -> str:
    """Value for the X-Adult-Filter debug header."""
    return "enabled" if should_filter else "disabled"
