"""Request-time content filtering policies."""

from src.filters.adult import (
    adult_filter_header,
    filter_adult_sources,
    resolve_adult_filter,
    resolve_adult_filter_for_user,
    resolve_adult_filter_legacy,
)

__all__ = [
    "adult_filter_header",
    "filter_adult_sources",
    "resolve_adult_filter",
    "resolve_adult_filter_for_user",
    "resolve_adult_filter_legacy",
]
