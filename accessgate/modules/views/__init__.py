"""Materialized permission views."""

from accessgate.modules.views.refresher import (
    VIEW_EFFECTIVE_PERMISSIONS,
    VIEW_EFFECTIVE_ROLES,
    VIEWS,
    MaterializedViewRefresher,
    UnknownViewError,
)

__all__ = [
    "MaterializedViewRefresher",
    "UnknownViewError",
    "VIEWS",
    "VIEW_EFFECTIVE_ROLES",
    "VIEW_EFFECTIVE_PERMISSIONS",
]
