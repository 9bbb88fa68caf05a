"""
The visibility predicate.

Visibility depends on lifecycle fields only: ``deleted_at``, ``archived_at``,
``published_at`` and ``status``. Failure records and processing flags never
enter into it. Python callers use ``is_visible``; SQL callers use
``VISIBLE_SQL``, which is built from the same constants.
"""

from __future__ import annotations

from typing import Any, Optional

from .types import AssetStatus

HIDDEN_STATUSES = (AssetStatus.HIDDEN,)

VISIBLE_SQL = (
    "{alias}deleted_at IS NULL AND {alias}archived_at IS NULL "
    "AND {alias}published_at IS NOT NULL AND {alias}status NOT IN ("
    + ", ".join("'%s'" % s.value for s in HIDDEN_STATUSES)
    + ")"
)


def visible_sql(alias: Optional[str] = None) -> str:
    """WHERE-clause fragment selecting the default visible set."""
    return VISIBLE_SQL.format(alias=f"{alias}." if alias else "")


def is_visible(
    deleted_at: Any,
    archived_at: Any,
    published_at: Any,
    status: Any,
) -> bool:
    """Return True when an asset belongs to the default visible set."""
    status = AssetStatus(status) if status is not None else AssetStatus.VISIBLE
    return (
        deleted_at is None
        and archived_at is None
        and published_at is not None
        and status not in HIDDEN_STATUSES
    )


def asset_is_visible(asset) -> bool:
    return is_visible(asset.deleted_at, asset.archived_at, asset.published_at, asset.status)


__all__ = ["is_visible", "asset_is_visible", "visible_sql", "VISIBLE_SQL", "HIDDEN_STATUSES"]
