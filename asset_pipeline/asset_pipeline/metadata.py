"""
Metadata bag helpers.

The finalize merge is ``asset ∪ version`` with the version winning on key
conflicts, except for asset-scoped keys: those keep the asset's value whenever
the asset holds a meaningful one.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

# Keys owned by the asset rather than by any one processing attempt.
ASSET_SCOPED_KEYS = (
    "category_id",
    "metadata_extracted",
    "preview_generated",
    "approval_status",
)


def is_meaningful(value: Any) -> bool:
    """False for None, empty strings/containers and the literal string "null"."""
    if value is None:
        return False
    if isinstance(value, str):
        stripped = value.strip()
        return bool(stripped) and stripped.lower() != "null"
    if isinstance(value, (dict, list, tuple, set)):
        return len(value) > 0
    return True


def merge_metadata(
    asset_metadata: Optional[Mapping[str, Any]],
    version_metadata: Optional[Mapping[str, Any]],
    asset_scoped_keys=ASSET_SCOPED_KEYS,
) -> Dict[str, Any]:
    """
    Merge a version's metadata bag into the asset's.

    >>> merge_metadata({"category_id": 5, "x": 1}, {"y": 2})
    {'category_id': 5, 'x': 1, 'y': 2}
    >>> merge_metadata({"category_id": 5, "x": 1, "y": 2}, {"x": 9})
    {'category_id': 5, 'x': 9, 'y': 2}
    """
    asset_metadata = dict(asset_metadata or {})
    merged: Dict[str, Any] = dict(asset_metadata)
    merged.update(version_metadata or {})
    for key in asset_scoped_keys:
        if key in asset_metadata and is_meaningful(asset_metadata[key]):
            merged[key] = asset_metadata[key]
    return merged


def stage_note_keys(stage_name: str) -> Dict[str, str]:
    """Metadata keys a stage writes to describe its own outcome."""
    prefix = f"_{stage_name}"
    return {
        "completed": f"{prefix}_completed",
        "skipped": f"{prefix}_skipped",
        "skip_reason": f"{prefix}_skip_reason",
        "failed": f"{prefix}_failed",
        "error": f"{prefix}_error",
        "failed_at": f"{prefix}_failed_at",
    }


__all__ = ["ASSET_SCOPED_KEYS", "is_meaningful", "merge_metadata", "stage_note_keys"]
