"""
Stage context.

A StageContext is built fresh for every stage job. It holds the asset and
version rows as loaded at job start, the collaborators the stage may use, and
the metadata patches the stage wants written. Patches are written in one go by
``flush`` so a stage that fails half-way leaves nothing behind.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..classifier import FileCategory, category_of
from ..config import PipelineSettings
from ..metadata import stage_note_keys
from ..types import Asset, AssetVersion


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StageContext:
    """
    Shared state for one stage execution.

    Attributes:
        asset: Asset row loaded at job start
        version: Current version row loaded at job start
        settings: Process-wide thresholds
        repo: AssetRepository (or a test double)
        storage: StorageManager (or a test double)
        vision: Vision client for AI stages (optional)
        engine: ThumbnailEngine for pixel work (optional)
        attempt: Local attempt number within this job (1-based)
        asset_patch: Keys to merge into the asset metadata on flush
        version_patch: Keys to merge into the version metadata on flush
        asset_remove: Asset metadata keys to drop on flush
    """

    asset: Asset
    version: AssetVersion
    settings: PipelineSettings
    repo: Any
    storage: Any
    vision: Any = None
    engine: Any = None
    attempt: int = 1

    asset_patch: Dict[str, Any] = field(default_factory=dict)
    version_patch: Dict[str, Any] = field(default_factory=dict)
    asset_remove: List[str] = field(default_factory=list)

    temp_dirs: List[Path] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    _source_cache: Optional[bytes] = field(default=None, repr=False)

    @property
    def asset_id(self) -> str:
        return self.asset.id

    @property
    def bucket(self) -> Optional[str]:
        return self.asset.storage_bucket

    @property
    def source_path(self) -> Optional[str]:
        return self.asset.storage_root_path or self.version.file_path

    @property
    def category(self) -> FileCategory:
        """Category chosen at dispatch; never re-evaluated mid-chain."""
        return category_of(self.asset)

    @property
    def version_writable(self) -> bool:
        """Versions are immutable once their pipeline is finalized."""
        return not self.version.is_finalized

    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    def register_temp_dir(self, temp_dir: Path) -> None:
        self.temp_dirs.append(temp_dir)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_source(self) -> bytes:
        """Download the working object once per context."""
        if self._source_cache is None:
            self._source_cache = self.storage.get(self.bucket, self.source_path)
        return self._source_cache

    def metadata_value(self, key: str, default: Any = None) -> Any:
        """
        Current value of a metadata key.

        While the version is writable its bag wins. Once finalized the asset
        bag holds the merged result plus later writes (promoted preview paths
        among them), so it is read first.
        """
        if self.version_writable:
            first, second = self.version.metadata, self.asset.metadata
        else:
            first, second = self.asset.metadata, self.version.metadata
        if key in first:
            return first[key]
        return second.get(key, default)

    def metadata_view(self) -> Dict[str, Any]:
        """Both bags flattened with the same precedence as `metadata_value`."""
        if self.version_writable:
            return {**self.asset.metadata, **self.version.metadata}
        return {**self.version.metadata, **self.asset.metadata}

    def thumbnails(self) -> Dict[str, Any]:
        return self.metadata_value("thumbnails") or {}

    def preview_bytes(self, preferred=("medium", "thumb", "large")) -> Optional[bytes]:
        """Bytes of the first available preview in `preferred` order."""
        found = self.preview_image(preferred)
        return found[0] if found else None

    def preview_image(self, preferred=("medium", "thumb", "large")) -> Optional[Tuple[bytes, str]]:
        """(bytes, content type) of the first available preview."""
        thumbnails = self.thumbnails()
        for style in preferred:
            info = thumbnails.get(style)
            if info and info.get("path"):
                fmt = info.get("format") or "webp"
                return self.storage.get(self.bucket, info["path"]), f"image/{fmt}"
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def note(self, stage_name: str, kind: str, value: Any = True) -> None:
        """Record a stage outcome note (`_<stage>_<kind>`) on the asset."""
        self.asset_patch[stage_note_keys(stage_name)[kind]] = value

    def mark_completed(self, stage_name: str) -> None:
        keys = stage_note_keys(stage_name)
        self.asset_patch[keys["completed"]] = utc_now_iso()
        self.asset_remove.extend([keys["failed"], keys["error"], keys["failed_at"]])

    def mark_skipped(self, stage_name: str, reason: str) -> None:
        self.note(stage_name, "skipped", True)
        self.note(stage_name, "skip_reason", reason)

    def mark_failed(self, stage_name: str, message: str) -> None:
        self.note(stage_name, "failed", True)
        self.note(stage_name, "error", message)
        self.note(stage_name, "failed_at", utc_now_iso())

    def take_version_patch(self) -> Dict[str, Any]:
        """Pop the pending version patch (for writers that commit it themselves)."""
        patch, self.version_patch = self.version_patch, {}
        return patch

    def flush(self) -> None:
        """
        Write pending patches.

        A finalized version no longer accepts writes; its patch is folded
        into the asset bag instead, which is where finalize would have put it.
        """
        asset_patch = dict(self.asset_patch)
        version_patch = dict(self.version_patch)
        remove = [k for k in dict.fromkeys(self.asset_remove) if k not in asset_patch]

        if version_patch and not self.version_writable:
            asset_patch = {**version_patch, **asset_patch}
            version_patch = {}

        if asset_patch or remove:
            self.repo.patch_asset_metadata(self.asset.id, asset_patch, remove=remove)
            for key in remove:
                self.asset.metadata.pop(key, None)
            self.asset.metadata.update(asset_patch)
        if version_patch:
            self.repo.patch_version_metadata(self.version.id, version_patch)
            self.version.metadata.update(version_patch)
        self.reset_patches()

    def reset_patches(self) -> None:
        self.asset_patch = {}
        self.version_patch = {}
        self.asset_remove = []


__all__ = ["StageContext", "utc_now_iso"]
