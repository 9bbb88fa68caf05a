"""
Stage 9: Promote

Moves the original (and its previews) from the transient working path to the
tenant-scoped canonical path with copy-then-delete. The asset's path pointer
is only rewritten once the canonical copy is verified, so a crash at any
point leaves it pointing at an object that exists.
"""

from __future__ import annotations

import copy
import logging
import posixpath
from typing import Any, Dict, List

from ...classifier import extension_of
from ...config import PipelineSettings
from ...storage_manager import StorageManagerError
from ..base import Stage
from ..chain import PROMOTE
from ..context import StageContext, utc_now_iso
from ..errors import StageSkipped, TransientIOError

logger = logging.getLogger("asset_pipeline.pipeline.promote")

WORKING_PREFIX = "temp/"


def canonical_prefix(tenant_id: str, asset_id: str, version_number: int) -> str:
    """
    >>> canonical_prefix("t1", "a1", 2)
    'tenants/t1/assets/a1/v2'
    """
    return f"tenants/{tenant_id}/assets/{asset_id}/v{version_number}"


def canonical_extension(original_filename, working_path) -> str:
    return extension_of(original_filename) or extension_of(working_path) or "file"


class PromoteStage(Stage):
    name = PROMOTE

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return True

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        asset = ctx.asset
        working_path = asset.storage_root_path
        if not working_path or not working_path.startswith(WORKING_PREFIX):
            raise StageSkipped(self.name, "already_promoted")

        prefix = canonical_prefix(asset.tenant_id, asset.id, ctx.version.version_number)
        canonical = f"{prefix}/original.{canonical_extension(asset.original_filename, working_path)}"

        if ctx.storage.exists(ctx.bucket, canonical):
            logger.info("[%s] Canonical object already present, skipping copy", ctx.asset_id)
        else:
            ctx.storage.copy(ctx.bucket, working_path, canonical)
        if not ctx.storage.exists(ctx.bucket, canonical):
            raise TransientIOError(f"Promoted object not visible at {canonical}", self.name)

        thumbnails, moved = self._move_thumbnails(ctx, prefix)
        patch: Dict[str, Any] = {"promoted_at": utc_now_iso()}
        if moved:
            patch["thumbnails"] = thumbnails

        ctx.repo.update_storage_pointer(asset.id, canonical, patch)
        asset.storage_root_path = canonical
        asset.metadata.update(patch)

        for key in [working_path] + moved:
            try:
                ctx.storage.delete(ctx.bucket, key)
            except StorageManagerError as e:
                logger.warning("[%s] Could not delete working object %s: %s", ctx.asset_id, key, e)

        logger.info("[%s] Promoted %s -> %s (%d previews)", ctx.asset_id, working_path, canonical, len(moved))
        return ctx

    def _move_thumbnails(self, ctx: StageContext, prefix: str):
        """Copy working previews under the canonical prefix. Best-effort per style."""
        thumbnails = copy.deepcopy(ctx.thumbnails())
        moved: List[str] = []
        for style, info in thumbnails.items():
            source = (info or {}).get("path")
            if not source or not source.startswith(WORKING_PREFIX):
                continue
            dest = f"{prefix}/thumbnails/{style}/{posixpath.basename(source)}"
            try:
                if not ctx.storage.exists(ctx.bucket, dest):
                    ctx.storage.copy(ctx.bucket, source, dest)
            except StorageManagerError as e:
                logger.warning("[%s] Preview %s not moved: %s", ctx.asset_id, style, e)
                continue
            info["path"] = dest
            moved.append(source)
        return thumbnails, moved
