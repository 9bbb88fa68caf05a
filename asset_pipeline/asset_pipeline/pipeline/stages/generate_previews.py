"""
Stage 2: Generate Previews

Drives the preview state machine:

    PENDING -> PROCESSING -> COMPLETED | FAILED | SKIPPED

Every transition is a compare-and-set, so once the watchdog (or anything
else) has moved the asset to a terminal status, a late worker cannot
overwrite it.
"""

from __future__ import annotations

import logging
import posixpath
from datetime import datetime, timezone
from typing import Any, Dict

from ...classifier import FileCategory
from ...config import PipelineSettings
from ...types import ReasonCode, ThumbnailStatus
from ..base import Stage
from ..chain import GENERATE_PREVIEWS
from ..context import StageContext, utc_now_iso
from ..errors import StageSkipped, TransientIOError, UnsupportedFormatError
from ..failures import categorize_exception, clean_message

logger = logging.getLogger("asset_pipeline.pipeline.generate_previews")

OPEN_STATUSES = (ThumbnailStatus.PENDING, ThumbnailStatus.PROCESSING)


def thumbnail_key(source_path: str, style: str, extension: str) -> str:
    """
    Object key for one preview, next to the working original.

    >>> thumbnail_key("temp/uploads/abc/original.jpg", "thumb", "webp")
    'temp/uploads/abc/thumbnails/thumb/thumb.webp'
    """
    base = posixpath.dirname(source_path)
    return posixpath.join(base, "thumbnails", style, f"{style}.{extension}")


class GeneratePreviewsStage(Stage):
    """
    Responsibilities:
    - Move the asset PENDING -> PROCESSING and stamp thumbnail_started_at
    - Render every configured style (or the two smallest in degraded mode)
    - Upload and verify each preview before declaring COMPLETED
    - Leave a terminal status (FAILED / SKIPPED) on any terminal error
    """

    name = GENERATE_PREVIEWS

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return True

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        asset = ctx.asset
        if asset.thumbnail_status.is_terminal:
            raise StageSkipped(self.name, f"already_{asset.thumbnail_status.value.lower()}")

        category = ctx.category
        if category is FileCategory.UNSUPPORTED:
            raise UnsupportedFormatError(
                "File type cannot be previewed",
                self.name,
                reason=ReasonCode.UNSUPPORTED_FILE_TYPE,
            )

        started = self._transition(
            ctx,
            OPEN_STATUSES,
            ThumbnailStatus.PROCESSING,
            fields={"thumbnail_started_at": datetime.now(timezone.utc)},
        )
        if not started:
            raise StageSkipped(self.name, "status_changed")

        if category is FileCategory.VECTOR_SKIP:
            self._finish_vector(ctx, settings)
            return ctx

        result = ctx.engine.render(ctx.read_source(), category)
        generated_at = utc_now_iso()
        thumbnails: Dict[str, Dict[str, Any]] = {}
        for thumb in result.thumbnails:
            key = thumbnail_key(ctx.source_path, thumb.style, thumb.extension)
            ctx.storage.put(ctx.bucket, key, thumb.data, thumb.content_type)
            if not ctx.storage.exists(ctx.bucket, key):
                raise TransientIOError(f"Preview upload could not be verified: {key}", self.name)
            thumbnails[thumb.style] = {
                "path": key,
                "width": thumb.width,
                "height": thumb.height,
                "size_bytes": thumb.size_bytes,
                "format": thumb.format,
                "generated_at": generated_at,
            }

        ctx.version_patch.update(
            {
                "thumbnails": thumbnails,
                "thumbnails_generated": True,
                "thumbnails_generated_at": generated_at,
                "thumbnail_format": result.output_format,
                "thumbnail_quality": result.quality,
                "image_width": result.source_width,
                "image_height": result.source_height,
            }
        )
        if result.skipped_styles:
            ctx.version_patch["thumbnail_skipped_styles"] = result.skipped_styles

        completed = self._transition(
            ctx,
            [ThumbnailStatus.PROCESSING],
            ThumbnailStatus.COMPLETED,
            fields={"thumbnail_error": None, "thumbnail_skip_reason": None},
            asset_metadata={"preview_generated": True},
            version_metadata=ctx.take_version_patch(),
        )
        if not completed:
            logger.warning("[%s] Preview finished after the asset was reclaimed; result discarded", ctx.asset_id)
            raise StageSkipped(self.name, "reclaimed_by_watchdog")

        if ctx.version_writable and result.source_width and result.source_height:
            ctx.repo.update_version(
                ctx.version.id, width=result.source_width, height=result.source_height
            )
        logger.info(
            "[%s] Generated %d previews (%s, %s)",
            ctx.asset_id, len(thumbnails), result.output_format, result.quality,
        )
        return ctx

    def _finish_vector(self, ctx: StageContext, settings: PipelineSettings) -> None:
        if settings.vector_policy == "complete":
            done = self._transition(
                ctx,
                [ThumbnailStatus.PROCESSING],
                ThumbnailStatus.COMPLETED,
                fields={"thumbnail_error": None, "thumbnail_skip_reason": None},
                version_metadata={"vector_no_preview": True, "thumbnails_generated": False},
            )
            if not done:
                raise StageSkipped(self.name, "reclaimed_by_watchdog")
            return

        done = self._transition(
            ctx,
            [ThumbnailStatus.PROCESSING],
            ThumbnailStatus.SKIPPED,
            fields={"thumbnail_skip_reason": ReasonCode.VECTOR_NO_PREVIEW},
            version_metadata={"thumbnails_generated": False},
        )
        if not done:
            raise StageSkipped(self.name, "reclaimed_by_watchdog")
        raise StageSkipped(self.name, ReasonCode.VECTOR_NO_PREVIEW)

    def _transition(
        self,
        ctx: StageContext,
        from_statuses,
        to_status: ThumbnailStatus,
        fields=None,
        asset_metadata=None,
        version_metadata=None,
    ) -> bool:
        """CAS the preview status, keeping the in-memory asset in step."""
        asset_metadata = dict(asset_metadata or {})
        version_metadata = dict(version_metadata or {})
        if version_metadata and not ctx.version_writable:
            asset_metadata = {**version_metadata, **asset_metadata}
            version_metadata = {}

        ok = ctx.repo.transition_thumbnail(
            ctx.asset_id,
            from_statuses,
            to_status,
            fields=fields,
            asset_metadata=asset_metadata,
            version_id=ctx.version.id if version_metadata else None,
            version_metadata=version_metadata or None,
        )
        if ok:
            ctx.asset.thumbnail_status = to_status
            ctx.asset.metadata.update(asset_metadata)
            ctx.version.metadata.update(version_metadata)
            for column, value in (fields or {}).items():
                setattr(ctx.asset, column, value)
        return ok

    def on_unsupported(self, ctx: StageContext, error: UnsupportedFormatError, settings: PipelineSettings) -> None:
        reason = error.reason or ReasonCode.UNSUPPORTED_FILE_TYPE
        self._transition(
            ctx,
            OPEN_STATUSES,
            ThumbnailStatus.SKIPPED,
            fields={"thumbnail_skip_reason": reason},
            asset_metadata={"preview_skipped": True},
        )

    def on_error(self, ctx: StageContext, error: BaseException, settings: PipelineSettings) -> None:
        super().on_error(ctx, error, settings)
        reason = getattr(error, "reason", None) or categorize_exception(error).value
        message = clean_message(error)
        moved = self._transition(
            ctx,
            OPEN_STATUSES,
            ThumbnailStatus.FAILED,
            fields={"thumbnail_error": f"{reason}: {message}"},
            version_metadata={
                "thumbnail_generation_failed": True,
                "thumbnail_generation_failed_at": utc_now_iso(),
                "thumbnail_generation_error": message,
            },
        )
        if not moved:
            logger.warning(
                "[%s] Preview failed but status was already %s; leaving it",
                ctx.asset_id, ctx.asset.thumbnail_status.value,
            )


__all__ = ["GeneratePreviewsStage", "thumbnail_key"]
