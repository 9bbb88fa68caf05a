"""
Stage 5: AI Metadata

Generates candidate values for the configured metadata fields from a preview.
Runs once per asset: `_ai_metadata_generated_at` marks it done.
"""

from __future__ import annotations

import logging

from ...config import PipelineSettings
from ...metadata import is_meaningful
from ...types import ReasonCode
from ..base import Stage
from ..chain import AI_METADATA
from ..context import StageContext, utc_now_iso
from ..errors import MissingCapabilityError, StageSkipped

logger = logging.getLogger("asset_pipeline.pipeline.ai_metadata")

GENERATED_AT_KEY = "_ai_metadata_generated_at"
STATUS_KEY = "_ai_metadata_status"


class AiMetadataStage(Stage):
    """
    Skips when:
    - metadata was already generated
    - the asset has no category (fields depend on it)
    - no preview exists to send
    """

    name = AI_METADATA
    gated = True
    disabled_reason = ReasonCode.AI_DISABLED

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return settings.ai_enabled

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        if ctx.asset.metadata.get(GENERATED_AT_KEY):
            raise StageSkipped(self.name, ReasonCode.ALREADY_GENERATED)
        if not is_meaningful(ctx.asset.category_id):
            raise StageSkipped(self.name, ReasonCode.NO_CATEGORY)

        preview = ctx.preview_image()
        if preview is None:
            raise StageSkipped(self.name, ReasonCode.THUMBNAIL_UNAVAILABLE)
        if ctx.vision is None:
            raise MissingCapabilityError("vision-client", self.name)

        image, content_type = preview
        candidates = ctx.vision.generate_metadata(image, content_type, settings.ai_metadata_fields)
        ctx.repo.insert_metadata_candidates(ctx.asset_id, candidates)
        ctx.asset_patch.update(
            {
                GENERATED_AT_KEY: utc_now_iso(),
                STATUS_KEY: "completed",
                "_ai_metadata_candidate_count": len(candidates),
            }
        )
        logger.info("[%s] %d metadata candidates", ctx.asset_id, len(candidates))
        return ctx

    def on_error(self, ctx: StageContext, error: BaseException, settings: PipelineSettings) -> None:
        super().on_error(ctx, error, settings)
        ctx.asset_patch[STATUS_KEY] = "failed"
