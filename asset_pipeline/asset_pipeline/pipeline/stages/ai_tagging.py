"""
Stage 4: AI Tagging

Asks the vision model for tags on a rendered preview and stores them as
candidates for review or auto-apply. Best-effort: the stage skips whenever
there is nothing sensible to send.
"""

from __future__ import annotations

import logging

from ...config import PipelineSettings
from ...types import ReasonCode
from ..base import Stage
from ..chain import AI_TAGGING
from ..context import StageContext
from ..errors import MissingCapabilityError, StageSkipped

logger = logging.getLogger("asset_pipeline.pipeline.ai_tagging")


class AiTaggingStage(Stage):
    name = AI_TAGGING
    gated = True
    disabled_reason = ReasonCode.AI_DISABLED

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return settings.ai_enabled

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        if ctx.asset.metadata.get(f"_{self.name}_completed"):
            raise StageSkipped(self.name, ReasonCode.ALREADY_GENERATED)
        if not ctx.category.has_pixels:
            raise StageSkipped(self.name, ReasonCode.NOT_AN_IMAGE)

        preview = ctx.preview_image()
        if preview is None:
            raise StageSkipped(self.name, ReasonCode.THUMBNAIL_UNAVAILABLE)
        if ctx.vision is None:
            raise MissingCapabilityError("vision-client", self.name)

        image, content_type = preview
        candidates = ctx.vision.tag_image(image, content_type)
        inserted = ctx.repo.insert_tag_candidates(ctx.asset_id, candidates)
        ctx.asset_patch["_ai_tag_candidate_count"] = len(candidates)
        logger.info("[%s] %d tag candidates (%d new)", ctx.asset_id, len(candidates), inserted)
        return ctx
