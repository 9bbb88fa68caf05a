"""
Stage 8: Finalize

The one stage every chain ends with (short-circuited assets included).
Merges the version's metadata into the asset and stamps the version
complete, after which the version accepts no further writes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from ...config import PipelineSettings
from ...metadata import merge_metadata
from ...types import AnalysisStatus, PipelineStatus
from ..base import Stage
from ..chain import FINALIZE
from ..context import StageContext
from ..errors import StageSkipped

logger = logging.getLogger("asset_pipeline.pipeline.finalize")


class FinalizeStage(Stage):
    name = FINALIZE

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return True

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        if ctx.version.is_finalized:
            raise StageSkipped(self.name, "already_finalized")

        # Short-circuited assets keep their SKIPPED analysis status.
        status = (
            AnalysisStatus.SKIPPED
            if ctx.asset.analysis_status is AnalysisStatus.SKIPPED
            else AnalysisStatus.COMPLETE
        )
        if not ctx.repo.finalize_version(ctx.asset_id, ctx.version.id, merge_metadata, status):
            raise StageSkipped(self.name, "already_finalized")

        ctx.asset.metadata = merge_metadata(ctx.asset.metadata, ctx.version.metadata)
        ctx.asset.analysis_status = status
        ctx.version.pipeline_status = PipelineStatus.COMPLETE
        ctx.version.pipeline_completed_at = datetime.now(timezone.utc)
        logger.info("[%s] Version %s finalized (analysis=%s)", ctx.asset_id, ctx.version.id, status.value)
        return ctx
