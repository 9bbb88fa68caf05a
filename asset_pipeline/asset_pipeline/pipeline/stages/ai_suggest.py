"""
Stage 7: AI Suggest Metadata

Turns high-confidence metadata candidates into suggestions for fields the
asset has no value for. Suggestions are stored for a reviewer; nothing is
written to the fields themselves.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from ...config import PipelineSettings
from ...metadata import is_meaningful
from ...types import ReasonCode
from ..base import Stage
from ..chain import AI_SUGGEST_METADATA
from ..context import StageContext, utc_now_iso
from ..errors import StageSkipped

logger = logging.getLogger("asset_pipeline.pipeline.ai_suggest")

SUGGESTIONS_KEY = "_ai_suggestions"


class AiSuggestMetadataStage(Stage):
    name = AI_SUGGEST_METADATA
    disabled_reason = ReasonCode.AI_DISABLED

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return settings.ai_enabled

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        candidates = ctx.repo.list_metadata_candidates(ctx.asset_id)
        if not candidates:
            raise StageSkipped(self.name, ReasonCode.NO_CANDIDATES)

        threshold = settings.ai_suggestion_threshold
        generated_at = utc_now_iso()
        suggestions: Dict[str, Dict[str, Any]] = {}
        for candidate in candidates:
            if candidate.confidence is None or float(candidate.confidence) < threshold:
                continue
            key = candidate.field_key
            if is_meaningful(ctx.metadata_value(key)):
                continue
            current = suggestions.get(key)
            if current and current["confidence"] >= float(candidate.confidence):
                continue
            suggestions[key] = {
                "value": candidate.value,
                "confidence": float(candidate.confidence),
                "source": candidate.producer,
                "generated_at": generated_at,
            }

        if suggestions:
            merged = dict(ctx.asset.metadata.get(SUGGESTIONS_KEY) or {})
            merged.update(suggestions)
            ctx.asset_patch[SUGGESTIONS_KEY] = merged
        ctx.asset_patch["_ai_suggestion_count"] = len(suggestions)
        logger.info("[%s] %d metadata suggestions", ctx.asset_id, len(suggestions))
        return ctx
