"""
Stage 6: AI Auto-Apply Tags

Promotes high-confidence AI tag candidates to real tags. Off unless
AI_AUTO_APPLY_ENABLED is set.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from ...config import PipelineSettings
from ...types import ReasonCode, TagCandidate
from ..base import Stage
from ..chain import AI_AUTO_APPLY_TAGS
from ..context import StageContext
from ..errors import StageSkipped

logger = logging.getLogger("asset_pipeline.pipeline.ai_auto_apply")

_WHITESPACE = re.compile(r"\s+")


def normalize_tag(tag: Optional[str]) -> str:
    """
    >>> normalize_tag("  Golden   Hour ")
    'golden hour'
    """
    return _WHITESPACE.sub(" ", (tag or "").strip()).lower()


def select_tags(
    candidates: List[TagCandidate],
    existing: set,
    threshold: float,
    max_tags: int,
) -> List[TagCandidate]:
    """Candidates to apply: above threshold, highest confidence first, not already present."""
    eligible = [
        c for c in candidates
        if c.producer == "ai" and c.confidence is not None and float(c.confidence) >= threshold
    ]
    eligible.sort(key=lambda c: float(c.confidence), reverse=True)

    selected: List[TagCandidate] = []
    taken = set(existing)
    for candidate in eligible:
        if len(selected) >= max_tags:
            break
        tag = normalize_tag(candidate.tag)
        if not tag or tag in taken:
            continue
        taken.add(tag)
        selected.append(candidate)
    return selected


class AiAutoApplyTagsStage(Stage):
    name = AI_AUTO_APPLY_TAGS
    disabled_reason = ReasonCode.AI_DISABLED

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return settings.ai_enabled

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        if not settings.ai_auto_apply_enabled:
            raise StageSkipped(self.name, ReasonCode.AUTO_APPLY_DISABLED)

        candidates = ctx.repo.list_tag_candidates(ctx.asset_id, unresolved_only=True)
        if not candidates:
            raise StageSkipped(self.name, ReasonCode.NO_CANDIDATES)

        existing = {normalize_tag(t) for t in ctx.repo.list_asset_tags(ctx.asset_id)}
        selected = select_tags(
            candidates, existing, settings.ai_auto_apply_threshold, settings.ai_auto_apply_max_tags
        )

        applied: List[str] = []
        for candidate in selected:
            tag = normalize_tag(candidate.tag)
            if ctx.repo.insert_asset_tag(
                ctx.asset_id, tag, source="ai", confidence=candidate.confidence, auto_applied=True
            ):
                applied.append(tag)
            if candidate.id is not None:
                ctx.repo.resolve_tag_candidate(candidate.id)

        ctx.asset_patch["_ai_auto_applied_tags"] = applied
        logger.info(
            "[%s] Auto-applied %d of %d candidates: %s",
            ctx.asset_id, len(applied), len(candidates), ", ".join(applied) or "-",
        )
        return ctx
