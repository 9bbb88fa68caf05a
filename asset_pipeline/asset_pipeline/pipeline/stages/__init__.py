"""
Pipeline stages, one module per stage, in chain order.
"""

from typing import List

from .extract_metadata import ExtractMetadataStage
from .generate_previews import GeneratePreviewsStage
from .computed_metadata import PopulateComputedMetadataStage
from .ai_tagging import AiTaggingStage
from .ai_metadata import AiMetadataStage
from .ai_auto_apply import AiAutoApplyTagsStage
from .ai_suggest import AiSuggestMetadataStage
from .finalize import FinalizeStage
from .promote import PromoteStage
from ..base import Stage

STAGE_CLASSES = (
    ExtractMetadataStage,
    GeneratePreviewsStage,
    PopulateComputedMetadataStage,
    AiTaggingStage,
    AiMetadataStage,
    AiAutoApplyTagsStage,
    AiSuggestMetadataStage,
    FinalizeStage,
    PromoteStage,
)


def build_stages() -> List[Stage]:
    """One instance of every stage, in chain order."""
    return [cls() for cls in STAGE_CLASSES]


__all__ = [
    "ExtractMetadataStage",
    "GeneratePreviewsStage",
    "PopulateComputedMetadataStage",
    "AiTaggingStage",
    "AiMetadataStage",
    "AiAutoApplyTagsStage",
    "AiSuggestMetadataStage",
    "FinalizeStage",
    "PromoteStage",
    "STAGE_CLASSES",
    "build_stages",
]
