"""
Stage names, chain order and dispatch.

A chain is a list of stage names. Dispatching stage N enqueues one job whose
input carries the stages still to run after it; the worker enqueues the next
one only once stage N reaches its terminal outcome.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional, Sequence

from ..config import PipelineSettings
from ..job_queue import EnqueueResult, JobInput

logger = logging.getLogger("asset_pipeline.pipeline.chain")

EXTRACT_METADATA = "extract_metadata"
GENERATE_PREVIEWS = "generate_previews"
POPULATE_COMPUTED_METADATA = "populate_computed_metadata"
AI_TAGGING = "ai_tagging"
AI_METADATA = "ai_metadata"
AI_AUTO_APPLY_TAGS = "ai_auto_apply_tags"
AI_SUGGEST_METADATA = "ai_suggest_metadata"
FINALIZE = "finalize"
PROMOTE = "promote"

FULL_CHAIN = (
    EXTRACT_METADATA,
    GENERATE_PREVIEWS,
    POPULATE_COMPUTED_METADATA,
    AI_TAGGING,
    AI_METADATA,
    AI_AUTO_APPLY_TAGS,
    AI_SUGGEST_METADATA,
    FINALIZE,
    PROMOTE,
)

# Stages that need pixel access and so wait on the preview stage.
GATED_STAGES = frozenset({POPULATE_COMPUTED_METADATA, AI_TAGGING, AI_METADATA})

CHAIN_RUN = "chain"
DEFAULT_MAX_ATTEMPTS = 3


def stages_after(stage: str, chain: Sequence[str] = FULL_CHAIN) -> List[str]:
    """Stages following `stage` in `chain`."""
    chain = list(chain)
    if stage not in chain:
        raise ValueError(f"Unknown stage '{stage}'")
    return chain[chain.index(stage) + 1:]


def new_retry_run() -> str:
    """Run label for a manual retry, distinct from every earlier run."""
    return f"retry-{uuid.uuid4().hex[:12]}"


class ChainDispatcher:
    """Enqueues stage jobs on the durable queue."""

    def __init__(self, queue, settings: PipelineSettings):
        self.queue = queue
        self.settings = settings

    def dispatch(
        self,
        asset_id: str,
        version_id: str,
        stage: str,
        chain: Sequence[str] = (),
        run: str = CHAIN_RUN,
        delay_seconds: int = 0,
    ) -> EnqueueResult:
        """Enqueue one stage. `chain` is what follows it."""
        if stage not in FULL_CHAIN:
            raise ValueError(f"Unknown stage '{stage}'")
        max_attempts = (
            self.settings.gate_max_attempts if stage in GATED_STAGES else DEFAULT_MAX_ATTEMPTS
        )
        job_input = JobInput(
            asset_id=asset_id,
            version_id=version_id,
            stage=stage,
            chain=list(chain),
            run=run,
        )
        return self.queue.enqueue(
            job_input, max_attempts=max_attempts, delay_seconds=delay_seconds
        )

    def dispatch_chain(
        self,
        asset_id: str,
        version_id: str,
        stages: Sequence[str] = FULL_CHAIN,
        run: str = CHAIN_RUN,
    ) -> Optional[EnqueueResult]:
        """Enqueue the head of `stages`; the rest rides along in the job input."""
        stages = list(stages)
        if not stages:
            return None
        logger.info("[%s] Dispatching chain: %s", asset_id, " -> ".join(stages))
        return self.dispatch(asset_id, version_id, stages[0], chain=stages[1:], run=run)

    def continue_chain(self, job_input: JobInput) -> Optional[EnqueueResult]:
        """Enqueue the successor of a job that reached its terminal outcome."""
        if not job_input.chain:
            return None
        return self.dispatch_chain(
            job_input.asset_id, job_input.version_id, job_input.chain, run=job_input.run
        )


__all__ = [
    "EXTRACT_METADATA",
    "GENERATE_PREVIEWS",
    "POPULATE_COMPUTED_METADATA",
    "AI_TAGGING",
    "AI_METADATA",
    "AI_AUTO_APPLY_TAGS",
    "AI_SUGGEST_METADATA",
    "FINALIZE",
    "PROMOTE",
    "FULL_CHAIN",
    "GATED_STAGES",
    "CHAIN_RUN",
    "ChainDispatcher",
    "stages_after",
    "new_retry_run",
]
