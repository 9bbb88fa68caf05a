"""
Base classes for pipeline architecture.

Provides the Stage base class and the StageRunner, which executes exactly one
stage for one asset version per call (one queue job).
"""

from __future__ import annotations

import logging
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from ..config import PipelineSettings
from ..types import FailureCategory
from .context import StageContext
from .errors import GateExhausted, NotReady, StageSkipped, StageTimeoutError, UnsupportedFormatError
from .failures import FailureRecorder, categorize_exception, clean_message
from .gate import SequencingGate

logger = logging.getLogger("asset_pipeline.pipeline")

COMPLETED = "completed"
SKIPPED = "skipped"
FAILED = "failed"
DEFERRED = "deferred"


@dataclass
class StageOutcome:
    """
    Result of one stage job.

    Attributes:
        stage: Stage name
        status: completed, skipped, failed or deferred
        reason: Skip reason, failure reason or deferral reason
        attempts: Local attempts used
        delay_seconds: Requested delay for a deferred outcome
        category: Failure category for a failed outcome
        elapsed_seconds: Wall time spent in the runner
        error: The exception behind a failed outcome
    """
    stage: str
    status: str
    reason: Optional[str] = None
    attempts: int = 0
    delay_seconds: int = 0
    category: Optional[FailureCategory] = None
    elapsed_seconds: float = 0.0
    error: Optional[BaseException] = None

    @property
    def deferred(self) -> bool:
        return self.status == DEFERRED

    @property
    def terminal(self) -> bool:
        """Completed, skipped and failed all let the chain move on."""
        return self.status in (COMPLETED, SKIPPED, FAILED)


class Stage(ABC):
    """
    Base class for pipeline stages.

    Subclasses must implement:
    - name: Unique identifier for the stage (also its queue name)
    - should_run(): Cheap global switch (configuration), False skips the stage
    - execute(): Perform stage logic; raise StageSkipped for per-asset skips

    Optionally override:
    - on_error(): Write stage-specific failure state
    - on_unsupported(): Write stage-specific state for unprocessable input
    - validate_inputs(): Check the context before any work is done
    """

    name: str = "stage"
    gated: bool = False
    disabled_reason: str = "disabled"

    @abstractmethod
    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        pass

    @abstractmethod
    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        """
        Execute the stage logic.

        Returns:
            The context, with pending metadata patches

        Raises:
            StageSkipped: The stage does not apply to this asset
            StageError: The stage failed (category decides retry)
        """
        pass

    def on_error(self, ctx: StageContext, error: BaseException, settings: PipelineSettings) -> None:
        """Record a terminal failure as stage notes on the asset."""
        ctx.mark_failed(self.name, clean_message(error))

    def on_unsupported(self, ctx: StageContext, error: UnsupportedFormatError, settings: PipelineSettings) -> None:
        """Write stage-specific state when the input turns out to be unprocessable."""
        pass

    def validate_inputs(self, ctx: StageContext) -> None:
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, gated={self.gated})"


class StageRunner:
    """
    Runs a single stage for a single asset version.

    Local retries follow the per-category attempt ceilings in
    PipelineSettings with exponential backoff. Terminal failures are written
    to the failure recorder and reported as a FAILED outcome, never raised,
    so the caller can always move the chain on.

    Usage:
        runner = StageRunner(repo, storage, settings, build_stages(), recorder)
        outcome = runner.run(asset_id, version_id, "generate_previews", job_attempt=1)
    """

    def __init__(
        self,
        repo,
        storage,
        settings: PipelineSettings,
        stages: Iterable[Stage],
        recorder: FailureRecorder,
        vision: Any = None,
        engine: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repo = repo
        self.storage = storage
        self.settings = settings
        self.recorder = recorder
        self.vision = vision
        self.engine = engine
        self.gate = SequencingGate(settings)
        self._sleep = sleep
        self.stages: Dict[str, Stage] = {}
        for stage in stages:
            if stage.name in self.stages:
                raise ValueError(f"Duplicate stage name: {stage.name}")
            self.stages[stage.name] = stage

    def run(
        self,
        asset_id: str,
        version_id: str,
        stage_name: str,
        job_attempt: int = 1,
    ) -> StageOutcome:
        stage = self.stages.get(stage_name)
        if stage is None:
            raise ValueError(f"Unknown stage '{stage_name}'")

        start = time.time()
        asset = self.repo.get_asset(asset_id)
        version = self.repo.get_version(version_id)
        if asset is None or version is None:
            logger.warning("[%s] %s: asset or version %s no longer exists", asset_id, stage_name, version_id)
            return StageOutcome(stage_name, SKIPPED, reason="asset_not_found")

        ctx = StageContext(
            asset=asset,
            version=version,
            settings=self.settings,
            repo=self.repo,
            storage=self.storage,
            vision=self.vision,
            engine=self.engine,
            start_time=start,
        )

        try:
            if stage.gated:
                try:
                    self.gate.check(stage.name, asset, job_attempt)
                except NotReady as e:
                    return StageOutcome(
                        stage.name,
                        DEFERRED,
                        reason=f"waiting_on_previews:{e.status}",
                        delay_seconds=e.delay_seconds,
                        elapsed_seconds=time.time() - start,
                    )
                except GateExhausted as e:
                    return self._fail(stage, ctx, e, FailureCategory.UNKNOWN, job_attempt)

            if not stage.should_run(ctx, self.settings):
                return self._skip(stage, ctx, stage.disabled_reason, attempt=0)

            return self._execute_with_retry(stage, ctx)
        finally:
            self._cleanup(ctx)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _execute_with_retry(self, stage: Stage, ctx: StageContext) -> StageOutcome:
        attempt = 0
        while True:
            attempt += 1
            ctx.attempt = attempt
            try:
                stage.validate_inputs(ctx)
                logger.debug("[%s] Running stage: %s (attempt %d)", ctx.asset_id, stage.name, attempt)
                ctx = stage.execute(ctx, self.settings)
                ctx.mark_completed(stage.name)
                ctx.flush()
                logger.info("[%s] %s completed in %.1fs", ctx.asset_id, stage.name, ctx.elapsed_time())
                return StageOutcome(
                    stage.name, COMPLETED, attempts=attempt, elapsed_seconds=ctx.elapsed_time()
                )

            except StageSkipped as e:
                return self._skip(stage, ctx, e.reason, attempt)

            except UnsupportedFormatError as e:
                ctx.reset_patches()
                stage.on_unsupported(ctx, e, self.settings)
                return self._skip(stage, ctx, e.reason or "unsupported_file_type", attempt)

            except Exception as e:
                category = categorize_exception(e)
                ceiling = self.settings.max_attempts_for(category.value)
                if attempt < ceiling:
                    wait_time = self.settings.retry_base_delay * (2 ** (attempt - 1))
                    if ctx.elapsed_time() + wait_time >= self.settings.stage_timeout_seconds:
                        timeout = StageTimeoutError(
                            f"Stage exceeded {self.settings.stage_timeout_seconds:.0f}s after "
                            f"{attempt} attempts: {e}",
                            stage.name,
                            cause=e,
                            reason="timeout",
                        )
                        return self._fail(stage, ctx, timeout, FailureCategory.TIMEOUT, attempt)
                    logger.warning(
                        "[%s] %s failed (attempt %d/%d, %s): %s. Retrying in %.1fs...",
                        ctx.asset_id, stage.name, attempt, ceiling, category.value,
                        str(e)[:100], wait_time,
                    )
                    ctx.reset_patches()
                    self._sleep(wait_time)
                    continue
                return self._fail(stage, ctx, e, category, attempt)

    def _skip(self, stage: Stage, ctx: StageContext, reason: str, attempt: int) -> StageOutcome:
        ctx.reset_patches()
        ctx.mark_skipped(stage.name, reason)
        ctx.flush()
        logger.info("[%s] %s skipped: %s", ctx.asset_id, stage.name, reason)
        return StageOutcome(
            stage.name, SKIPPED, reason=reason, attempts=attempt, elapsed_seconds=ctx.elapsed_time()
        )

    def _fail(
        self,
        stage: Stage,
        ctx: StageContext,
        error: BaseException,
        category: FailureCategory,
        attempt: int,
    ) -> StageOutcome:
        ctx.reset_patches()
        stage.on_error(ctx, error, self.settings)
        ctx.flush()
        self.recorder.record(
            ctx.asset_id, stage.name, category, str(error), attempt, version_id=ctx.version.id
        )
        reason = getattr(error, "reason", None) or category.value
        logger.error(
            "[%s] %s failed terminally (%s) after %d attempt(s): %s",
            ctx.asset_id, stage.name, category.value, attempt, str(error)[:200],
        )
        return StageOutcome(
            stage.name,
            FAILED,
            reason=reason,
            attempts=attempt,
            category=category,
            elapsed_seconds=ctx.elapsed_time(),
            error=error,
        )

    def _cleanup(self, ctx: StageContext) -> None:
        """Clean up all temp resources."""
        for temp_dir in ctx.temp_dirs:
            try:
                if temp_dir.exists():
                    shutil.rmtree(temp_dir, ignore_errors=True)
                    logger.debug("Cleaned up temp dir: %s", temp_dir)
            except OSError as e:
                logger.warning("Failed to clean up %s: %s", temp_dir, e)


__all__ = ["Stage", "StageRunner", "StageOutcome", "COMPLETED", "SKIPPED", "FAILED", "DEFERRED"]
