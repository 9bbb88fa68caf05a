"""
Failure recorder.

Every terminal stage failure becomes one row in asset_processing_failures.
Records feed diagnostics and the user-facing "processing issue" signal; they
never touch the asset's lifecycle fields, so they cannot affect visibility.

The resolution workflow (list, resolve, retry) is consumed by operational
tooling rather than by the chain itself.
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError
from PIL import Image, UnidentifiedImageError

from ..classifier import FileCategory, category_of
from ..metadata import stage_note_keys
from ..storage_manager import ObjectNotFoundError, StorageManagerError
from ..types import FailureCategory, FailureRecord, ThumbnailStatus
from .chain import FULL_CHAIN, GENERATE_PREVIEWS, new_retry_run
from .errors import PipelineError, StageError

logger = logging.getLogger("asset_pipeline.pipeline.failures")

MAX_MESSAGE_LENGTH = 500
MAX_THUMBNAIL_RETRIES = 3

TRANSIENT_INDICATORS = (
    "timeout",
    "timed out",
    "connection",
    "429",
    "503",
    "throttl",
    "temporarily",
)

DECODE_INDICATORS = (
    "truncated",
    "cannot identify",
    "broken data stream",
)


class RetryRefused(PipelineError):
    """A manual retry was requested for an asset that cannot be retried."""


def clean_message(message: Any, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Collapse whitespace and cap the length of an error message."""
    text = " ".join(str(message or "").split())
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text


def categorize_exception(exc: BaseException) -> FailureCategory:
    """Map any exception raised inside a stage to a failure category."""
    if isinstance(exc, StageError):
        if exc.category is FailureCategory.UNKNOWN and exc.cause is not None:
            return categorize_exception(exc.cause)
        return exc.category

    if isinstance(exc, ObjectNotFoundError):
        return FailureCategory.UNKNOWN
    if isinstance(exc, StorageManagerError):
        return FailureCategory.TRANSIENT if exc.transient else FailureCategory.UNKNOWN

    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return FailureCategory.TRANSIENT
    if isinstance(exc, (ConnectionError, socket.timeout, TimeoutError)):
        return FailureCategory.TRANSIENT

    if isinstance(exc, Image.DecompressionBombError):
        return FailureCategory.OVERSIZED
    if isinstance(exc, UnidentifiedImageError):
        return FailureCategory.DECODE

    message = str(exc).lower()
    if isinstance(exc, (OSError, SyntaxError, ValueError)) and any(
        marker in message for marker in DECODE_INDICATORS
    ):
        return FailureCategory.DECODE
    if isinstance(exc, BotoCoreError) or any(marker in message for marker in TRANSIENT_INDICATORS):
        return FailureCategory.TRANSIENT

    return FailureCategory.UNKNOWN


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FailureRecorder:
    """
    Persist and resolve stage failures.

    Usage:
        recorder = FailureRecorder(repo, dispatcher)
        recorder.record(asset_id, "generate_previews", FailureCategory.DECODE, "bad header", 1)
        recorder.has_processing_issue(asset_id)
        recorder.retry(asset_id, "generate_previews", triggered_by="user:42")
    """

    def __init__(self, repo, dispatcher=None):
        self.repo = repo
        self.dispatcher = dispatcher

    def record(
        self,
        asset_id: str,
        stage: str,
        category: FailureCategory,
        message: str,
        attempt: int,
        version_id: Optional[str] = None,
    ) -> FailureRecord:
        record = FailureRecord(
            id=None,
            asset_id=asset_id,
            stage=stage,
            category=FailureCategory(category),
            message=clean_message(message),
            attempt=max(1, int(attempt)),
            version_id=version_id,
        )
        record = self.repo.insert_failure(record)
        logger.warning(
            "[%s] Recorded %s failure in %s (attempt %d): %s",
            asset_id, record.category.value, stage, record.attempt, record.message[:100],
        )
        return record

    def record_exception(
        self,
        asset_id: str,
        stage: str,
        exc: BaseException,
        attempt: int,
        version_id: Optional[str] = None,
    ) -> FailureRecord:
        return self.record(
            asset_id, stage, categorize_exception(exc), str(exc), attempt, version_id
        )

    def list_open(self, asset_id: Optional[str] = None, limit: int = 100) -> List[FailureRecord]:
        return self.repo.list_failures(asset_id=asset_id, unresolved_only=True, limit=limit)

    def resolve(self, record_id: int, resolution: str = "resolved") -> bool:
        resolved = self.repo.resolve_failure(record_id, resolution)
        if resolved:
            logger.info("Failure record %s resolved (%s)", record_id, resolution)
        return resolved

    def resolve_for_asset(
        self,
        asset_id: str,
        stage: Optional[str] = None,
        resolution: str = "resolved",
    ) -> int:
        return self.repo.resolve_failures(asset_id, stage, resolution)

    def has_processing_issue(self, asset_id: str) -> bool:
        """True while the asset has at least one unresolved failure record."""
        return self.repo.has_unresolved_failure(asset_id)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def retry(self, asset_id: str, stage: str, triggered_by: Optional[str] = None):
        """
        Re-run exactly one stage for an asset.

        The stage is enqueued alone under a fresh run label, so it is never
        absorbed by the original chain's idempotency keys and dispatches
        nothing after itself.

        Raises:
            RetryRefused: If the asset is missing or cannot be retried
        """
        if self.dispatcher is None:
            raise RuntimeError("FailureRecorder.retry requires a dispatcher")
        if stage not in FULL_CHAIN:
            raise RetryRefused(f"Unknown stage '{stage}'", stage)

        asset = self.repo.get_asset(asset_id)
        if asset is None:
            raise RetryRefused(f"Asset {asset_id} not found", stage)

        version_id = asset.current_version_id
        if not version_id:
            version = self.repo.get_current_version(asset_id)
            if version is None:
                raise RetryRefused(f"Asset {asset_id} has no current version", stage)
            version_id = version.id

        if stage == GENERATE_PREVIEWS:
            self._rearm_preview(asset, triggered_by)
        else:
            self._clear_stage_notes(asset_id, stage)

        resolved = self.resolve_for_asset(asset_id, stage, resolution="retried")
        result = self.dispatcher.dispatch(asset_id, version_id, stage, chain=(), run=new_retry_run())
        logger.info(
            "[%s] Retry of %s enqueued (job=%s, resolved %d open records)",
            asset_id, stage, result.job_id, resolved,
        )
        return result

    def _rearm_preview(self, asset, triggered_by: Optional[str]) -> None:
        if category_of(asset) is FileCategory.UNSUPPORTED:
            raise RetryRefused("File type cannot be previewed", GENERATE_PREVIEWS)
        if asset.thumbnail_retry_count >= MAX_THUMBNAIL_RETRIES:
            raise RetryRefused(
                f"Maximum preview retries ({MAX_THUMBNAIL_RETRIES}) reached", GENERATE_PREVIEWS
            )
        if asset.thumbnail_status is ThumbnailStatus.PROCESSING:
            raise RetryRefused("Preview generation is already in progress", GENERATE_PREVIEWS)

        retry_number = asset.thumbnail_retry_count + 1
        history: List[Dict[str, Any]] = list(asset.metadata.get("thumbnail_retries") or [])
        history.append(
            {
                "attempted_at": _utc_now_iso(),
                "previous_status": asset.thumbnail_status.value,
                "retry_number": retry_number,
                "triggered_by": triggered_by,
            }
        )
        rearmed = self.repo.transition_thumbnail(
            asset.id,
            from_statuses=[asset.thumbnail_status],
            to_status=ThumbnailStatus.PENDING,
            fields={
                "thumbnail_retry_count": retry_number,
                "thumbnail_skip_reason": None,
                "thumbnail_error": None,
                "thumbnail_started_at": None,
            },
            asset_metadata={"thumbnail_retries": history},
        )
        if not rearmed:
            raise RetryRefused("Preview status changed concurrently, try again", GENERATE_PREVIEWS)
        logger.info(
            "[%s] Preview re-armed (%s -> PENDING, retry %d)",
            asset.id, asset.thumbnail_status.value, retry_number,
        )

    def _clear_stage_notes(self, asset_id: str, stage: str) -> None:
        keys = stage_note_keys(stage)
        self.repo.patch_asset_metadata(
            asset_id,
            remove=[keys["failed"], keys["error"], keys["failed_at"], keys["skipped"], keys["skip_reason"]],
        )


__all__ = [
    "FailureRecorder",
    "RetryRefused",
    "categorize_exception",
    "clean_message",
    "MAX_THUMBNAIL_RETRIES",
]
