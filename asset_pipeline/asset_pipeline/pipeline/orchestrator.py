"""
Pipeline orchestrator.

Entry point for an upload-completion event. Classifies the file once, then
either short-circuits unsupported types straight to the finalizer or
dispatches the full stage chain. Safe to call more than once per event: the
processing_started_at compare-and-set lets exactly one delivery through.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..classifier import STORED_CATEGORY_KEY, FileCategory, classify, extension_of
from ..config import PipelineSettings
from ..storage_manager import StorageManagerError
from ..types import (
    AnalysisStatus,
    PipelineStatus,
    ReasonCode,
    ThumbnailStatus,
    UploadCommitted,
)
from .chain import AI_METADATA, AI_TAGGING, FINALIZE, FULL_CHAIN, ChainDispatcher
from .context import utc_now_iso

logger = logging.getLogger("asset_pipeline.pipeline.orchestrator")

SNIFF_BYTES = 512


class PipelineOrchestrator:
    """
    Usage:
        orchestrator = PipelineOrchestrator(repo, storage, dispatcher, settings)
        orchestrator.handle_upload_committed(event)
    """

    def __init__(self, repo, storage, dispatcher: ChainDispatcher, settings: PipelineSettings):
        self.repo = repo
        self.storage = storage
        self.dispatcher = dispatcher
        self.settings = settings

    def handle_upload_committed(self, event: UploadCommitted) -> Optional[FileCategory]:
        """
        Start processing for a committed upload.

        Returns:
            The category the asset was classified as, or None when the event
            was a duplicate (or the asset no longer exists)
        """
        asset = self.repo.get_asset(event.asset_id)
        if asset is None:
            logger.warning("[%s] Upload committed for unknown asset, ignoring", event.asset_id)
            return None

        if not self.repo.mark_processing_started(event.asset_id):
            logger.info("[%s] Processing already started, ignoring duplicate event", event.asset_id)
            return None

        try:
            category = self._classify(event, asset)
            self.repo.patch_asset_metadata(event.asset_id, {STORED_CATEGORY_KEY: category.value})
            if category is FileCategory.UNSUPPORTED:
                self._short_circuit(event)
            else:
                self.repo.update_version(event.version_id, pipeline_status=PipelineStatus.PROCESSING)
                self.dispatcher.dispatch_chain(event.asset_id, event.version_id, FULL_CHAIN)
        except Exception:
            # Let a redelivered event try again.
            self.repo.clear_processing_started(event.asset_id)
            raise

        logger.info("[%s] Classified as %s", event.asset_id, category.value)
        return category

    def _classify(self, event: UploadCommitted, asset) -> FileCategory:
        head: Optional[bytes] = None
        try:
            head = self.storage.get_head(
                asset.storage_bucket, event.working_storage_path, SNIFF_BYTES
            )
        except StorageManagerError as e:
            logger.warning("[%s] Could not sniff object, classifying by type only: %s", event.asset_id, e)

        extension = extension_of(asset.original_filename) or extension_of(event.working_storage_path)
        return classify(event.declared_mime or asset.mime_type, extension, head)

    def _short_circuit(self, event: UploadCommitted) -> None:
        """Mark every downstream outcome skipped and dispatch only the finalizer."""
        now = utc_now_iso()
        self.repo.transition_thumbnail(
            event.asset_id,
            [ThumbnailStatus.PENDING, ThumbnailStatus.PROCESSING],
            ThumbnailStatus.SKIPPED,
            fields={"thumbnail_skip_reason": ReasonCode.UNSUPPORTED_FILE_TYPE},
            asset_metadata={
                "metadata_extracted": True,
                "preview_skipped": True,
                f"_{AI_TAGGING}_skipped": True,
                f"_{AI_TAGGING}_skip_reason": ReasonCode.UNSUPPORTED_FILE_TYPE,
                f"_{AI_METADATA}_status": "skipped",
                "_short_circuited_at": now,
            },
            version_id=event.version_id,
            version_metadata={
                "metadata_extraction": "skipped",
                "preview_generation": "skipped",
                "ai_processing": "skipped",
            },
        )
        self.repo.update_asset(event.asset_id, analysis_status=AnalysisStatus.SKIPPED)
        self.repo.update_version(event.version_id, pipeline_status=PipelineStatus.PROCESSING)
        logger.info("[%s] Unsupported file type, dispatching finalize only", event.asset_id)
        self.dispatcher.dispatch_chain(event.asset_id, event.version_id, [FINALIZE])


__all__ = ["PipelineOrchestrator"]
