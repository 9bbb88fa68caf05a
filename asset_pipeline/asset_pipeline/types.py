"""
Type definitions for the asset processing pipeline.

Row-backed dataclasses for assets, versions and failure records, the status
enums they carry, and TypedDicts for the structured values stored in metadata
bags.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------

class AssetStatus(str, Enum):
    """Lifecycle status owned by the upload/approval collaborators."""
    VISIBLE = "VISIBLE"
    HIDDEN = "HIDDEN"
    FAILED = "FAILED"


class ThumbnailStatus(str, Enum):
    """Preview state machine."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_THUMBNAIL_STATUSES


TERMINAL_THUMBNAIL_STATUSES = frozenset(
    {ThumbnailStatus.COMPLETED, ThumbnailStatus.FAILED, ThumbnailStatus.SKIPPED}
)

# Statuses that open the sequencing gate.
READY_THUMBNAIL_STATUSES = frozenset({ThumbnailStatus.COMPLETED, ThumbnailStatus.SKIPPED})


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    FAILED = "failed"


class PipelineStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class FailureCategory(str, Enum):
    """Categories stored on failure records."""
    TRANSIENT = "transient"
    DECODE = "decode"
    MISSING_CAPABILITY = "missing_capability"
    OVERSIZED = "oversized"
    UNSUPPORTED = "unsupported"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ReasonCode:
    """Reason codes written to thumbnail_skip_reason / thumbnail_error and stage notes."""

    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    VECTOR_NO_PREVIEW = "vector_no_preview"
    TIMEOUT = "timeout"
    MISSING_CAPABILITY = "missing_capability"
    DECODE_FAILED = "decode_failed"
    OVERSIZED = "oversized"
    THUMBNAIL_UNAVAILABLE = "thumbnail_unavailable"
    NO_CATEGORY = "no_category"
    ALREADY_GENERATED = "already_generated"
    AI_DISABLED = "ai_disabled"
    AUTO_APPLY_DISABLED = "auto_apply_disabled"
    NO_CANDIDATES = "no_candidates"
    NOT_AN_IMAGE = "not_an_image"
    GATE_EXHAUSTED = "gate_exhausted"


# ---------------------------------------------------------------------------
# Metadata value shapes
# ---------------------------------------------------------------------------

class ThumbnailInfo(TypedDict, total=False):
    """One generated preview, as stored under metadata["thumbnails"][style]."""
    path: str
    width: int
    height: int
    size_bytes: int
    format: str
    generated_at: str


class ThumbnailRetryEntry(TypedDict, total=False):
    attempted_at: str
    previous_status: str
    retry_number: int
    triggered_by: Optional[str]


class DominantColor(TypedDict):
    hex: str
    coverage: float


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

@dataclass
class Asset:
    """The unit of work: one uploaded file and its processing-derived state."""
    id: str
    tenant_id: str
    status: AssetStatus = AssetStatus.VISIBLE
    published_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    thumbnail_status: ThumbnailStatus = ThumbnailStatus.PENDING
    thumbnail_started_at: Optional[datetime] = None
    thumbnail_error: Optional[str] = None
    thumbnail_skip_reason: Optional[str] = None
    thumbnail_retry_count: int = 0
    analysis_status: AnalysisStatus = AnalysisStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)
    storage_root_path: Optional[str] = None
    storage_bucket: Optional[str] = None
    mime_type: Optional[str] = None
    original_filename: Optional[str] = None
    file_size: Optional[int] = None
    processing_started_at: Optional[datetime] = None
    current_version_id: Optional[str] = None

    @property
    def category_id(self) -> Any:
        return self.metadata.get("category_id")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Asset":
        """Create an Asset from a database row."""
        return cls(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            status=AssetStatus(row.get("status") or AssetStatus.VISIBLE.value),
            published_at=row.get("published_at"),
            archived_at=row.get("archived_at"),
            deleted_at=row.get("deleted_at"),
            thumbnail_status=ThumbnailStatus(
                row.get("thumbnail_status") or ThumbnailStatus.PENDING.value
            ),
            thumbnail_started_at=row.get("thumbnail_started_at"),
            thumbnail_error=row.get("thumbnail_error"),
            thumbnail_skip_reason=row.get("thumbnail_skip_reason"),
            thumbnail_retry_count=row.get("thumbnail_retry_count") or 0,
            analysis_status=AnalysisStatus(
                row.get("analysis_status") or AnalysisStatus.PENDING.value
            ),
            metadata=dict(row.get("metadata") or {}),
            storage_root_path=row.get("storage_root_path"),
            storage_bucket=row.get("storage_bucket"),
            mime_type=row.get("mime_type"),
            original_filename=row.get("original_filename"),
            file_size=row.get("file_size"),
            processing_started_at=row.get("processing_started_at"),
            current_version_id=(
                str(row["current_version_id"]) if row.get("current_version_id") else None
            ),
        )


@dataclass
class AssetVersion:
    """One processing attempt's output for an asset."""
    id: str
    asset_id: str
    version_number: int = 1
    is_current: bool = True
    file_path: Optional[str] = None
    mime_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    pipeline_status: PipelineStatus = PipelineStatus.PENDING
    pipeline_completed_at: Optional[datetime] = None

    @property
    def is_finalized(self) -> bool:
        return self.pipeline_completed_at is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AssetVersion":
        return cls(
            id=str(row["id"]),
            asset_id=str(row["asset_id"]),
            version_number=row.get("version_number") or 1,
            is_current=bool(row.get("is_current", True)),
            file_path=row.get("file_path"),
            mime_type=row.get("mime_type"),
            width=row.get("width"),
            height=row.get("height"),
            metadata=dict(row.get("metadata") or {}),
            pipeline_status=PipelineStatus(
                row.get("pipeline_status") or PipelineStatus.PENDING.value
            ),
            pipeline_completed_at=row.get("pipeline_completed_at"),
        )


@dataclass
class FailureRecord:
    """One stage failure. Never deleted by the pipeline."""
    id: Optional[int]
    asset_id: str
    stage: str
    category: FailureCategory
    message: str
    attempt: int
    version_id: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FailureRecord":
        return cls(
            id=row.get("id"),
            asset_id=str(row["asset_id"]),
            stage=row["stage"],
            category=FailureCategory(row["category"]),
            message=row.get("message") or "",
            attempt=row.get("attempt") or 1,
            version_id=str(row["version_id"]) if row.get("version_id") else None,
            created_at=row.get("created_at"),
            resolved_at=row.get("resolved_at"),
            resolution=row.get("resolution"),
        )


@dataclass(frozen=True)
class UploadCommitted:
    """Upload-completion event delivered once per committed upload."""
    tenant_id: str
    asset_id: str
    version_id: str
    working_storage_path: str
    declared_mime: Optional[str] = None


@dataclass
class TagCandidate:
    """An AI-produced tag awaiting review or auto-apply."""
    tag: str
    confidence: Optional[float]
    id: Optional[int] = None
    producer: str = "ai"


@dataclass
class MetadataCandidate:
    """An AI-produced value for a metadata field."""
    field_key: str
    value: Any
    confidence: Optional[float]
    id: Optional[int] = None
    producer: str = "ai"


__all__ = [
    "AssetStatus",
    "ThumbnailStatus",
    "AnalysisStatus",
    "PipelineStatus",
    "FailureCategory",
    "ReasonCode",
    "TERMINAL_THUMBNAIL_STATUSES",
    "READY_THUMBNAIL_STATUSES",
    "ThumbnailInfo",
    "ThumbnailRetryEntry",
    "DominantColor",
    "Asset",
    "AssetVersion",
    "FailureRecord",
    "UploadCommitted",
    "TagCandidate",
    "MetadataCandidate",
]
