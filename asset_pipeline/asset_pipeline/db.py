"""
Database helpers for the asset pipeline.

AssetRepository is the single place that reads and writes asset, version,
failure and AI-candidate rows. Every state transition that can race (the
preview state machine, finalization, the processing_started flag) is a
compare-and-set in SQL so concurrent workers and the watchdog never overwrite
each other's terminal states.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor, execute_values

from .config import get_db_config
from .types import (
    AnalysisStatus,
    Asset,
    AssetVersion,
    FailureRecord,
    MetadataCandidate,
    PipelineStatus,
    TagCandidate,
    ThumbnailStatus,
)
from .visibility import visible_sql

logger = logging.getLogger(__name__)

ASSET_COLUMNS = [
    "id",
    "tenant_id",
    "status",
    "published_at",
    "archived_at",
    "deleted_at",
    "thumbnail_status",
    "thumbnail_started_at",
    "thumbnail_error",
    "thumbnail_skip_reason",
    "thumbnail_retry_count",
    "analysis_status",
    "metadata",
    "storage_root_path",
    "storage_bucket",
    "mime_type",
    "original_filename",
    "file_size",
    "processing_started_at",
    "current_version_id",
]

# Columns stages may write directly. Lifecycle and visibility fields are not among them.
UPDATABLE_ASSET_COLUMNS = {
    "thumbnail_started_at",
    "thumbnail_error",
    "thumbnail_skip_reason",
    "thumbnail_retry_count",
    "analysis_status",
    "storage_root_path",
    "file_size",
    "mime_type",
}

UPDATABLE_VERSION_COLUMNS = {
    "width",
    "height",
    "mime_type",
    "pipeline_status",
}

JSONB_COLUMNS = {"metadata"}


@contextmanager
def get_connection():
    """Yield a psycopg2 connection with sensible defaults."""
    cfg = get_db_config()
    conn = psycopg2.connect(cfg.url, cursor_factory=RealDictCursor)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _adapt(value: Any) -> Any:
    """Prepare a Python value for psycopg2."""
    if isinstance(value, (ThumbnailStatus, AnalysisStatus, PipelineStatus)):
        return value.value
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


def _set_clause(fields: Mapping[str, Any], allowed: Iterable[str]) -> tuple:
    allowed = set(allowed)
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Columns not updatable by the pipeline: {sorted(unknown)}")
    parts = [sql.SQL("{} = %s").format(sql.Identifier(col)) for col in fields]
    return parts, [_adapt(v) for v in fields.values()]


class AssetRepository:
    """psycopg2-backed repository for pipeline state."""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute("SELECT * FROM assets WHERE id = %s", (asset_id,))
            row = cur.fetchone()
        return Asset.from_row(row) if row else None

    def get_version(self, version_id: str) -> Optional[AssetVersion]:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute("SELECT * FROM asset_versions WHERE id = %s", (version_id,))
            row = cur.fetchone()
        return AssetVersion.from_row(row) if row else None

    def get_current_version(self, asset_id: str) -> Optional[AssetVersion]:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM asset_versions WHERE asset_id = %s AND is_current "
                "ORDER BY version_number DESC LIMIT 1",
                (asset_id,),
            )
            row = cur.fetchone()
        return AssetVersion.from_row(row) if row else None

    def list_visible_assets(self, tenant_id: str, limit: int = 50) -> List[Asset]:
        """Default visible set for a tenant (lifecycle fields only)."""
        query = f"SELECT * FROM assets WHERE tenant_id = %s AND {visible_sql()} ORDER BY id LIMIT %s"
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (tenant_id, limit))
            return [Asset.from_row(r) for r in cur.fetchall()]

    def list_stuck_thumbnails(self, older_than_seconds: float, limit: int = 100) -> List[Asset]:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM assets
                WHERE thumbnail_status = 'PROCESSING'
                  AND thumbnail_started_at < now() - make_interval(secs => %s)
                ORDER BY thumbnail_started_at
                LIMIT %s
                """,
                (older_than_seconds, limit),
            )
            return [Asset.from_row(r) for r in cur.fetchall()]

    def list_assets_by_thumbnail_reason(
        self,
        statuses: Sequence[ThumbnailStatus],
        reason_prefix: str,
        limit: int = 500,
    ) -> List[Asset]:
        """Assets whose skip reason or error starts with `reason_prefix`."""
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM assets
                WHERE thumbnail_status = ANY(%s)
                  AND COALESCE(thumbnail_skip_reason, thumbnail_error, '') LIKE %s
                  AND deleted_at IS NULL
                ORDER BY id
                LIMIT %s
                """,
                ([s.value for s in statuses], f"{reason_prefix}%", limit),
            )
            return [Asset.from_row(r) for r in cur.fetchall()]

    def list_assets_for_recompute(self, limit: int = 500, after_id: Optional[str] = None) -> List[Asset]:
        """Historical assets with completed previews, keyset-paginated by id."""
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM assets
                WHERE thumbnail_status = 'COMPLETED'
                  AND deleted_at IS NULL
                  AND (%s::uuid IS NULL OR id > %s::uuid)
                ORDER BY id
                LIMIT %s
                """,
                (after_id, after_id, limit),
            )
            return [Asset.from_row(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def mark_processing_started(self, asset_id: str) -> bool:
        """Set processing_started_at once. Returns False if it was already set."""
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE assets SET processing_started_at = now(), updated_at = now() "
                "WHERE id = %s AND processing_started_at IS NULL RETURNING id",
                (asset_id,),
            )
            return cur.fetchone() is not None

    def clear_processing_started(self, asset_id: str) -> None:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE assets SET processing_started_at = NULL, updated_at = now() WHERE id = %s",
                (asset_id,),
            )

    def update_asset(self, asset_id: str, **fields: Any) -> None:
        if not fields:
            return
        parts, params = _set_clause(fields, UPDATABLE_ASSET_COLUMNS)
        query = sql.SQL("UPDATE assets SET {}, updated_at = now() WHERE id = %s").format(
            sql.SQL(", ").join(parts)
        )
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, params + [asset_id])

    def update_version(self, version_id: str, **fields: Any) -> None:
        if not fields:
            return
        parts, params = _set_clause(fields, UPDATABLE_VERSION_COLUMNS)
        query = sql.SQL(
            "UPDATE asset_versions SET {}, updated_at = now() "
            "WHERE id = %s AND pipeline_completed_at IS NULL"
        ).format(sql.SQL(", ").join(parts))
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, params + [version_id])

    def patch_asset_metadata(
        self,
        asset_id: str,
        patch: Optional[Mapping[str, Any]] = None,
        remove: Sequence[str] = (),
    ) -> None:
        """Atomically apply `patch` to the asset's metadata bag and drop `remove` keys."""
        if not patch and not remove:
            return
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE assets SET metadata = (COALESCE(metadata, '{}'::jsonb) - %s::text[]) || %s::jsonb, "
                "updated_at = now() WHERE id = %s",
                (list(remove), Json(dict(patch or {})), asset_id),
            )

    def patch_version_metadata(
        self,
        version_id: str,
        patch: Optional[Mapping[str, Any]] = None,
        remove: Sequence[str] = (),
    ) -> None:
        """Same as patch_asset_metadata, refused once the version is finalized."""
        if not patch and not remove:
            return
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE asset_versions SET metadata = (COALESCE(metadata, '{}'::jsonb) - %s::text[]) || %s::jsonb, "
                "updated_at = now() WHERE id = %s AND pipeline_completed_at IS NULL",
                (list(remove), Json(dict(patch or {})), version_id),
            )

    def transition_thumbnail(
        self,
        asset_id: str,
        from_statuses: Iterable[ThumbnailStatus],
        to_status: ThumbnailStatus,
        fields: Optional[Mapping[str, Any]] = None,
        asset_metadata: Optional[Mapping[str, Any]] = None,
        version_id: Optional[str] = None,
        version_metadata: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Compare-and-set thumbnail_status.

        The status change, the extra column writes and both metadata patches
        commit together, and only when the current status is one of
        `from_statuses`. Returns False when another writer got there first.
        """
        fields = dict(fields or {})
        parts, params = _set_clause(fields, UPDATABLE_ASSET_COLUMNS) if fields else ([], [])
        parts = [sql.SQL("thumbnail_status = %s")] + parts
        params = [to_status.value] + params
        parts.append(sql.SQL("metadata = COALESCE(metadata, '{}'::jsonb) || %s::jsonb"))
        params.append(Json(dict(asset_metadata or {})))

        query = sql.SQL(
            "UPDATE assets SET {}, updated_at = now() "
            "WHERE id = %s AND thumbnail_status = ANY(%s) RETURNING id"
        ).format(sql.SQL(", ").join(parts))
        expected = [ThumbnailStatus(s).value for s in from_statuses]

        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, params + [asset_id, expected])
            if cur.fetchone() is None:
                return False
            if version_id and version_metadata:
                cur.execute(
                    "UPDATE asset_versions SET metadata = COALESCE(metadata, '{}'::jsonb) || %s::jsonb, "
                    "updated_at = now() WHERE id = %s AND pipeline_completed_at IS NULL",
                    (Json(dict(version_metadata)), version_id),
                )
        return True

    def fail_stuck_thumbnails(
        self,
        older_than_seconds: float,
        error: str,
        stage: str,
        message: str,
        limit: int = 100,
    ) -> List[Asset]:
        """
        Move PROCESSING previews older than the threshold to FAILED.

        Row locks are taken with SKIP LOCKED and the status is re-checked in
        the UPDATE, so a worker finishing at the same moment wins cleanly.
        A timeout failure record is inserted for every reclaimed asset in the
        same statement, so no asset is reclaimed without one.
        """
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                WITH reclaimed AS (
                    UPDATE assets SET thumbnail_status = 'FAILED', thumbnail_error = %s, updated_at = now()
                    WHERE id IN (
                        SELECT id FROM assets
                        WHERE thumbnail_status = 'PROCESSING'
                          AND thumbnail_started_at < now() - make_interval(secs => %s)
                        ORDER BY thumbnail_started_at
                        LIMIT %s
                        FOR UPDATE SKIP LOCKED
                    )
                    AND thumbnail_status = 'PROCESSING'
                    RETURNING *
                ), recorded AS (
                    INSERT INTO asset_processing_failures (asset_id, version_id, stage, category, message, attempt)
                    SELECT id, current_version_id, %s, 'timeout', %s, 1 FROM reclaimed
                )
                SELECT * FROM reclaimed
                """,
                (error, older_than_seconds, limit, stage, message),
            )
            return [Asset.from_row(r) for r in cur.fetchall()]

    def finalize_version(
        self,
        asset_id: str,
        version_id: str,
        merge: Callable[[Mapping[str, Any], Mapping[str, Any]], Dict[str, Any]],
        analysis_status: AnalysisStatus = AnalysisStatus.COMPLETE,
    ) -> bool:
        """
        Merge version metadata into the asset and mark the version complete.

        Both rows are locked for the duration of the merge. Returns False if
        the version was already finalized.
        """
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute("SELECT metadata FROM assets WHERE id = %s FOR UPDATE", (asset_id,))
            asset_row = cur.fetchone()
            cur.execute(
                "SELECT metadata, pipeline_completed_at FROM asset_versions WHERE id = %s FOR UPDATE",
                (version_id,),
            )
            version_row = cur.fetchone()
            if asset_row is None or version_row is None:
                raise LookupError(f"Asset {asset_id} or version {version_id} not found")
            if version_row["pipeline_completed_at"] is not None:
                return False

            merged = merge(asset_row["metadata"] or {}, version_row["metadata"] or {})
            cur.execute(
                "UPDATE assets SET metadata = %s, analysis_status = %s, updated_at = now() WHERE id = %s",
                (Json(merged), analysis_status.value, asset_id),
            )
            cur.execute(
                "UPDATE asset_versions SET pipeline_status = %s, pipeline_completed_at = now(), "
                "updated_at = now() WHERE id = %s AND pipeline_completed_at IS NULL",
                (PipelineStatus.COMPLETE.value, version_id),
            )
        return True

    def update_storage_pointer(
        self,
        asset_id: str,
        new_path: str,
        metadata_patch: Optional[Mapping[str, Any]] = None,
    ) -> None:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE assets SET storage_root_path = %s, "
                "metadata = COALESCE(metadata, '{}'::jsonb) || %s::jsonb, updated_at = now() "
                "WHERE id = %s",
                (new_path, Json(dict(metadata_patch or {})), asset_id),
            )

    # ------------------------------------------------------------------
    # Failure records
    # ------------------------------------------------------------------

    def insert_failure(self, record: FailureRecord) -> FailureRecord:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO asset_processing_failures
                    (asset_id, version_id, stage, category, message, attempt)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id, created_at
                """,
                (
                    record.asset_id,
                    record.version_id,
                    record.stage,
                    record.category.value,
                    record.message,
                    record.attempt,
                ),
            )
            row = cur.fetchone()
        record.id = row["id"]
        record.created_at = row["created_at"]
        return record

    def list_failures(
        self,
        asset_id: Optional[str] = None,
        stage: Optional[str] = None,
        unresolved_only: bool = True,
        limit: int = 100,
    ) -> List[FailureRecord]:
        conditions: List[str] = []
        params: List[Any] = []
        if asset_id:
            conditions.append("asset_id = %s")
            params.append(asset_id)
        if stage:
            conditions.append("stage = %s")
            params.append(stage)
        if unresolved_only:
            conditions.append("resolved_at IS NULL")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT * FROM asset_processing_failures {where} ORDER BY created_at DESC LIMIT %s",
                params + [limit],
            )
            return [FailureRecord.from_row(r) for r in cur.fetchall()]

    def resolve_failure(self, record_id: int, resolution: str) -> bool:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE asset_processing_failures SET resolved_at = now(), resolution = %s "
                "WHERE id = %s AND resolved_at IS NULL RETURNING id",
                (resolution, record_id),
            )
            return cur.fetchone() is not None

    def resolve_failures(self, asset_id: str, stage: Optional[str], resolution: str) -> int:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE asset_processing_failures SET resolved_at = now(), resolution = %s "
                "WHERE asset_id = %s AND (%s::text IS NULL OR stage = %s) AND resolved_at IS NULL",
                (resolution, asset_id, stage, stage),
            )
            return cur.rowcount

    def has_unresolved_failure(self, asset_id: str) -> bool:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM asset_processing_failures WHERE asset_id = %s AND resolved_at IS NULL LIMIT 1",
                (asset_id,),
            )
            return cur.fetchone() is not None

    # ------------------------------------------------------------------
    # AI candidates and tags
    # ------------------------------------------------------------------

    def insert_tag_candidates(self, asset_id: str, candidates: Sequence[TagCandidate]) -> int:
        if not candidates:
            return 0
        rows = [(asset_id, c.tag, c.confidence, c.producer) for c in candidates]
        with get_connection() as conn, conn.cursor() as cur:
            execute_values(
                cur,
                "INSERT INTO asset_tag_candidates (asset_id, tag, confidence, producer) VALUES %s "
                "ON CONFLICT (asset_id, tag, producer) DO NOTHING",
                rows,
            )
            return cur.rowcount

    def list_tag_candidates(self, asset_id: str, unresolved_only: bool = True) -> List[TagCandidate]:
        query = "SELECT id, tag, confidence, producer FROM asset_tag_candidates WHERE asset_id = %s"
        if unresolved_only:
            query += " AND resolved_at IS NULL AND dismissed_at IS NULL"
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(query + " ORDER BY confidence DESC NULLS LAST", (asset_id,))
            return [
                TagCandidate(tag=r["tag"], confidence=r["confidence"], id=r["id"], producer=r["producer"])
                for r in cur.fetchall()
            ]

    def resolve_tag_candidate(self, candidate_id: int) -> None:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE asset_tag_candidates SET resolved_at = now() WHERE id = %s AND resolved_at IS NULL",
                (candidate_id,),
            )

    def list_asset_tags(self, asset_id: str) -> List[str]:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute("SELECT tag FROM asset_tags WHERE asset_id = %s", (asset_id,))
            return [r["tag"] for r in cur.fetchall()]

    def insert_asset_tag(
        self,
        asset_id: str,
        tag: str,
        source: str,
        confidence: Optional[float],
        auto_applied: bool,
    ) -> bool:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "INSERT INTO asset_tags (asset_id, tag, source, confidence, auto_applied) "
                "VALUES (%s, %s, %s, %s, %s) ON CONFLICT (asset_id, tag) DO NOTHING RETURNING id",
                (asset_id, tag, source, confidence, auto_applied),
            )
            return cur.fetchone() is not None

    def insert_metadata_candidates(self, asset_id: str, candidates: Sequence[MetadataCandidate]) -> int:
        if not candidates:
            return 0
        rows = [(asset_id, c.field_key, Json(c.value), c.confidence, c.producer) for c in candidates]
        with get_connection() as conn, conn.cursor() as cur:
            execute_values(
                cur,
                "INSERT INTO asset_metadata_candidates (asset_id, field_key, value, confidence, producer) VALUES %s",
                rows,
            )
            return cur.rowcount

    def list_metadata_candidates(self, asset_id: str) -> List[MetadataCandidate]:
        with get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT id, field_key, value, confidence, producer FROM asset_metadata_candidates "
                "WHERE asset_id = %s ORDER BY created_at",
                (asset_id,),
            )
            return [
                MetadataCandidate(
                    field_key=r["field_key"],
                    value=r["value"],
                    confidence=r["confidence"],
                    id=r["id"],
                    producer=r["producer"],
                )
                for r in cur.fetchall()
            ]


__all__ = ["AssetRepository", "get_connection", "ASSET_COLUMNS"]
