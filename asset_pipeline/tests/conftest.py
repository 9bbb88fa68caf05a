"""
Shared test doubles.

InMemoryRepository mirrors AssetRepository closely enough for stage, runner,
watchdog and ops tests: it hands out copies of rows (like a real SELECT) and
applies compare-and-set transitions the same way the SQL does.
"""

import copy
import dataclasses
import io
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image

from asset_pipeline.classifier import STORED_CATEGORY_KEY
from asset_pipeline.config import PipelineSettings, ThumbnailStyle
from asset_pipeline.job_queue import EnqueueResult
from asset_pipeline.storage_manager import ObjectNotFoundError
from asset_pipeline.types import (
    AnalysisStatus,
    Asset,
    AssetVersion,
    FailureCategory,
    FailureRecord,
    MetadataCandidate,
    PipelineStatus,
    TagCandidate,
    ThumbnailStatus,
)


def _now():
    return datetime.now(timezone.utc)


def make_image_bytes(width=64, height=48, color=(200, 30, 30), fmt="PNG"):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class InMemoryRepository:
    def __init__(self):
        self.assets = {}
        self.versions = {}
        self.failures = []
        self.tag_candidates = []
        self.asset_tags = {}
        self.metadata_candidates = []
        self.pointer_updates = []
        self._ids = 0

    def _next_id(self):
        self._ids += 1
        return self._ids

    # Seeding -----------------------------------------------------------

    def add_asset(self, asset_id=None, version_id=None, category=None, **fields):
        asset_id = asset_id or str(uuid.uuid4())
        version_id = version_id or str(uuid.uuid4())
        metadata = dict(fields.pop("metadata", {}) or {})
        if category is not None:
            metadata[STORED_CATEGORY_KEY] = category.value
        version_metadata = dict(fields.pop("version_metadata", {}) or {})
        version_fields = fields.pop("version_fields", {}) or {}
        fields.setdefault("tenant_id", "tenant-1")
        fields.setdefault("storage_bucket", "bucket")
        fields.setdefault("storage_root_path", f"temp/uploads/{asset_id}/original.png")
        fields.setdefault("original_filename", "photo.png")
        fields.setdefault("mime_type", "image/png")
        asset = Asset(id=asset_id, metadata=metadata, current_version_id=version_id, **fields)
        version = AssetVersion(id=version_id, asset_id=asset_id, metadata=version_metadata, **version_fields)
        self.assets[asset_id] = asset
        self.versions[version_id] = version
        return asset, version

    def stored_asset(self, asset_id):
        return self.assets[asset_id]

    def stored_version(self, version_id):
        return self.versions[version_id]

    # Reads -------------------------------------------------------------

    def get_asset(self, asset_id):
        asset = self.assets.get(asset_id)
        return copy.deepcopy(asset) if asset else None

    def get_version(self, version_id):
        version = self.versions.get(version_id)
        return copy.deepcopy(version) if version else None

    def get_current_version(self, asset_id):
        current = [v for v in self.versions.values() if v.asset_id == asset_id and v.is_current]
        current.sort(key=lambda v: v.version_number, reverse=True)
        return copy.deepcopy(current[0]) if current else None

    def _stuck(self, older_than_seconds):
        cutoff = _now() - timedelta(seconds=older_than_seconds)
        return sorted(
            (
                a for a in self.assets.values()
                if a.thumbnail_status is ThumbnailStatus.PROCESSING
                and a.thumbnail_started_at is not None
                and a.thumbnail_started_at < cutoff
            ),
            key=lambda a: a.thumbnail_started_at,
        )

    def list_visible_assets(self, tenant_id, limit=50):
        from asset_pipeline.visibility import asset_is_visible

        found = [
            a for a in sorted(self.assets.values(), key=lambda a: a.id)
            if a.tenant_id == tenant_id and asset_is_visible(a)
        ]
        return [copy.deepcopy(a) for a in found[:limit]]

    def list_stuck_thumbnails(self, older_than_seconds, limit=100):
        return [copy.deepcopy(a) for a in self._stuck(older_than_seconds)[:limit]]

    def list_assets_by_thumbnail_reason(self, statuses, reason_prefix, limit=500):
        found = [
            a for a in sorted(self.assets.values(), key=lambda a: a.id)
            if a.thumbnail_status in statuses
            and (a.thumbnail_skip_reason or a.thumbnail_error or "").startswith(reason_prefix)
            and a.deleted_at is None
        ]
        return [copy.deepcopy(a) for a in found[:limit]]

    def list_assets_for_recompute(self, limit=500, after_id=None):
        found = [
            a for a in sorted(self.assets.values(), key=lambda a: a.id)
            if a.thumbnail_status is ThumbnailStatus.COMPLETED
            and a.deleted_at is None
            and (after_id is None or a.id > after_id)
        ]
        return [copy.deepcopy(a) for a in found[:limit]]

    # Writes ------------------------------------------------------------

    def mark_processing_started(self, asset_id):
        asset = self.assets[asset_id]
        if asset.processing_started_at is not None:
            return False
        asset.processing_started_at = _now()
        return True

    def clear_processing_started(self, asset_id):
        self.assets[asset_id].processing_started_at = None

    def update_asset(self, asset_id, **fields):
        for key, value in fields.items():
            setattr(self.assets[asset_id], key, value)

    def update_version(self, version_id, **fields):
        version = self.versions[version_id]
        if version.is_finalized:
            return
        for key, value in fields.items():
            setattr(version, key, value)

    def patch_asset_metadata(self, asset_id, patch=None, remove=()):
        metadata = self.assets[asset_id].metadata
        for key in remove:
            metadata.pop(key, None)
        metadata.update(copy.deepcopy(dict(patch or {})))

    def patch_version_metadata(self, version_id, patch=None, remove=()):
        version = self.versions[version_id]
        if version.is_finalized:
            return
        for key in remove:
            version.metadata.pop(key, None)
        version.metadata.update(copy.deepcopy(dict(patch or {})))

    def transition_thumbnail(
        self,
        asset_id,
        from_statuses,
        to_status,
        fields=None,
        asset_metadata=None,
        version_id=None,
        version_metadata=None,
    ):
        asset = self.assets[asset_id]
        if asset.thumbnail_status not in [ThumbnailStatus(s) for s in from_statuses]:
            return False
        asset.thumbnail_status = to_status
        for key, value in (fields or {}).items():
            setattr(asset, key, value)
        asset.metadata.update(copy.deepcopy(dict(asset_metadata or {})))
        if version_id and version_metadata:
            self.patch_version_metadata(version_id, version_metadata)
        return True

    def fail_stuck_thumbnails(self, older_than_seconds, error, stage, message, limit=100):
        reclaimed = []
        for asset in self._stuck(older_than_seconds)[:limit]:
            asset.thumbnail_status = ThumbnailStatus.FAILED
            asset.thumbnail_error = error
            self.insert_failure(
                FailureRecord(
                    id=None,
                    asset_id=asset.id,
                    stage=stage,
                    category=FailureCategory.TIMEOUT,
                    message=message,
                    attempt=1,
                    version_id=asset.current_version_id,
                )
            )
            reclaimed.append(copy.deepcopy(asset))
        return reclaimed

    def finalize_version(self, asset_id, version_id, merge, analysis_status=AnalysisStatus.COMPLETE):
        asset = self.assets[asset_id]
        version = self.versions[version_id]
        if version.is_finalized:
            return False
        asset.metadata = merge(asset.metadata, version.metadata)
        asset.analysis_status = analysis_status
        version.pipeline_status = PipelineStatus.COMPLETE
        version.pipeline_completed_at = _now()
        return True

    def update_storage_pointer(self, asset_id, new_path, metadata_patch=None):
        self.pointer_updates.append((asset_id, new_path))
        asset = self.assets[asset_id]
        asset.storage_root_path = new_path
        asset.metadata.update(copy.deepcopy(dict(metadata_patch or {})))

    # Failure records ---------------------------------------------------

    def insert_failure(self, record):
        record.id = self._next_id()
        record.created_at = _now()
        self.failures.append(copy.deepcopy(record))
        return record

    def list_failures(self, asset_id=None, stage=None, unresolved_only=True, limit=100):
        found = [
            r for r in reversed(self.failures)
            if (asset_id is None or r.asset_id == asset_id)
            and (stage is None or r.stage == stage)
            and (not unresolved_only or r.resolved_at is None)
        ]
        return [copy.deepcopy(r) for r in found[:limit]]

    def resolve_failure(self, record_id, resolution):
        for record in self.failures:
            if record.id == record_id and record.resolved_at is None:
                record.resolved_at = _now()
                record.resolution = resolution
                return True
        return False

    def resolve_failures(self, asset_id, stage, resolution):
        count = 0
        for record in self.failures:
            if record.asset_id == asset_id and (stage is None or record.stage == stage) and record.resolved_at is None:
                record.resolved_at = _now()
                record.resolution = resolution
                count += 1
        return count

    def has_unresolved_failure(self, asset_id):
        return any(r.asset_id == asset_id and r.resolved_at is None for r in self.failures)

    # AI candidates -----------------------------------------------------

    def insert_tag_candidates(self, asset_id, candidates):
        inserted = 0
        for c in candidates:
            if any(
                row["asset_id"] == asset_id and row["tag"] == c.tag and row["producer"] == c.producer
                for row in self.tag_candidates
            ):
                continue
            self.tag_candidates.append(
                {
                    "id": self._next_id(),
                    "asset_id": asset_id,
                    "tag": c.tag,
                    "confidence": c.confidence,
                    "producer": c.producer,
                    "resolved": False,
                }
            )
            inserted += 1
        return inserted

    def list_tag_candidates(self, asset_id, unresolved_only=True):
        rows = [
            r for r in self.tag_candidates
            if r["asset_id"] == asset_id and (not unresolved_only or not r["resolved"])
        ]
        return [
            TagCandidate(tag=r["tag"], confidence=r["confidence"], id=r["id"], producer=r["producer"])
            for r in rows
        ]

    def resolve_tag_candidate(self, candidate_id):
        for row in self.tag_candidates:
            if row["id"] == candidate_id:
                row["resolved"] = True

    def list_asset_tags(self, asset_id):
        return [t["tag"] for t in self.asset_tags.get(asset_id, [])]

    def insert_asset_tag(self, asset_id, tag, source, confidence, auto_applied):
        tags = self.asset_tags.setdefault(asset_id, [])
        if any(t["tag"] == tag for t in tags):
            return False
        tags.append({"tag": tag, "source": source, "confidence": confidence, "auto_applied": auto_applied})
        return True

    def insert_metadata_candidates(self, asset_id, candidates):
        for c in candidates:
            self.metadata_candidates.append(
                (asset_id, MetadataCandidate(c.field_key, c.value, c.confidence, self._next_id(), c.producer))
            )
        return len(candidates)

    def list_metadata_candidates(self, asset_id):
        return [copy.deepcopy(c) for a, c in self.metadata_candidates if a == asset_id]


# ---------------------------------------------------------------------------
# Storage, queue and vision
# ---------------------------------------------------------------------------

class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.drop_on_put = set()

    def add(self, key, data, content_type="application/octet-stream", bucket="bucket"):
        self.objects[(bucket, key)] = (data, content_type)

    def get(self, bucket, key):
        try:
            return self.objects[(bucket, key)][0]
        except KeyError:
            raise ObjectNotFoundError(f"s3://{bucket}/{key} not found", "NoSuchKey")

    def get_head(self, bucket, key, length=512):
        return self.get(bucket, key)[:length]

    def head(self, bucket, key):
        data = self.get(bucket, key)
        return {"size": len(data), "content_type": self.objects[(bucket, key)][1], "etag": "etag"}

    def put(self, bucket, key, data, content_type="application/octet-stream"):
        if key in self.drop_on_put:
            return
        self.objects[(bucket, key)] = (data, content_type)

    def copy(self, bucket, source_key, dest_key):
        self.objects[(bucket, dest_key)] = (self.get(bucket, source_key), self.objects[(bucket, source_key)][1])

    def delete(self, bucket, key):
        self.deleted.append(key)
        self.objects.pop((bucket, key), None)

    def exists(self, bucket, key):
        return (bucket, key) in self.objects


class FakeQueue:
    """Idempotent enqueue keyed like the real queue; records every call."""

    def __init__(self):
        self.jobs = {}
        self.enqueued = []
        self.completed = []
        self.failed = []
        self.deferred = []
        self.heartbeats = []
        self.dead_letters = []
        self.cancelled = set()

    def enqueue(self, job_input, priority=0, max_attempts=3, delay_seconds=0):
        key = job_input.compute_idempotency_key()
        if key in self.jobs:
            return EnqueueResult(job_id=self.jobs[key][0], status="QUEUED", already_existed=True)
        job_id = uuid.uuid4()
        self.jobs[key] = (job_id, job_input, max_attempts)
        self.enqueued.append((job_input, max_attempts))
        return EnqueueResult(job_id=job_id, status="QUEUED", already_existed=False)

    def stages_enqueued(self):
        return [job_input.stage for job_input, _ in self.enqueued]

    def complete(self, job_id, output=None):
        self.completed.append((job_id, output))

    def fail(self, job_id, error, error_code=None, permanent=False):
        self.failed.append((job_id, error, error_code, permanent))

    def defer(self, job_id, delay_seconds, reason=None):
        self.deferred.append((job_id, delay_seconds, reason))

    def heartbeat(self, job_id, progress=None):
        self.heartbeats.append((job_id, progress))

    def add_dead_letter(self, job_input, error_code="STALE", attempts=3, last_error="Released after stale heartbeat"):
        row = {
            "id": uuid.uuid4(),
            "stage": job_input.stage,
            "asset_id": job_input.asset_id,
            "attempts": attempts,
            "max_attempts": attempts,
            "error_code": error_code,
            "last_error": last_error,
            "input": job_input.to_dict(),
            "chain_resumed_at": None,
        }
        self.dead_letters.append(row)
        return row

    def get_dead_letter_jobs(self, limit=50, unresumed_only=False):
        from asset_pipeline.job_queue import RESUMABLE_ERROR_CODES

        rows = [
            r for r in self.dead_letters
            if not unresumed_only
            or (r["chain_resumed_at"] is None and r["error_code"] in RESUMABLE_ERROR_CODES)
        ]
        return [dict(r) for r in rows[:limit]]

    def mark_chain_resumed(self, job_id):
        for row in self.dead_letters:
            if row["id"] == job_id:
                row["chain_resumed_at"] = _now()

    # Inspection ----------------------------------------------------------

    def _status(self, job_id):
        if any(c[0] == job_id for c in self.completed):
            return "SUCCEEDED"
        if any(f[0] == job_id for f in self.failed):
            return "FAILED"
        if job_id in self.cancelled:
            return "CANCELLED"
        return "QUEUED"

    def _row(self, job_id, job_input, max_attempts):
        return {
            "id": job_id,
            "status": self._status(job_id),
            "stage": job_input.stage,
            "asset_id": job_input.asset_id,
            "attempts": 0,
            "max_attempts": max_attempts,
            "last_error": None,
            "input": job_input.to_dict(),
            "output": None,
        }

    def list_jobs(self, status=None, asset_id=None, limit=50, offset=0):
        rows = [self._row(*entry) for entry in self.jobs.values()]
        rows = [
            r for r in rows
            if (status is None or r["status"] == status.upper())
            and (asset_id is None or r["asset_id"] == asset_id)
        ]
        return rows[offset:offset + limit]

    def get_job(self, job_id):
        for entry in self.jobs.values():
            if entry[0] == job_id:
                return self._row(*entry)
        return None

    def get_stats(self):
        by_status = {}
        for row in self.list_jobs(limit=len(self.jobs)):
            by_status[row["status"]] = by_status.get(row["status"], 0) + 1
        return {"by_status": by_status, "total": sum(by_status.values())}

    def cancel(self, job_id):
        row = self.get_job(job_id)
        if row is None or row["status"] != "QUEUED":
            return False
        self.cancelled.add(job_id)
        return True


class FakeVision:
    def __init__(self, tags=None, fields=None):
        self.tags = tags or []
        self.fields = fields or []
        self.calls = []

    def tag_image(self, image, content_type="image/webp"):
        self.calls.append(("tag", content_type))
        return list(self.tags)

    def generate_metadata(self, image, content_type, fields):
        self.calls.append(("metadata", tuple(fields)))
        return [c for c in self.fields if c.field_key in fields]


# ---------------------------------------------------------------------------
# Queue draining
# ---------------------------------------------------------------------------

def drain(queue, runner, dispatcher, limit=100):
    """Run queued jobs through the worker until nothing is left. Deferred jobs come back with attempts + 1."""
    from asset_pipeline.job_queue import Job
    from asset_pipeline.worker import process_job

    pending = []
    seen = 0
    processed = 0
    while True:
        while seen < len(queue.enqueued):
            job_input, max_attempts = queue.enqueued[seen]
            seen += 1
            job_id = queue.jobs[job_input.compute_idempotency_key()][0]
            pending.append(
                Job(
                    id=job_id,
                    input=job_input,
                    attempts=1,
                    max_attempts=max_attempts,
                    created_at=_now(),
                    raw_input=job_input.to_dict(),
                )
            )
        if not pending:
            return processed
        job = pending.pop(0)
        deferred_before = len(queue.deferred)
        process_job(job, runner, queue, dispatcher)
        processed += 1
        if len(queue.deferred) > deferred_before:
            pending.append(dataclasses.replace(job, attempts=job.attempts + 1))
        if processed >= limit:
            raise AssertionError("queue did not drain")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return PipelineSettings(
        output_format="png",
        fallback_format="jpeg",
        retry_base_delay=0.0,
        gate_delay_seconds=5,
        gate_max_attempts=3,
        thumbnail_styles=(
            ThumbnailStyle("preview", 8, 8, quality=50, blur=True),
            ThumbnailStyle("thumb", 32, 32),
            ThumbnailStyle("medium", 64, 64),
        ),
    )


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def image_bytes():
    return make_image_bytes()


@pytest.fixture
def dispatcher(queue, settings):
    from asset_pipeline.pipeline.chain import ChainDispatcher

    return ChainDispatcher(queue, settings)


@pytest.fixture
def recorder(repo, dispatcher):
    from asset_pipeline.pipeline.failures import FailureRecorder

    return FailureRecorder(repo, dispatcher)


@pytest.fixture
def runner(repo, storage, settings, recorder):
    from asset_pipeline.pipeline.base import StageRunner
    from asset_pipeline.pipeline.stages import build_stages
    from asset_pipeline.thumbnails import ThumbnailEngine

    return StageRunner(
        repo,
        storage,
        settings,
        build_stages(),
        recorder,
        vision=None,
        engine=ThumbnailEngine(settings),
        sleep=lambda seconds: None,
    )
