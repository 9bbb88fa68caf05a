import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from asset_pipeline.classifier import FileCategory
from asset_pipeline.job_queue import Job, JobInput
from asset_pipeline.pipeline.base import COMPLETED, DEFERRED
from asset_pipeline.pipeline.chain import (
    AI_TAGGING,
    FINALIZE,
    GENERATE_PREVIEWS,
    POPULATE_COMPUTED_METADATA,
    stages_after,
)
from asset_pipeline.types import FailureCategory, ThumbnailStatus
from asset_pipeline.watchdog import TimeoutWatchdog
from asset_pipeline.worker import process_job


def _ago(seconds):
    return datetime.now(timezone.utc) - timedelta(seconds=seconds)


@pytest.fixture
def watchdog(repo, recorder, dispatcher, settings):
    return TimeoutWatchdog(repo, recorder, dispatcher, settings)


def _stuck_asset(repo, storage=None, age=3600, **fields):
    asset, version = repo.add_asset(
        category=FileCategory.RASTER_IMAGE,
        thumbnail_status=ThumbnailStatus.PROCESSING,
        thumbnail_started_at=_ago(age),
        **fields,
    )
    return asset, version


class TestSweep:
    def test_reclaims_stuck_preview(self, repo, queue, watchdog):
        asset, version = _stuck_asset(repo)

        result = watchdog.sweep()

        assert result.reclaimed == [asset.id]
        assert result.dispatched == [asset.id]
        stored = repo.stored_asset(asset.id)
        assert stored.thumbnail_status is ThumbnailStatus.FAILED
        assert stored.thumbnail_error == "timeout"
        assert stored.metadata["_generate_previews_failed"] is True
        assert repo.stored_version(version.id).metadata["thumbnail_generation_error"] == "timeout"

    def test_writes_timeout_failure_record(self, repo, watchdog):
        asset, version = _stuck_asset(repo)

        watchdog.sweep()

        assert len(repo.failures) == 1
        record = repo.failures[0]
        assert record.stage == GENERATE_PREVIEWS
        assert record.category is FailureCategory.TIMEOUT
        assert record.version_id == version.id

    def test_resumes_chain_after_previews(self, repo, queue, watchdog):
        _stuck_asset(repo)

        watchdog.sweep()

        after = stages_after(GENERATE_PREVIEWS)
        assert queue.stages_enqueued() == [after[0]]
        assert queue.enqueued[0][0].chain == after[1:]

    def test_fresh_processing_is_left_alone(self, repo, queue, watchdog):
        asset, _ = _stuck_asset(repo, age=10)

        result = watchdog.sweep()

        assert result.reclaimed == []
        assert repo.stored_asset(asset.id).thumbnail_status is ThumbnailStatus.PROCESSING
        assert queue.enqueued == []

    def test_explicit_threshold(self, repo, watchdog):
        _stuck_asset(repo, age=120)

        assert len(watchdog.sweep(threshold_seconds=60).reclaimed) == 1

    def test_visibility_fields_untouched(self, repo, watchdog):
        published = _ago(86400)
        asset, _ = _stuck_asset(repo, published_at=published)

        watchdog.sweep()

        stored = repo.stored_asset(asset.id)
        assert stored.published_at == published
        assert stored.deleted_at is None
        assert stored.archived_at is None

    def test_finalized_version_note_goes_to_asset(self, repo, watchdog):
        asset, version = _stuck_asset(repo, version_fields={"pipeline_completed_at": _ago(5)})

        watchdog.sweep()

        assert repo.stored_asset(asset.id).metadata["thumbnail_generation_failed"] is True
        assert "thumbnail_generation_failed" not in repo.stored_version(version.id).metadata

    def test_one_bad_row_does_not_stop_sweep(self, repo, watchdog, dispatcher, monkeypatch):
        first, _ = _stuck_asset(repo, age=7200)
        second, _ = _stuck_asset(repo, age=3600)
        calls = []
        original = dispatcher.dispatch_chain

        def flaky(asset_id, *args, **kwargs):
            calls.append(asset_id)
            if asset_id == first.id:
                raise RuntimeError("queue unavailable")
            return original(asset_id, *args, **kwargs)

        monkeypatch.setattr(dispatcher, "dispatch_chain", flaky)

        result = watchdog.sweep()

        assert result.errors == [first.id]
        assert result.dispatched == [second.id]

    def test_failure_record_survives_failed_recovery(self, repo, watchdog, dispatcher, monkeypatch):
        asset, _ = _stuck_asset(repo)

        def broken(*args, **kwargs):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(dispatcher, "dispatch_chain", broken)

        result = watchdog.sweep()

        assert result.errors == [asset.id]
        assert repo.stored_asset(asset.id).thumbnail_status is ThumbnailStatus.FAILED
        assert [r.asset_id for r in repo.failures] == [asset.id]


class TestDeadLetters:
    def _dead(self, queue, stage=AI_TAGGING, chain=("ai_metadata", FINALIZE), **kwargs):
        job_input = JobInput(asset_id="asset-1", version_id="version-1", stage=stage, chain=list(chain))
        return queue.add_dead_letter(job_input, **kwargs)

    def test_stale_job_at_ceiling_resumes_chain(self, repo, queue, watchdog):
        row = self._dead(queue)

        result = watchdog.sweep()

        assert result.resumed == [str(row["id"])]
        assert queue.stages_enqueued() == ["ai_metadata"]
        assert queue.enqueued[0][0].chain == [FINALIZE]
        record = repo.failures[0]
        assert record.stage == AI_TAGGING
        assert record.category is FailureCategory.TIMEOUT
        assert record.attempt == 3
        assert row["chain_resumed_at"] is not None

    def test_failed_hand_off_is_resumed_as_unknown(self, repo, queue, watchdog):
        self._dead(queue, error_code="UNEXPECTED", last_error="db hiccup")

        watchdog.sweep()

        assert queue.stages_enqueued() == ["ai_metadata"]
        assert repo.failures[0].category is FailureCategory.UNKNOWN
        assert "db hiccup" in repo.failures[0].message

    def test_resumed_only_once(self, repo, queue, watchdog):
        self._dead(queue)

        watchdog.sweep()
        second = watchdog.sweep()

        assert second.resumed == []
        assert len(queue.enqueued) == 1
        assert len(repo.failures) == 1

    def test_handed_off_and_stage_failures_are_left_alone(self, repo, queue, watchdog):
        self._dead(queue, error_code="GAVE_UP")
        self._dead(queue, error_code="DECODE")
        self._dead(queue, error_code="INVALID_INPUT")

        result = watchdog.sweep()

        assert result.resumed == []
        assert queue.enqueued == []
        assert repo.failures == []

    def test_last_stage_only_records(self, repo, queue, watchdog):
        self._dead(queue, stage="promote", chain=())

        result = watchdog.sweep()

        assert len(result.resumed) == 1
        assert queue.enqueued == []
        assert repo.failures[0].stage == "promote"


class TestCrashRecovery:
    def test_manual_retry_unblocks_waiting_stages(self, repo, storage, queue, dispatcher, recorder, runner, watchdog, image_bytes):
        asset, version = _stuck_asset(repo)
        storage.add(asset.storage_root_path, image_bytes, "image/png")

        watchdog.sweep()
        computed_input, max_attempts = queue.enqueued[0]
        assert computed_input.stage == POPULATE_COMPUTED_METADATA
        computed_job = Job(
            id=queue.jobs[computed_input.compute_idempotency_key()][0],
            input=computed_input,
            attempts=1,
            max_attempts=max_attempts,
            created_at=datetime.now(timezone.utc),
            raw_input=computed_input.to_dict(),
        )

        process_job(computed_job, runner, queue, dispatcher)
        assert len(queue.deferred) == 1

        recorder.retry(asset.id, GENERATE_PREVIEWS, triggered_by="user:1")
        retry_input, _ = queue.enqueued[-1]
        assert retry_input.stage == GENERATE_PREVIEWS
        assert retry_input.chain == []
        outcome = runner.run(asset.id, version.id, GENERATE_PREVIEWS)
        assert outcome.status == COMPLETED

        resumed = runner.run(asset.id, version.id, POPULATE_COMPUTED_METADATA, job_attempt=2)
        assert resumed.status == COMPLETED
        assert repo.stored_version(version.id).metadata["orientation"] == "landscape"
        assert not recorder.has_processing_issue(asset.id)
