"""
Tests for the DB-backed stage job queue.

These tests use mocked database connections to verify:
1. Idempotency key computation per (asset, version, stage, run)
2. Job enqueue logic
3. Atomic job claiming
4. Retry/fail/defer behavior
"""

from contextlib import contextmanager
from datetime import datetime
import uuid

import pytest

pytest.importorskip("psycopg2")

from asset_pipeline.job_queue import (
    Job,
    JobInput,
    JobOutput,
    JobQueue,
    _generate_worker_id,
)


# ---------------------------------------------------------------------------
# Test JobInput
# ---------------------------------------------------------------------------

class TestJobInput:
    def test_idempotency_key_is_stable(self):
        """Same asset, version, stage and run produce the same key."""
        input1 = JobInput(asset_id="a1", version_id="v1", stage="generate_previews")
        input2 = JobInput(asset_id="a1", version_id="v1", stage="generate_previews", chain=["finalize"])

        key1 = input1.compute_idempotency_key()
        assert key1 == input2.compute_idempotency_key(), "Chain tail must not change the key"
        assert len(key1) == 32, "Key should be 32 hex characters"

    def test_idempotency_key_differs_per_stage_and_run(self):
        base = JobInput(asset_id="a1", version_id="v1", stage="generate_previews")
        other_stage = JobInput(asset_id="a1", version_id="v1", stage="finalize")
        retry = JobInput(asset_id="a1", version_id="v1", stage="generate_previews", run="retry-abc")

        assert base.compute_idempotency_key() != other_stage.compute_idempotency_key()
        assert base.compute_idempotency_key() != retry.compute_idempotency_key()

    def test_idempotency_key_requires_identifiers(self):
        with pytest.raises(ValueError, match="must have"):
            JobInput(asset_id="a1", version_id="", stage="finalize").compute_idempotency_key()

    def test_round_trip_through_dict(self):
        original = JobInput(
            asset_id="a1",
            version_id="v1",
            stage="ai_tagging",
            chain=["ai_metadata", "finalize"],
            run="chain",
        )
        d = original.to_dict()

        assert d["chain"] == ["ai_metadata", "finalize"]
        assert "metadata" not in d  # Omitted when None
        assert JobInput.from_dict(d) == original


class TestJobOutput:
    def test_to_dict(self):
        output = JobOutput(outcome="skipped", reason="vector_no_preview", attempts=1, next_stage="finalize")
        d = output.to_dict()

        assert d["outcome"] == "skipped"
        assert d["reason"] == "vector_no_preview"
        assert d["next_stage"] == "finalize"


class TestJob:
    def test_from_row(self):
        row = {
            "job_id": uuid.uuid4(),
            "job_input": {"asset_id": "a1", "version_id": "v1", "stage": "finalize", "chain": ["promote"]},
            "job_attempts": 2,
            "job_max_attempts": 3,
            "job_created_at": datetime.now(),
        }

        job = Job.from_row(row)

        assert job.id == row["job_id"]
        assert job.input.stage == "finalize"
        assert job.input.chain == ["promote"]
        assert job.attempts == 2
        assert job.max_attempts == 3


class TestWorkerIdGeneration:
    def test_generate_worker_id_format(self):
        parts = _generate_worker_id().split("-")
        assert len(parts) >= 3, "Should have hostname-pid-random format"

    def test_generate_worker_id_unique(self):
        ids = [_generate_worker_id() for _ in range(10)]
        assert len(set(ids)) == 10


# ---------------------------------------------------------------------------
# Mocked Database Tests
# ---------------------------------------------------------------------------

class FakeCursor:
    """Mock cursor that returns predefined results."""

    def __init__(self, results=None):
        self.results = results or []
        self.query = None
        self.params = None

    def execute(self, query, params=None):
        self.query = query
        self.params = params

    def fetchone(self):
        return self.results[0] if self.results else None

    def fetchall(self):
        return self.results

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False


class FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor

    def cursor(self):
        return self._cursor

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False


@pytest.fixture
def fake_db(monkeypatch):
    def install(results=None):
        cursor = FakeCursor(results)

        @contextmanager
        def fake_get_connection():
            yield FakeConnection(cursor)

        monkeypatch.setattr("asset_pipeline.job_queue.get_connection", fake_get_connection)
        return cursor

    return install


class TestJobQueue:
    def test_enqueue_new_job(self, fake_db):
        job_id = uuid.uuid4()
        cursor = fake_db([{"job_id": job_id, "status": "QUEUED", "already_existed": False}])

        queue = JobQueue(worker_id="test-worker")
        result = queue.enqueue(
            JobInput(asset_id="a1", version_id="v1", stage="ai_tagging"),
            max_attempts=30,
            delay_seconds=5,
        )

        assert result.job_id == job_id
        assert result.already_existed is False
        assert "enqueue_job" in cursor.query
        assert cursor.params[3] == 30
        assert cursor.params[4] == 5

    def test_enqueue_duplicate_returns_existing(self, fake_db):
        job_id = uuid.uuid4()
        fake_db([{"job_id": job_id, "status": "RUNNING", "already_existed": True}])

        queue = JobQueue(worker_id="test-worker")
        result = queue.enqueue(JobInput(asset_id="a1", version_id="v1", stage="finalize"))

        assert result.job_id == job_id
        assert result.already_existed is True

    def test_claim_jobs_returns_claimed(self, fake_db):
        job_id = uuid.uuid4()
        cursor = fake_db([{
            "job_id": job_id,
            "job_input": {"asset_id": "a1", "version_id": "v1", "stage": "extract_metadata"},
            "job_attempts": 1,
            "job_max_attempts": 3,
            "job_created_at": datetime.now(),
        }])

        queue = JobQueue(worker_id="test-worker")
        jobs = queue.claim_jobs(limit=5)

        assert len(jobs) == 1
        assert jobs[0].id == job_id
        assert "claim_jobs" in cursor.query
        assert cursor.params == (5, "test-worker")

    def test_claim_jobs_empty_queue(self, fake_db):
        fake_db([])
        assert JobQueue(worker_id="test-worker").claim_jobs(limit=5) == []

    def test_fail_transient(self, fake_db):
        cursor = fake_db()
        job_id = uuid.uuid4()

        JobQueue(worker_id="test-worker").fail(job_id, "Network timeout", error_code="TIMEOUT")

        assert "fail_job" in cursor.query
        assert cursor.params[0] == job_id
        assert cursor.params[3] is False

    def test_fail_truncates_long_errors(self, fake_db):
        cursor = fake_db()
        JobQueue(worker_id="test-worker").fail(uuid.uuid4(), "x" * 5000, permanent=True)

        assert len(cursor.params[1]) == 2000
        assert cursor.params[3] is True

    def test_defer_calls_function(self, fake_db):
        cursor = fake_db()
        job_id = uuid.uuid4()

        JobQueue(worker_id="test-worker").defer(job_id, 60, reason="waiting_on_previews:PENDING")

        assert "defer_job" in cursor.query
        assert cursor.params == (job_id, 60, "waiting_on_previews:PENDING")

    def test_heartbeat_calls_function(self, fake_db):
        cursor = fake_db()
        job_id = uuid.uuid4()

        JobQueue(worker_id="test-worker").heartbeat(job_id, progress=0.5)

        assert "update_job_heartbeat" in cursor.query
        assert cursor.params == (job_id, 0.5)

    def test_release_stale_jobs_returns_count(self, fake_db):
        fake_db([{"release_stale_jobs": 2}])
        assert JobQueue(worker_id="test-worker").release_stale_jobs(300) == 2

    def test_verify_schema_missing_columns(self, fake_db):
        fake_db([{"column_name": "id"}])
        with pytest.raises(RuntimeError, match="missing required columns"):
            JobQueue(worker_id="test-worker").verify_schema()

    def test_dead_letters_unresumed_filter(self, fake_db):
        from asset_pipeline.job_queue import RESUMABLE_ERROR_CODES

        cursor = fake_db([{"id": uuid.uuid4(), "error_code": "STALE"}])

        rows = JobQueue(worker_id="test-worker").get_dead_letter_jobs(limit=10, unresumed_only=True)

        assert len(rows) == 1
        assert "chain_resumed_at IS NULL" in cursor.query
        assert cursor.params == (list(RESUMABLE_ERROR_CODES), 10)

    def test_dead_letters_unfiltered(self, fake_db):
        cursor = fake_db([])
        JobQueue(worker_id="test-worker").get_dead_letter_jobs(limit=5)

        assert "chain_resumed_at" not in cursor.query
        assert cursor.params == (5,)

    def test_mark_chain_resumed(self, fake_db):
        cursor = fake_db()
        job_id = uuid.uuid4()

        JobQueue(worker_id="test-worker").mark_chain_resumed(job_id)

        assert "chain_resumed_at = now()" in cursor.query
        assert cursor.params == (job_id,)

    def test_cancel_reports_result(self, fake_db):
        fake_db([{"cancel_job": False}])
        assert JobQueue(worker_id="test-worker").cancel(uuid.uuid4()) is False

    def test_list_jobs_filters(self, fake_db):
        cursor = fake_db([])
        JobQueue(worker_id="test-worker").list_jobs(status="failed", asset_id="a1", limit=20)

        assert "status = %s AND asset_id = %s" in cursor.query
        assert cursor.params == ["FAILED", "a1", 20, 0]

    def test_get_stats_totals(self, fake_db):
        fake_db([{"status": "QUEUED", "count": 2}, {"status": "FAILED", "count": 1}])

        stats = JobQueue(worker_id="test-worker").get_stats()

        assert stats == {"by_status": {"QUEUED": 2, "FAILED": 1}, "total": 3}
