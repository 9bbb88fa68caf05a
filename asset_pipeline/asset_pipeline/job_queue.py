"""
DB-backed stage queue for the asset pipeline.

Every pipeline stage for an asset is one job row. Claiming is atomic with
SKIP LOCKED so any number of workers can drain the queue. Uses PostgreSQL
functions defined in schema.sql.
"""

from __future__ import annotations

import hashlib
import logging
import os
import socket
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from .config import get_db_config

logger = logging.getLogger(__name__)

# Dead-letter codes whose job never dispatched the rest of its chain
RESUMABLE_ERROR_CODES = ("STALE", "UNEXPECTED", "WORKER_INTERRUPTED")


class JobStatus(str, Enum):
    """Job state machine states."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RETRY = "RETRY"


@dataclass
class JobInput:
    """
    Job input payload: one stage for one asset version.

    `chain` lists the stages to dispatch, in order, once this one reaches a
    terminal outcome. `run` distinguishes the original chain ("chain") from
    manual retries so a retry is never absorbed by the idempotency key of the
    run it repeats.
    """
    asset_id: str
    version_id: str
    stage: str
    chain: list[str] = field(default_factory=list)
    run: str = "chain"
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        d: dict[str, Any] = {
            "asset_id": self.asset_id,
            "version_id": self.version_id,
            "stage": self.stage,
            "chain": list(self.chain),
            "run": self.run,
        }
        if self.metadata:
            d["metadata"] = self.metadata
        return d

    def compute_idempotency_key(self) -> str:
        """Compute stable hash for deduplication."""
        if not (self.asset_id and self.version_id and self.stage):
            raise ValueError("JobInput must have asset_id, version_id and stage")
        canonical = f"{self.asset_id}:{self.version_id}:{self.stage}:{self.run}"
        return hashlib.sha256(canonical.encode()).hexdigest()[:32]

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "JobInput":
        return cls(
            asset_id=str(raw.get("asset_id") or ""),
            version_id=str(raw.get("version_id") or ""),
            stage=raw.get("stage") or "",
            chain=list(raw.get("chain") or []),
            run=raw.get("run") or "chain",
            metadata=raw.get("metadata"),
        )


@dataclass
class JobOutput:
    """Job output payload."""
    outcome: Optional[str] = None
    reason: Optional[str] = None
    attempts: int = 0
    elapsed_seconds: Optional[float] = None
    next_stage: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "outcome": self.outcome,
            "reason": self.reason,
            "attempts": self.attempts,
            "elapsed_seconds": self.elapsed_seconds,
            "next_stage": self.next_stage,
        }


@dataclass
class Job:
    """Represents a claimed job ready for processing."""
    id: uuid.UUID
    input: JobInput
    attempts: int
    max_attempts: int
    created_at: datetime
    raw_input: dict[str, Any]  # Original JSON for passthrough

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Job":
        """Create Job from database row."""
        raw_input = row["job_input"]
        return cls(
            id=row["job_id"],
            input=JobInput.from_dict(raw_input),
            attempts=row["job_attempts"],
            max_attempts=row["job_max_attempts"],
            created_at=row["job_created_at"],
            raw_input=raw_input,
        )


@dataclass
class EnqueueResult:
    """Result of enqueue operation."""
    job_id: uuid.UUID
    status: str
    already_existed: bool


def _generate_worker_id() -> str:
    """Generate unique worker instance ID."""
    hostname = socket.gethostname()[:20]
    pid = os.getpid()
    rand = uuid.uuid4().hex[:8]
    return f"{hostname}-{pid}-{rand}"


@contextmanager
def get_connection():
    """Yield a psycopg2 connection for job queue operations."""
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


class JobQueue:
    """
    DB-backed stage queue with atomic claiming.

    Usage:
        queue = JobQueue()

        queue.enqueue(JobInput(asset_id=a, version_id=v, stage="extract_metadata",
                               chain=["generate_previews", ...]))

        for job in queue.claim_jobs(limit=5):
            outcome = runner.run(job.input.asset_id, job.input.version_id, job.input.stage)
            if outcome.deferred:
                queue.defer(job.id, outcome.delay_seconds)
            else:
                queue.complete(job.id, JobOutput(outcome=outcome.status))
    """

    def __init__(self, worker_id: Optional[str] = None):
        """Initialize job queue with optional worker ID."""
        self.worker_id = worker_id or _generate_worker_id()
        logger.info(f"JobQueue initialized with worker_id={self.worker_id}")

    def verify_schema(self) -> bool:
        """
        Verify that the pipeline_jobs table exists with required columns.
        Returns True if schema is valid, raises exception otherwise.
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT column_name
                    FROM information_schema.columns
                    WHERE table_name = 'pipeline_jobs'
                """)
                columns = {row["column_name"] for row in cur.fetchall()}

        required = {
            "id", "status", "priority", "attempts", "max_attempts",
            "locked_at", "locked_by", "run_after", "last_error",
            "input", "output", "idempotency_key", "asset_id", "stage", "chain_resumed_at",
        }
        missing = required - columns

        if missing:
            raise RuntimeError(
                f"pipeline_jobs table missing required columns: {missing}. "
                "Apply the schema: asset-pipeline-apply-schema"
            )

        logger.info("Job queue schema verified")
        return True

    def enqueue(
        self,
        job_input: JobInput,
        priority: int = 0,
        max_attempts: int = 3,
        delay_seconds: int = 0,
    ) -> EnqueueResult:
        """
        Enqueue a stage job (idempotent - returns existing job if duplicate).

        Args:
            job_input: Job input payload
            priority: Higher = more urgent (default 0)
            max_attempts: Max claims before the job is dead-lettered
            delay_seconds: Earliest start, relative to now

        Returns:
            EnqueueResult with job_id, status, and whether it already existed
        """
        idempotency_key = job_input.compute_idempotency_key()

        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM enqueue_job(%s::jsonb, %s, %s, %s, %s)",
                    (Json(job_input.to_dict()), idempotency_key, priority, max_attempts, delay_seconds)
                )
                row = cur.fetchone()

        result = EnqueueResult(
            job_id=row["job_id"],
            status=row["status"],
            already_existed=row["already_existed"],
        )

        if result.already_existed:
            logger.info(
                f"Job already exists: {result.job_id} "
                f"({job_input.stage} asset={job_input.asset_id} status={result.status})"
            )
        else:
            logger.info(f"Job enqueued: {result.job_id} ({job_input.stage} asset={job_input.asset_id})")

        return result

    def claim_jobs(self, limit: int = 1) -> list[Job]:
        """
        Atomically claim jobs for processing.

        Uses FOR UPDATE SKIP LOCKED to prevent double-claiming. Jobs whose
        run_after lies in the future are not claimable.
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM claim_jobs(%s, %s)",
                    (limit, self.worker_id)
                )
                rows = cur.fetchall()

        jobs = [Job.from_row(row) for row in rows]
        if jobs:
            logger.info(f"Claimed {len(jobs)} jobs: {[str(j.id)[:8] for j in jobs]}")
        return jobs

    def complete(self, job_id: uuid.UUID, output: Optional[JobOutput] = None) -> None:
        """Mark job as successfully completed."""
        output_dict = output.to_dict() if output else {}

        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT complete_job(%s, %s::jsonb)",
                    (job_id, Json(output_dict))
                )

        logger.info(f"Job completed: {job_id}")

    def fail(
        self,
        job_id: uuid.UUID,
        error: str,
        error_code: Optional[str] = None,
        permanent: bool = False,
    ) -> None:
        """
        Mark job as failed or schedule for retry.

        Args:
            job_id: Job UUID
            error: Error message
            error_code: Optional structured error code
            permanent: If True, don't retry
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT fail_job(%s, %s, %s, %s)",
                    (job_id, error[:2000], error_code, permanent)  # Truncate long errors
                )

        action = "permanently failed" if permanent else "scheduled for retry"
        logger.warning(f"Job {action}: {job_id} - {error[:100]}")

    def defer(self, job_id: uuid.UUID, delay_seconds: int, reason: Optional[str] = None) -> None:
        """
        Put a claimed job back on the queue with a fixed delay.

        Used by gated stages whose dependency is not ready yet. The attempt
        consumed by the claim is kept, so deferrals count against max_attempts.
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT defer_job(%s, %s, %s)",
                    (job_id, delay_seconds, (reason or "")[:500] or None)
                )

        logger.debug(f"Job deferred {delay_seconds}s: {job_id} ({reason})")

    def cancel(self, job_id: uuid.UUID) -> bool:
        """Cancel a queued job. Returns False if not in cancellable state."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT cancel_job(%s)", (job_id,))
                result = cur.fetchone()

        cancelled = result["cancel_job"] if result else False
        if cancelled:
            logger.info(f"Job cancelled: {job_id}")
        else:
            logger.warning(f"Job not cancellable: {job_id}")
        return cancelled

    def release_stale_jobs(self, stale_threshold_seconds: int = 300) -> int:
        """
        Release jobs stuck in RUNNING state (crashed workers).

        Jobs whose heartbeat is older than the threshold go back to QUEUED,
        or to FAILED once they have used up max_attempts.

        Returns:
            Number of jobs released
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT release_stale_jobs(%s)",
                    (stale_threshold_seconds,)
                )
                result = cur.fetchone()

        released = result["release_stale_jobs"] if result else 0
        if released:
            logger.warning(f"Released {released} stale jobs")
        return released

    def get_job(self, job_id: uuid.UUID) -> Optional[dict[str, Any]]:
        """Get full job details by ID."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM pipeline_jobs WHERE id = %s",
                    (job_id,)
                )
                return cur.fetchone()

    def list_jobs(
        self,
        status: Optional[str] = None,
        asset_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List jobs with optional status / asset filters."""
        conditions = []
        params: list[Any] = []
        if status:
            conditions.append("status = %s")
            params.append(status.upper())
        if asset_id:
            conditions.append("asset_id = %s")
            params.append(asset_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])

        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT id, created_at, updated_at, status, priority, stage, asset_id,
                           attempts, max_attempts, run_after, last_error, error_code,
                           input, output
                    FROM pipeline_jobs
                    {where}
                    ORDER BY created_at DESC
                    LIMIT %s OFFSET %s
                    """,
                    params,
                )
                return cur.fetchall()

    def get_stats(self) -> dict[str, Any]:
        """Get job queue statistics."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM job_queue_stats")
                rows = cur.fetchall()

        return {
            "by_status": {row["status"]: row["count"] for row in rows},
            "total": sum(row["count"] for row in rows),
        }

    def get_dead_letter_jobs(self, limit: int = 50, unresumed_only: bool = False) -> list[dict[str, Any]]:
        """
        Get failed jobs that exceeded max attempts.

        With `unresumed_only`, only jobs that died without handing off their
        chain (stale heartbeat, interruption or an unexpected error) and have not been
        resumed yet.
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                if unresumed_only:
                    cur.execute(
                        "SELECT * FROM dead_letter_jobs "
                        "WHERE chain_resumed_at IS NULL AND error_code = ANY(%s) LIMIT %s",
                        (list(RESUMABLE_ERROR_CODES), limit)
                    )
                else:
                    cur.execute("SELECT * FROM dead_letter_jobs LIMIT %s", (limit,))
                return cur.fetchall()

    def mark_chain_resumed(self, job_id: uuid.UUID) -> None:
        """Stamp a dead-lettered job once its chain has been handed on."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE pipeline_jobs SET chain_resumed_at = now() WHERE id = %s",
                    (job_id,)
                )

    def heartbeat(self, job_id: uuid.UUID, progress: Optional[float] = None) -> None:
        """
        Update job heartbeat to indicate worker is still alive.

        Called periodically during processing to prevent the job from being
        released as stale.
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT update_job_heartbeat(%s, %s)",
                    (job_id, progress)
                )

    def get_running_jobs(self) -> list[dict[str, Any]]:
        """Get currently running jobs with timing info (running_jobs_monitor view)."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM running_jobs_monitor")
                return cur.fetchall()


# Convenience functions for simple usage

_default_queue: Optional[JobQueue] = None


def get_queue() -> JobQueue:
    """Get or create default JobQueue instance."""
    global _default_queue
    if _default_queue is None:
        _default_queue = JobQueue()
    return _default_queue
