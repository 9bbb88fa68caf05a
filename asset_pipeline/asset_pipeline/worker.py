#!/usr/bin/env python
"""
Stage worker for the asset processing pipeline.

Long-running process that claims stage jobs from the DB-backed queue, runs
each through the StageRunner, and dispatches the next stage of the asset's
chain once the current one reaches a terminal outcome.

Usage:
    asset-pipeline-worker [--once] [--limit N] [--poll-interval S] [--concurrency N]

Environment Variables Required:
    DATABASE_URL - PostgreSQL connection string
    S3_BUCKET_NAME, AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY - Object storage
    OPENAI_API_KEY - Vision model for the AI stages (unless AI_ENABLED=false)

Environment Variables Optional:
    WORKER_POLL_INTERVAL - Seconds between poll cycles (default: 5)
    WORKER_BATCH_SIZE - Jobs to claim per cycle (default: 1)
    WORKER_CONCURRENCY - Max concurrent jobs (default: 1)
    WORKER_HEARTBEAT_INTERVAL - Seconds between heartbeats (default: 30)
    WORKER_TIMEOUT_SECONDS - Heartbeat age after which a claimed job is released (default: 300)
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Set

import sentry_sdk

from .config import PipelineSettings, get_db_config, get_pipeline_settings
from .db import AssetRepository
from .job_queue import Job, JobOutput, JobQueue
from .pipeline.base import FAILED, StageRunner
from .pipeline.chain import ChainDispatcher
from .pipeline.failures import FailureRecorder
from .pipeline.stages import build_stages
from .storage_manager import get_storage_manager
from .telemetry import configure_logging, init_sentry
from .thumbnails import FITZ_AVAILABLE, HEIF_AVAILABLE, ThumbnailEngine
from .types import FailureCategory
from .vision import VisionClient

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

POLL_INTERVAL = int(os.getenv("WORKER_POLL_INTERVAL", "5"))
BATCH_SIZE = int(os.getenv("WORKER_BATCH_SIZE", "1"))
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "1"))
HEARTBEAT_INTERVAL = int(os.getenv("WORKER_HEARTBEAT_INTERVAL", "30"))

logger = logging.getLogger("asset_pipeline.worker")


# ---------------------------------------------------------------------------
# Worker State
# ---------------------------------------------------------------------------

@dataclass
class WorkerState:
    """Mutable state for the worker process."""
    running: bool = True
    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_deferred: int = 0
    current_job_id: Optional[uuid.UUID] = None
    started_at: Optional[datetime] = None
    # Track jobs currently being processed (for concurrency)
    active_jobs: Set[uuid.UUID] = field(default_factory=set)
    active_jobs_lock: threading.Lock = field(default_factory=threading.Lock)


# Global state
_state = WorkerState()
_runner: Optional[StageRunner] = None
_dispatcher: Optional[ChainDispatcher] = None
_queue: Optional[JobQueue] = None
_heartbeat_stop_events: dict[uuid.UUID, threading.Event] = {}


# ---------------------------------------------------------------------------
# Signal Handlers
# ---------------------------------------------------------------------------

def _handle_sigterm(signum, frame):
    """Handle SIGTERM gracefully - finish current job if safe."""
    logger.warning("Received SIGTERM - initiating graceful shutdown...")
    _state.running = False

    if _state.current_job_id:
        logger.info(f"Finishing current job {_state.current_job_id} before exit...")
    else:
        logger.info("No job in progress, exiting immediately")
        sys.exit(0)


def _handle_sigint(signum, frame):
    """Handle SIGINT (Ctrl+C) - immediate shutdown."""
    logger.warning("Received SIGINT - shutting down...")
    _state.running = False

    if _queue:
        with _state.active_jobs_lock:
            active = list(_state.active_jobs)
        for job_id in active:
            # Stage handlers are idempotent, so the job can simply run again
            logger.info(f"Marking job {job_id} for retry...")
            try:
                _queue.fail(
                    job_id,
                    "Worker interrupted by SIGINT",
                    error_code="WORKER_INTERRUPTED",
                    permanent=False,
                )
            except Exception as e:
                logger.error(f"Failed to mark job for retry: {e}")

    sys.exit(1)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def create_runner(
    settings: PipelineSettings,
    queue: JobQueue,
) -> tuple[StageRunner, ChainDispatcher]:
    """Wire the stage runner and chain dispatcher from their collaborators."""
    repo = AssetRepository()
    dispatcher = ChainDispatcher(queue, settings)
    recorder = FailureRecorder(repo, dispatcher)
    runner = StageRunner(
        repo,
        get_storage_manager(),
        settings,
        build_stages(),
        recorder,
        vision=VisionClient() if settings.ai_enabled else None,
        engine=ThumbnailEngine(settings),
    )
    return runner, dispatcher


def get_queue() -> JobQueue:
    """Get or create the global job queue instance."""
    global _queue
    if _queue is None:
        _queue = JobQueue()
    return _queue


def get_runner() -> tuple[StageRunner, ChainDispatcher]:
    """Get or create the global runner and dispatcher."""
    global _runner, _dispatcher
    if _runner is None:
        _runner, _dispatcher = create_runner(get_pipeline_settings(), get_queue())
    return _runner, _dispatcher


# ---------------------------------------------------------------------------
# Heartbeat Thread
# ---------------------------------------------------------------------------

def _heartbeat_thread(job_id: uuid.UUID, queue: JobQueue, stop_event: threading.Event):
    """
    Background thread that sends heartbeats for a job.

    Runs until stop_event is set.
    """
    while not stop_event.wait(timeout=HEARTBEAT_INTERVAL):
        try:
            queue.heartbeat(job_id)
        except Exception as e:
            logger.warning(f"Heartbeat failed for job {job_id}: {e}")


def _start_heartbeat(job_id: uuid.UUID, queue: JobQueue) -> threading.Event:
    """Start a heartbeat thread for a job. Returns stop event."""
    stop_event = threading.Event()
    _heartbeat_stop_events[job_id] = stop_event

    thread = threading.Thread(
        target=_heartbeat_thread,
        args=(job_id, queue, stop_event),
        daemon=True,
        name=f"heartbeat-{str(job_id)[:8]}"
    )
    thread.start()
    return stop_event


def _stop_heartbeat(job_id: uuid.UUID):
    """Stop the heartbeat thread for a job."""
    stop_event = _heartbeat_stop_events.pop(job_id, None)
    if stop_event:
        stop_event.set()


# ---------------------------------------------------------------------------
# Job Processing
# ---------------------------------------------------------------------------

def _give_up(job: Job, runner: StageRunner, dispatcher: ChainDispatcher, error: Exception) -> bool:
    """
    Last attempt of a job that kept raising: record it and let the chain move on.

    Returns False if the hand-off failed. The job is then dead-lettered as
    UNEXPECTED and the watchdog's dead-letter sweep resumes the chain later.
    """
    stage = job.input.stage
    try:
        dispatcher.continue_chain(job.input)
        runner.recorder.record(
            job.input.asset_id,
            stage,
            FailureCategory.UNKNOWN,
            f"{stage} raised on its final attempt: {error}",
            job.attempts,
            job.input.version_id,
        )
        logger.error(f"Job {job.id} {stage} gave up after {job.attempts} attempts, chain continues")
        return True
    except Exception as e:
        logger.exception(f"Job {job.id} could not hand off its chain: {e}")
        sentry_sdk.capture_exception(e)
        return False


def process_job(
    job: Job,
    runner: StageRunner,
    queue: JobQueue,
    dispatcher: ChainDispatcher,
) -> bool:
    """
    Run one stage job.

    The successor stage is enqueued before this job is closed: if the worker
    dies in between, the job is released, re-run (stages are idempotent) and
    the duplicate enqueue is absorbed by the idempotency key.

    Args:
        job: Job to process
        runner: StageRunner instance
        queue: Queue instance for status updates
        dispatcher: Chain dispatcher for the successor stage

    Returns:
        True unless the stage failed terminally or the job errored
    """
    with _state.active_jobs_lock:
        _state.active_jobs.add(job.id)
    _state.current_job_id = job.id
    start_time = time.time()
    stage = job.input.stage

    logger.info(
        f"Processing job {job.id} (attempt {job.attempts}/{job.max_attempts}): "
        f"{stage} asset={job.input.asset_id}"
    )

    _start_heartbeat(job.id, queue)

    try:
        outcome = runner.run(
            job.input.asset_id,
            job.input.version_id,
            stage,
            job_attempt=job.attempts,
        )

        if outcome.deferred:
            queue.defer(job.id, outcome.delay_seconds, outcome.reason)
            _state.jobs_deferred += 1
            return True

        next_stage = job.input.chain[0] if job.input.chain else None
        dispatcher.continue_chain(job.input)

        elapsed = time.time() - start_time
        if outcome.status == FAILED:
            if outcome.error is not None:
                sentry_sdk.capture_exception(outcome.error)
            error_code = outcome.category.value.upper() if outcome.category else "STAGE_FAILED"
            queue.fail(
                job.id,
                f"{stage} failed: {outcome.reason}",
                error_code=error_code,
                permanent=True,
            )
            logger.error(f"Job {job.id} {stage} failed terminally ({outcome.reason}), chain continues")
            _state.jobs_failed += 1
            return False

        output = JobOutput(
            outcome=outcome.status,
            reason=outcome.reason,
            attempts=outcome.attempts,
            elapsed_seconds=elapsed,
            next_stage=next_stage,
        )
        queue.complete(job.id, output)
        logger.info(f"Job {job.id} {stage} {outcome.status} in {elapsed:.1f}s")
        _state.jobs_succeeded += 1
        return True

    except ValueError as e:
        # Malformed job input (unknown stage); retrying cannot help
        logger.error(f"Job {job.id} rejected: {e}")
        sentry_sdk.capture_exception(e)
        queue.fail(job.id, str(e), error_code="INVALID_INPUT", permanent=True)
        _state.jobs_failed += 1
        return False

    except Exception as e:
        # Unexpected error - treat as transient to allow retry
        logger.exception(f"Job {job.id} unexpected error: {e}")
        sentry_sdk.capture_exception(e)
        final = job.attempts >= job.max_attempts
        error_code = "UNEXPECTED"
        if final and _give_up(job, runner, dispatcher, e):
            error_code = "GAVE_UP"
        queue.fail(job.id, str(e), error_code=error_code, permanent=final)
        _state.jobs_failed += 1
        return False

    finally:
        _stop_heartbeat(job.id)
        with _state.active_jobs_lock:
            _state.active_jobs.discard(job.id)
        _state.current_job_id = None
        _state.jobs_processed += 1


# ---------------------------------------------------------------------------
# Worker Loop
# ---------------------------------------------------------------------------

def run_worker(
    once: bool = False,
    batch_size: int = BATCH_SIZE,
    poll_interval: int = POLL_INTERVAL,
    concurrency: int = WORKER_CONCURRENCY,
) -> int:
    """
    Run the worker loop.

    Args:
        once: If True, process one batch and exit
        batch_size: Number of jobs to claim per cycle
        poll_interval: Seconds between poll cycles
        concurrency: Max concurrent jobs

    Returns:
        Exit code (0 for success, 1 for error)
    """
    init_sentry("worker")

    signal.signal(signal.SIGTERM, _handle_sigterm)
    signal.signal(signal.SIGINT, _handle_sigint)

    _state.started_at = datetime.now()
    _state.running = True

    logger.info("=" * 60)
    logger.info("Asset Pipeline Worker Starting")
    logger.info("=" * 60)

    queue = get_queue()
    try:
        queue.verify_schema()
    except RuntimeError as e:
        logger.error(f"Schema verification failed: {e}")
        return 1

    try:
        settings = get_pipeline_settings()
        cfg = get_db_config()
        logger.info(f"Database: {cfg.url[:30]}...")
        logger.info(f"Worker ID: {queue.worker_id}")
        logger.info(f"Batch size: {batch_size}")
        logger.info(f"Concurrency: {concurrency}")
        logger.info(f"Poll interval: {poll_interval}s")
        logger.info(f"Heartbeat interval: {HEARTBEAT_INTERVAL}s")
        logger.info(
            f"Timeouts: worker {settings.worker_timeout_seconds:.0f}s, "
            f"stage {settings.stage_timeout_seconds:.0f}s, "
            f"watchdog {settings.watchdog_threshold_seconds:.0f}s"
        )
        logger.info(f"Decoders: heif={HEIF_AVAILABLE} pdf={FITZ_AVAILABLE}")
        logger.info(f"AI stages: {'enabled' if settings.ai_enabled else 'disabled'}")

        sentry_sdk.set_user({"id": str(queue.worker_id)})
        sentry_sdk.set_tag("worker.batch_size", batch_size)
        sentry_sdk.set_tag("worker.concurrency", concurrency)

        runner, dispatcher = get_runner()
    except Exception as e:
        logger.error(f"Configuration error: {e}")
        sentry_sdk.capture_exception(e)
        return 1

    logger.info(f"Runner initialized with {len(runner.stages)} stages")
    stale_threshold = int(settings.worker_timeout_seconds)

    released = queue.release_stale_jobs(stale_threshold)
    if released:
        logger.info(f"Released {released} stale jobs from crashed workers")

    logger.info("Worker ready - starting poll loop")
    logger.info("-" * 60)

    idle_cycles = 0
    executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="job-worker")
    futures: dict[Future, Job] = {}

    try:
        while _state.running:
            try:
                released = queue.release_stale_jobs(stale_threshold)
                if released:
                    logger.info(f"Released {released} stale jobs")

                done_futures = [f for f in futures if f.done()]
                for future in done_futures:
                    job = futures.pop(future)
                    try:
                        future.result()
                    except Exception as e:
                        logger.exception(f"Job {job.id} failed in thread: {e}")

                available_slots = concurrency - len(futures)

                if available_slots > 0:
                    claim_count = min(batch_size, available_slots)
                    jobs = queue.claim_jobs(limit=claim_count)

                    if jobs:
                        idle_cycles = 0
                        for job in jobs:
                            if not _state.running:
                                break
                            future = executor.submit(process_job, job, runner, queue, dispatcher)
                            futures[future] = job
                    else:
                        idle_cycles += 1
                        if idle_cycles == 1:
                            logger.debug("No jobs available, waiting...")

                        if once and not futures:
                            logger.info("No jobs to process")
                            break
                else:
                    idle_cycles = 0

                if once and futures:
                    for future in list(futures):
                        future.result()
                    futures.clear()
                    break

                # Exponential backoff when idle (capped at poll_interval * 4)
                if idle_cycles > 0:
                    sleep_time = min(poll_interval * (1 + idle_cycles * 0.5), poll_interval * 4)
                else:
                    sleep_time = poll_interval
                time.sleep(sleep_time)

            except KeyboardInterrupt:
                logger.info("Interrupted by user")
                break
            except Exception as e:
                logger.exception(f"Error in worker loop: {e}")
                sentry_sdk.capture_exception(e)
                time.sleep(poll_interval)

        if futures:
            logger.info(f"Waiting for {len(futures)} jobs to complete...")
            for future, job in list(futures.items()):
                try:
                    future.result(timeout=30)  # Give 30s grace period
                except FuturesTimeoutError:
                    logger.warning(f"Job {job.id} did not complete in grace period")
                except Exception as e:
                    logger.error(f"Job {job.id} failed during shutdown: {e}")

    finally:
        executor.shutdown(wait=False)

    logger.info("-" * 60)
    logger.info("Worker shutting down")
    logger.info(f"Jobs processed: {_state.jobs_processed}")
    logger.info(f"Jobs succeeded: {_state.jobs_succeeded}")
    logger.info(f"Jobs deferred: {_state.jobs_deferred}")
    logger.info(f"Jobs failed: {_state.jobs_failed}")
    logger.info("=" * 60)

    return 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    """CLI entry point."""
    configure_logging()
    parser = argparse.ArgumentParser(
        description="Asset Pipeline Stage Worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process one batch of jobs and exit",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=BATCH_SIZE,
        help=f"Number of jobs to claim per cycle (default: {BATCH_SIZE})",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=POLL_INTERVAL,
        help=f"Seconds between poll cycles (default: {POLL_INTERVAL})",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=WORKER_CONCURRENCY,
        help=f"Max concurrent jobs (default: {WORKER_CONCURRENCY})",
    )
    parser.add_argument(
        "--release-stale",
        action="store_true",
        help="Release stale jobs and exit (maintenance mode)",
    )
    parser.add_argument(
        "--show-running",
        action="store_true",
        help="Show currently running jobs and exit",
    )

    args = parser.parse_args()

    if args.release_stale or args.show_running:
        queue = get_queue()
        try:
            queue.verify_schema()
        except RuntimeError as e:
            logger.error(f"Schema verification failed: {e}")
            sys.exit(1)

    if args.release_stale:
        settings = get_pipeline_settings()
        released = queue.release_stale_jobs(int(settings.worker_timeout_seconds))
        logger.info(f"Released {released} stale jobs")
        sys.exit(0)

    if args.show_running:
        running = queue.get_running_jobs()
        if running:
            logger.info(f"Running jobs: {len(running)}")
            for job in running:
                logger.info(
                    f"  {job['id']}: stage={job['stage']} "
                    f"progress={(job['progress'] or 0):.0%} "
                    f"running={job['running_seconds']}s "
                    f"heartbeat_age={job['heartbeat_age_seconds']}s"
                )
        else:
            logger.info("No jobs currently running")
        sys.exit(0)

    sys.exit(run_worker(
        once=args.once,
        batch_size=args.limit,
        poll_interval=args.poll_interval,
        concurrency=args.concurrency,
    ))


if __name__ == "__main__":
    main()
