#!/usr/bin/env python
"""
Timeout watchdog.

Periodically reclaims previews left in PROCESSING by a crashed or hung worker.
Each reclaimed asset is moved to FAILED (reason ``timeout``) together with its
failure record, and the rest of its chain is dispatched so it still reaches the
finalizer. The move is a compare-and-set on PROCESSING, so a worker that
finishes at the same moment either wins cleanly or loses cleanly.

Stage jobs dead-lettered without handing on their chain (stale heartbeat at
the attempt ceiling, failed final hand-off) are resumed the same way.

Usage:
    asset-pipeline-watchdog [--once] [--threshold S] [--interval S]
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import List, Optional

import sentry_sdk

from .config import PipelineSettings, get_pipeline_settings
from .db import AssetRepository
from .job_queue import JobInput, get_queue
from .pipeline.chain import CHAIN_RUN, GENERATE_PREVIEWS, ChainDispatcher, stages_after
from .pipeline.context import utc_now_iso
from .pipeline.failures import FailureRecorder, clean_message
from .telemetry import configure_logging, init_sentry
from .types import Asset, FailureCategory, ReasonCode

logger = logging.getLogger("asset_pipeline.watchdog")

SWEEP_LIMIT = 100


@dataclass
class SweepResult:
    reclaimed: List[str] = field(default_factory=list)
    dispatched: List[str] = field(default_factory=list)
    resumed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class TimeoutWatchdog:
    """
    Usage:
        watchdog = TimeoutWatchdog(repo, recorder, dispatcher, settings)
        result = watchdog.sweep()
    """

    def __init__(
        self,
        repo,
        recorder: FailureRecorder,
        dispatcher: ChainDispatcher,
        settings: PipelineSettings,
        queue=None,
    ):
        self.repo = repo
        self.recorder = recorder
        self.dispatcher = dispatcher
        self.settings = settings
        self.queue = queue if queue is not None else dispatcher.queue
        self._running = True

    def sweep(self, threshold_seconds: Optional[float] = None, limit: int = SWEEP_LIMIT) -> SweepResult:
        """Reclaim stuck previews, then resume chains of dead-lettered jobs."""
        threshold = threshold_seconds or self.settings.watchdog_threshold_seconds
        result = SweepResult()
        message = clean_message(
            f"Preview generation exceeded {threshold:.0f}s and was reclaimed by the watchdog"
        )
        reclaimed = self.repo.fail_stuck_thumbnails(
            threshold, error=ReasonCode.TIMEOUT, stage=GENERATE_PREVIEWS, message=message, limit=limit
        )
        for asset in reclaimed:
            result.reclaimed.append(asset.id)
            try:
                if self._recover(asset, message):
                    result.dispatched.append(asset.id)
            except Exception as e:
                # The asset is already terminal; one bad row must not stop the sweep.
                logger.exception("[%s] Recovery after timeout failed: %s", asset.id, e)
                sentry_sdk.capture_exception(e)
                result.errors.append(asset.id)

        if reclaimed:
            logger.warning(
                "Reclaimed %d stuck previews (threshold %.0fs), %d chains resumed",
                len(result.reclaimed), threshold, len(result.dispatched),
            )

        self.resume_dead_letters(result, limit)
        return result

    def _recover(self, asset: Asset, message: str) -> bool:
        version_id = asset.current_version_id
        version = self.repo.get_version(version_id) if version_id else self.repo.get_current_version(asset.id)
        if version is None:
            logger.error("[%s] Reclaimed preview but the asset has no current version", asset.id)
            return False

        note = {
            "thumbnail_generation_failed": True,
            "thumbnail_generation_failed_at": utc_now_iso(),
            "thumbnail_generation_error": ReasonCode.TIMEOUT,
        }
        if version.is_finalized:
            self.repo.patch_asset_metadata(asset.id, note)
        else:
            self.repo.patch_version_metadata(version.id, note)
        self.repo.patch_asset_metadata(
            asset.id,
            {
                f"_{GENERATE_PREVIEWS}_failed": True,
                f"_{GENERATE_PREVIEWS}_error": message,
                f"_{GENERATE_PREVIEWS}_failed_at": utc_now_iso(),
            },
        )

        self.dispatcher.dispatch_chain(
            asset.id, version.id, stages_after(GENERATE_PREVIEWS), run=CHAIN_RUN
        )
        logger.info("[%s] Preview timed out; chain resumed after %s", asset.id, GENERATE_PREVIEWS)
        return True

    # ------------------------------------------------------------------
    # Dead-lettered jobs
    # ------------------------------------------------------------------

    def resume_dead_letters(self, result: SweepResult, limit: int = SWEEP_LIMIT) -> None:
        """
        Hand on the chain of jobs that died without doing it themselves.

        Covers jobs released at their ceiling after a stale heartbeat and jobs
        whose final-attempt hand-off failed. Successor enqueues are idempotent,
        so a job resumed twice (crash before the stamp) dispatches nothing new.
        """
        for row in self.queue.get_dead_letter_jobs(limit=limit, unresumed_only=True):
            job_id = row["id"]
            try:
                job_input = JobInput.from_dict(row.get("input") or {})
                if job_input.asset_id and job_input.version_id and job_input.stage:
                    self.dispatcher.continue_chain(job_input)
                    category = FailureCategory.TIMEOUT if row.get("error_code") == "STALE" else FailureCategory.UNKNOWN
                    self.recorder.record(
                        job_input.asset_id,
                        job_input.stage,
                        category,
                        f"Job dead-lettered ({row.get('error_code')}): {row.get('last_error') or ''}",
                        row.get("attempts") or 1,
                        job_input.version_id,
                    )
                self.queue.mark_chain_resumed(job_id)
                result.resumed.append(str(job_id))
            except Exception as e:
                logger.exception("Could not resume chain of dead-lettered job %s: %s", job_id, e)
                sentry_sdk.capture_exception(e)
                result.errors.append(str(job_id))

        if result.resumed:
            logger.warning("Resumed chains of %d dead-lettered jobs", len(result.resumed))

    def stop(self) -> None:
        self._running = False

    def run_forever(
        self,
        interval_seconds: Optional[float] = None,
        threshold_seconds: Optional[float] = None,
    ) -> None:
        interval = interval_seconds or self.settings.watchdog_interval_seconds
        logger.info(
            "Watchdog running every %.0fs (threshold %.0fs)",
            interval, threshold_seconds or self.settings.watchdog_threshold_seconds,
        )
        while self._running:
            try:
                self.sweep(threshold_seconds)
            except Exception as e:
                logger.exception("Watchdog sweep failed: %s", e)
                sentry_sdk.capture_exception(e)
            deadline = time.time() + interval
            while self._running and time.time() < deadline:
                time.sleep(min(1.0, interval))


def create_watchdog(settings: PipelineSettings) -> TimeoutWatchdog:
    repo = AssetRepository()
    dispatcher = ChainDispatcher(get_queue(), settings)
    return TimeoutWatchdog(repo, FailureRecorder(repo, dispatcher), dispatcher, settings)


def main():
    """CLI entry point."""
    configure_logging()
    parser = argparse.ArgumentParser(
        description="Asset Pipeline Timeout Watchdog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--threshold", type=float, default=None, help="Override the reclaim threshold (seconds)")
    parser.add_argument("--interval", type=float, default=None, help="Override the sweep interval (seconds)")
    args = parser.parse_args()

    init_sentry("watchdog")
    settings = get_pipeline_settings()
    watchdog = create_watchdog(settings)

    if args.once:
        result = watchdog.sweep(args.threshold)
        logger.info(
            "Sweep done: %d reclaimed, %d chains resumed, %d dead letters resumed, %d errors",
            len(result.reclaimed), len(result.dispatched), len(result.resumed), len(result.errors),
        )
        sys.exit(1 if result.errors else 0)

    def _stop(signum, frame):
        logger.warning("Received signal %s - stopping watchdog...", signum)
        watchdog.stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    watchdog.run_forever(args.interval, args.threshold)
    sys.exit(0)


if __name__ == "__main__":
    main()
