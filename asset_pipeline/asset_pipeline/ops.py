#!/usr/bin/env python
"""
Operational tooling for the asset pipeline.

Reads and writes the same asset, version and failure records as the chain,
but runs outside it.

Usage:
    asset-pipeline-ops stuck [--older-than S]
    asset-pipeline-ops repair-stuck [--older-than S] [--dry-run] [--yes]
    asset-pipeline-ops rerun-skipped --reason missing_capability [--dry-run] [--yes]
    asset-pipeline-ops recompute dominant_colors [--limit N] [--yes]
    asset-pipeline-ops failures [--asset ID]
    asset-pipeline-ops resolve RECORD_ID
    asset-pipeline-ops retry ASSET_ID STAGE
    asset-pipeline-ops ingest TENANT_ID ASSET_ID VERSION_ID PATH [--mime M]
    asset-pipeline-ops jobs [--status S] [--asset ID]
    asset-pipeline-ops job JOB_ID
    asset-pipeline-ops dead-letters [--unresumed]
    asset-pipeline-ops cancel JOB_ID
    asset-pipeline-ops visible TENANT_ID
"""

from __future__ import annotations

import argparse
import logging
import sys
import uuid
from typing import Any, Callable, Dict, List, Optional

from .config import PipelineSettings, get_pipeline_settings
from .db import AssetRepository
from .job_queue import get_queue
from .metadata import merge_metadata
from .pipeline.chain import GENERATE_PREVIEWS, ChainDispatcher
from .pipeline.failures import FailureRecorder, RetryRefused
from .pipeline.orchestrator import PipelineOrchestrator
from .pipeline.stages.computed_metadata import COMPUTED_FIELDS, derive_computed_metadata
from .storage_manager import StorageManagerError, get_storage_manager
from .telemetry import configure_logging
from .types import Asset, ThumbnailStatus, UploadCommitted
from .watchdog import TimeoutWatchdog

logger = logging.getLogger("asset_pipeline.ops")

RECOMPUTE_PAGE_SIZE = 200
RERUN_STATUSES = (ThumbnailStatus.SKIPPED, ThumbnailStatus.FAILED)


class OpsContext:
    """Lazily-built collaborators shared by the subcommands."""

    def __init__(self, settings: PipelineSettings, repo=None, storage=None, dispatcher=None):
        self.settings = settings
        self.repo = repo or AssetRepository()
        self._storage = storage
        self._dispatcher = dispatcher

    @property
    def storage(self):
        if self._storage is None:
            self._storage = get_storage_manager()
        return self._storage

    @property
    def dispatcher(self) -> ChainDispatcher:
        if self._dispatcher is None:
            self._dispatcher = ChainDispatcher(get_queue(), self.settings)
        return self._dispatcher

    @property
    def queue(self):
        return self.dispatcher.queue

    @property
    def recorder(self) -> FailureRecorder:
        return FailureRecorder(self.repo, self.dispatcher)


def confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _describe(asset: Asset) -> str:
    reason = asset.thumbnail_skip_reason or asset.thumbnail_error or ""
    started = asset.thumbnail_started_at.isoformat() if asset.thumbnail_started_at else "-"
    return f"{asset.id}  {asset.thumbnail_status.value:<10}  started={started}  {reason}"


# ----------------------------------------------------------------------
# Stuck previews
# ----------------------------------------------------------------------

def cmd_stuck(ops: OpsContext, args) -> int:
    threshold = args.older_than or ops.settings.watchdog_threshold_seconds
    assets = ops.repo.list_stuck_thumbnails(threshold, limit=args.limit)
    for asset in assets:
        print(_describe(asset))
    print(f"{len(assets)} previews in PROCESSING for more than {threshold:.0f}s")
    return 0


def cmd_repair_stuck(ops: OpsContext, args) -> int:
    threshold = args.older_than or ops.settings.watchdog_threshold_seconds
    candidates = ops.repo.list_stuck_thumbnails(threshold, limit=args.limit)
    if not candidates:
        print("Nothing to repair")
        return 0
    for asset in candidates:
        print(_describe(asset))
    if args.dry_run:
        print(f"[dry-run] would reclaim {len(candidates)} previews")
        return 0
    if not confirm(f"Reclaim {len(candidates)} previews as timed out?", args.yes):
        print("Aborted")
        return 1

    watchdog = TimeoutWatchdog(ops.repo, ops.recorder, ops.dispatcher, ops.settings)
    result = watchdog.sweep(threshold, limit=args.limit)
    print(
        f"Reclaimed {len(result.reclaimed)}, resumed {len(result.dispatched)}, "
        f"errors {len(result.errors)}"
    )
    return 1 if result.errors else 0


# ----------------------------------------------------------------------
# Re-run skipped previews
# ----------------------------------------------------------------------

def cmd_rerun_skipped(ops: OpsContext, args) -> int:
    assets = ops.repo.list_assets_by_thumbnail_reason(RERUN_STATUSES, args.reason, limit=args.limit)
    if not assets:
        print(f"No SKIPPED/FAILED previews with reason '{args.reason}'")
        return 0
    for asset in assets:
        print(_describe(asset))
    if args.dry_run:
        print(f"[dry-run] would re-run {GENERATE_PREVIEWS} for {len(assets)} assets")
        return 0
    if not confirm(f"Re-run {GENERATE_PREVIEWS} for {len(assets)} assets?", args.yes):
        print("Aborted")
        return 1

    recorder = ops.recorder
    enqueued = refused = 0
    for asset in assets:
        try:
            recorder.retry(asset.id, GENERATE_PREVIEWS, triggered_by="ops:rerun-skipped")
            enqueued += 1
        except RetryRefused as e:
            refused += 1
            logger.warning("[%s] Not re-run: %s", asset.id, e)
    print(f"Enqueued {enqueued}, refused {refused}")
    return 0


# ----------------------------------------------------------------------
# Recompute derived fields
# ----------------------------------------------------------------------

def _preview_loader(ops: OpsContext, asset: Asset, view: Dict[str, Any]) -> Callable[[], Optional[bytes]]:
    def load() -> Optional[bytes]:
        thumbnails = view.get("thumbnails") or {}
        for style in ("medium", "thumb", "large"):
            path = (thumbnails.get(style) or {}).get("path")
            if not path:
                continue
            try:
                return ops.storage.get(asset.storage_bucket, path)
            except StorageManagerError as e:
                logger.warning("[%s] Could not read %s preview: %s", asset.id, style, e)
        return None

    return load


def recompute_asset(ops: OpsContext, asset: Asset, fields: List[str]) -> Dict[str, Any]:
    """Re-derive `fields` for one asset, overwriting any previous values."""
    version = ops.repo.get_version(asset.current_version_id) if asset.current_version_id else None
    if version is None:
        version = ops.repo.get_current_version(asset.id)
    if version is not None and not version.is_finalized:
        view = merge_metadata(asset.metadata, version.metadata)
    else:
        # Finalized: the asset bag already holds the merge and any later writes.
        view = dict(asset.metadata)

    derived = derive_computed_metadata(view, _preview_loader(ops, asset, view), fields)
    if not derived:
        return {}
    if version is not None and not version.is_finalized:
        ops.repo.patch_version_metadata(version.id, derived)
    else:
        ops.repo.patch_asset_metadata(asset.id, derived)
    return derived


def cmd_recompute(ops: OpsContext, args) -> int:
    fields = list(COMPUTED_FIELDS) if args.field == "all" else [args.field]
    if not confirm(f"Recompute {', '.join(fields)} for up to {args.limit} assets?", args.yes):
        print("Aborted")
        return 1

    updated = scanned = 0
    after_id: Optional[str] = None
    while scanned < args.limit:
        page = ops.repo.list_assets_for_recompute(
            limit=min(RECOMPUTE_PAGE_SIZE, args.limit - scanned), after_id=after_id
        )
        if not page:
            break
        for asset in page:
            scanned += 1
            try:
                if recompute_asset(ops, asset, fields):
                    updated += 1
            except Exception as e:
                logger.exception("[%s] Recompute failed: %s", asset.id, e)
        after_id = page[-1].id
    print(f"Scanned {scanned}, updated {updated}")
    return 0


# ----------------------------------------------------------------------
# Failure records
# ----------------------------------------------------------------------

def cmd_failures(ops: OpsContext, args) -> int:
    records = ops.recorder.list_open(asset_id=args.asset, limit=args.limit)
    for record in records:
        print(
            f"#{record.id}  {record.asset_id}  {record.stage:<28}  "
            f"{record.category.value:<18}  attempt={record.attempt}  {record.message}"
        )
    print(f"{len(records)} open failure records")
    return 0


def cmd_resolve(ops: OpsContext, args) -> int:
    if ops.recorder.resolve(args.record_id, args.resolution):
        print(f"Resolved #{args.record_id}")
        return 0
    print(f"Record #{args.record_id} not found or already resolved")
    return 1


def cmd_retry(ops: OpsContext, args) -> int:
    try:
        result = ops.recorder.retry(args.asset_id, args.stage, triggered_by="ops:retry")
    except RetryRefused as e:
        print(f"Retry refused: {e}")
        return 1
    print(f"Enqueued {args.stage} for {args.asset_id} (job={result.job_id})")
    return 0


def cmd_ingest(ops: OpsContext, args) -> int:
    orchestrator = PipelineOrchestrator(ops.repo, ops.storage, ops.dispatcher, ops.settings)
    event = UploadCommitted(
        tenant_id=args.tenant_id,
        asset_id=args.asset_id,
        version_id=args.version_id,
        working_storage_path=args.path,
        declared_mime=args.mime,
    )
    category = orchestrator.handle_upload_committed(event)
    if category is None:
        print("Event ignored (unknown asset or already started)")
        return 1
    print(f"Dispatched as {category.value}")
    return 0


# ----------------------------------------------------------------------
# Stage jobs
# ----------------------------------------------------------------------

def _describe_job(row: Dict[str, Any]) -> str:
    error = (row.get("last_error") or "")[:80]
    return (
        f"{row['id']}  {row.get('status', 'FAILED'):<10}  {row['stage']:<28}  "
        f"{row['asset_id']}  attempts={row['attempts']}/{row['max_attempts']}  {error}"
    )


def cmd_jobs(ops: OpsContext, args) -> int:
    rows = ops.queue.list_jobs(status=args.status, asset_id=args.asset, limit=args.limit)
    for row in rows:
        print(_describe_job(row))
    stats = ops.queue.get_stats()
    by_status = ", ".join(f"{status}={count}" for status, count in sorted(stats["by_status"].items()))
    print(f"{len(rows)} jobs shown; queue total {stats['total']} ({by_status or 'empty'})")
    return 0


def cmd_job(ops: OpsContext, args) -> int:
    row = ops.queue.get_job(args.job_id)
    if row is None:
        print(f"Job {args.job_id} not found")
        return 1
    print(_describe_job(row))
    print(f"  input:  {row.get('input')}")
    print(f"  output: {row.get('output')}")
    return 0


def cmd_dead_letters(ops: OpsContext, args) -> int:
    rows = ops.queue.get_dead_letter_jobs(limit=args.limit, unresumed_only=args.unresumed)
    for row in rows:
        resumed = "resumed" if row.get("chain_resumed_at") else "-"
        print(f"{_describe_job(row)}  code={row.get('error_code')}  {resumed}")
    print(f"{len(rows)} dead-lettered jobs")
    return 0


def cmd_cancel(ops: OpsContext, args) -> int:
    if ops.queue.cancel(args.job_id):
        print(f"Cancelled {args.job_id}")
        return 0
    print(f"Job {args.job_id} is not queued, nothing cancelled")
    return 1


# ----------------------------------------------------------------------
# Visibility
# ----------------------------------------------------------------------

def cmd_visible(ops: OpsContext, args) -> int:
    assets = ops.repo.list_visible_assets(args.tenant_id, limit=args.limit)
    for asset in assets:
        print(f"{asset.id}  {asset.status.value:<10}  previews={asset.thumbnail_status.value:<10}  {asset.original_filename or ''}")
    print(f"{len(assets)} visible assets for tenant {args.tenant_id}")
    return 0


# ----------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Asset Pipeline operational tooling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("stuck", help="List previews stuck in PROCESSING")
    p.add_argument("--older-than", type=float, default=None, help="Threshold in seconds")
    p.add_argument("--limit", type=int, default=100)
    p.set_defaults(func=cmd_stuck)

    p = sub.add_parser("repair-stuck", help="Reclaim stuck previews now")
    p.add_argument("--older-than", type=float, default=None, help="Threshold in seconds")
    p.add_argument("--limit", type=int, default=100)
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(func=cmd_repair_stuck)

    p = sub.add_parser("rerun-skipped", help="Re-run previews skipped or failed for a reason")
    p.add_argument("--reason", required=True, help="Reason prefix, e.g. missing_capability")
    p.add_argument("--limit", type=int, default=500)
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(func=cmd_rerun_skipped)

    p = sub.add_parser("recompute", help="Recompute a derived field for historical assets")
    p.add_argument("field", choices=list(COMPUTED_FIELDS) + ["all"])
    p.add_argument("--limit", type=int, default=1000)
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(func=cmd_recompute)

    p = sub.add_parser("failures", help="List open failure records")
    p.add_argument("--asset", default=None)
    p.add_argument("--limit", type=int, default=100)
    p.set_defaults(func=cmd_failures)

    p = sub.add_parser("resolve", help="Resolve a failure record")
    p.add_argument("record_id", type=int)
    p.add_argument("--resolution", default="resolved")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("retry", help="Re-run one stage for an asset")
    p.add_argument("asset_id")
    p.add_argument("stage")
    p.set_defaults(func=cmd_retry)

    p = sub.add_parser("ingest", help="Replay an upload-committed event")
    p.add_argument("tenant_id")
    p.add_argument("asset_id")
    p.add_argument("version_id")
    p.add_argument("path", help="Working storage path of the upload")
    p.add_argument("--mime", default=None, help="Declared MIME type")
    p.set_defaults(func=cmd_ingest)

    p = sub.add_parser("jobs", help="List stage jobs with queue totals")
    p.add_argument("--status", default=None, help="QUEUED, RUNNING, SUCCEEDED, FAILED, ...")
    p.add_argument("--asset", default=None)
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_jobs)

    p = sub.add_parser("job", help="Show one stage job")
    p.add_argument("job_id", type=uuid.UUID)
    p.set_defaults(func=cmd_job)

    p = sub.add_parser("dead-letters", help="List jobs that exhausted their attempts")
    p.add_argument("--unresumed", action="store_true", help="Only jobs whose chain was not handed on yet")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_dead_letters)

    p = sub.add_parser("cancel", help="Cancel a queued stage job")
    p.add_argument("job_id", type=uuid.UUID)
    p.set_defaults(func=cmd_cancel)

    p = sub.add_parser("visible", help="List the default visible set for a tenant")
    p.add_argument("tenant_id")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_visible)

    return parser


def main(argv: Optional[List[str]] = None, ops: Optional[OpsContext] = None) -> int:
    """CLI entry point."""
    configure_logging()
    args = build_parser().parse_args(argv)
    ops = ops or OpsContext(get_pipeline_settings())
    return args.func(ops, args)


if __name__ == "__main__":
    sys.exit(main())
