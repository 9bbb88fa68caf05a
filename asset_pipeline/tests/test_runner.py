import dataclasses

import pytest

from asset_pipeline.pipeline.base import COMPLETED, DEFERRED, FAILED, SKIPPED, Stage, StageRunner
from asset_pipeline.pipeline.errors import (
    DecodeError,
    StageSkipped,
    TransientIOError,
    UnsupportedFormatError,
)
from asset_pipeline.pipeline.gate import SequencingGate
from asset_pipeline.types import FailureCategory, ThumbnailStatus


class ScriptedStage(Stage):
    """Raises the queued errors in order, then succeeds."""

    name = "scripted"

    def __init__(self, errors=(), gated=False, enabled=True):
        self.errors = list(errors)
        self.gated = gated
        self.enabled = enabled
        self.calls = 0
        self.unsupported_calls = 0

    def should_run(self, ctx, settings):
        return self.enabled

    def execute(self, ctx, settings):
        self.calls += 1
        ctx.asset_patch["scripted_touched"] = self.calls
        if self.errors:
            raise self.errors.pop(0)
        return ctx

    def on_unsupported(self, ctx, error, settings):
        self.unsupported_calls += 1


def _runner(repo, storage, settings, recorder, stage, sleeps=None):
    return StageRunner(
        repo,
        storage,
        settings,
        [stage],
        recorder,
        sleep=(sleeps.append if sleeps is not None else (lambda seconds: None)),
    )


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class TestOutcomes:
    def test_completed_flushes_patch_and_note(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        outcome = _runner(repo, storage, settings, recorder, ScriptedStage()).run(
            asset.id, version.id, "scripted"
        )

        assert outcome.status == COMPLETED
        assert outcome.attempts == 1
        stored = repo.stored_asset(asset.id).metadata
        assert stored["scripted_touched"] == 1
        assert "_scripted_completed" in stored

    def test_missing_asset_is_skipped(self, repo, storage, settings, recorder):
        outcome = _runner(repo, storage, settings, recorder, ScriptedStage()).run(
            "gone", "gone-v", "scripted"
        )
        assert outcome.status == SKIPPED
        assert outcome.reason == "asset_not_found"

    def test_unknown_stage_raises(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        with pytest.raises(ValueError):
            _runner(repo, storage, settings, recorder, ScriptedStage()).run(asset.id, version.id, "nope")

    def test_duplicate_stage_names_rejected(self, repo, storage, settings, recorder):
        with pytest.raises(ValueError):
            StageRunner(repo, storage, settings, [ScriptedStage(), ScriptedStage()], recorder)

    def test_disabled_stage_skips_with_reason(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        stage = ScriptedStage(enabled=False)
        outcome = _runner(repo, storage, settings, recorder, stage).run(asset.id, version.id, "scripted")

        assert outcome.status == SKIPPED
        assert outcome.reason == "disabled"
        assert stage.calls == 0
        assert repo.stored_asset(asset.id).metadata["_scripted_skip_reason"] == "disabled"

    def test_stage_skip_discards_pending_patch(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        stage = ScriptedStage(errors=[StageSkipped("scripted", "not_applicable")])
        outcome = _runner(repo, storage, settings, recorder, stage).run(asset.id, version.id, "scripted")

        assert outcome.status == SKIPPED
        stored = repo.stored_asset(asset.id).metadata
        assert "scripted_touched" not in stored
        assert stored["_scripted_skipped"] is True

    def test_unsupported_is_a_skip_not_a_failure(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        stage = ScriptedStage(errors=[UnsupportedFormatError("nope", reason="vector_no_preview")])
        outcome = _runner(repo, storage, settings, recorder, stage).run(asset.id, version.id, "scripted")

        assert outcome.status == SKIPPED
        assert outcome.reason == "vector_no_preview"
        assert stage.unsupported_calls == 1
        assert repo.failures == []


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

class TestRetries:
    def test_transient_retries_with_backoff(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        sleeps = []
        backoff = dataclasses.replace(settings, retry_base_delay=1.0)
        stage = ScriptedStage(errors=[TransientIOError("blip"), TransientIOError("blip")])

        outcome = _runner(repo, storage, backoff, recorder, stage, sleeps).run(
            asset.id, version.id, "scripted"
        )

        assert outcome.status == COMPLETED
        assert outcome.attempts == 3
        assert sleeps == [1.0, 2.0]
        assert repo.failures == []

    def test_transient_ceiling_records_failure(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        stage = ScriptedStage(errors=[TransientIOError("blip")] * 3)

        outcome = _runner(repo, storage, settings, recorder, stage).run(asset.id, version.id, "scripted")

        assert outcome.status == FAILED
        assert outcome.attempts == 3
        assert outcome.category is FailureCategory.TRANSIENT
        assert len(repo.failures) == 1
        assert repo.failures[0].attempt == 3
        assert repo.failures[0].version_id == version.id

    def test_decode_failure_is_not_retried(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        stage = ScriptedStage(errors=[DecodeError("bad header", reason="decode_failed")])

        outcome = _runner(repo, storage, settings, recorder, stage).run(asset.id, version.id, "scripted")

        assert outcome.status == FAILED
        assert outcome.reason == "decode_failed"
        assert stage.calls == 1
        stored = repo.stored_asset(asset.id).metadata
        assert stored["_scripted_failed"] is True
        assert stored["_scripted_error"] == "bad header"
        assert "scripted_touched" not in stored

    def test_plain_exception_is_unknown(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        stage = ScriptedStage(errors=[KeyError("boom")])

        outcome = _runner(repo, storage, settings, recorder, stage).run(asset.id, version.id, "scripted")

        assert outcome.status == FAILED
        assert outcome.category is FailureCategory.UNKNOWN

    def test_backoff_past_stage_timeout_fails_as_timeout(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset()
        tight = dataclasses.replace(
            settings,
            worker_timeout_seconds=1.0,
            stage_timeout_seconds=2.0,
            watchdog_threshold_seconds=3.0,
            retry_base_delay=5.0,
        )
        sleeps = []
        stage = ScriptedStage(errors=[TransientIOError("slow")])

        outcome = _runner(repo, storage, tight, recorder, stage, sleeps).run(asset.id, version.id, "scripted")

        assert outcome.status == FAILED
        assert outcome.category is FailureCategory.TIMEOUT
        assert outcome.reason == "timeout"
        assert sleeps == []

    def test_success_clears_earlier_failure_notes(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset(
            metadata={"_scripted_failed": True, "_scripted_error": "old", "_scripted_failed_at": "x"}
        )
        _runner(repo, storage, settings, recorder, ScriptedStage()).run(asset.id, version.id, "scripted")

        stored = repo.stored_asset(asset.id).metadata
        assert "_scripted_failed" not in stored
        assert "_scripted_error" not in stored


# ---------------------------------------------------------------------------
# Sequencing gate
# ---------------------------------------------------------------------------

class TestGate:
    @pytest.mark.parametrize("status", [ThumbnailStatus.PENDING, ThumbnailStatus.PROCESSING, ThumbnailStatus.FAILED])
    def test_defers_until_previews_ready(self, repo, storage, settings, recorder, status):
        asset, version = repo.add_asset(thumbnail_status=status)
        stage = ScriptedStage(gated=True)

        outcome = _runner(repo, storage, settings, recorder, stage).run(
            asset.id, version.id, "scripted", job_attempt=1
        )

        assert outcome.status == DEFERRED
        assert outcome.deferred is True
        assert outcome.terminal is False
        assert outcome.delay_seconds == settings.gate_delay_seconds
        assert outcome.reason == f"waiting_on_previews:{status.value}"
        assert stage.calls == 0
        assert repo.stored_asset(asset.id).metadata == {}

    @pytest.mark.parametrize("status", [ThumbnailStatus.COMPLETED, ThumbnailStatus.SKIPPED])
    def test_runs_once_previews_ready(self, repo, storage, settings, recorder, status):
        asset, version = repo.add_asset(thumbnail_status=status)
        outcome = _runner(repo, storage, settings, recorder, ScriptedStage(gated=True)).run(
            asset.id, version.id, "scripted"
        )
        assert outcome.status == COMPLETED

    def test_exhausted_gate_fails_and_records(self, repo, storage, settings, recorder):
        asset, version = repo.add_asset(thumbnail_status=ThumbnailStatus.PROCESSING)
        stage = ScriptedStage(gated=True)

        outcome = _runner(repo, storage, settings, recorder, stage).run(
            asset.id, version.id, "scripted", job_attempt=settings.gate_max_attempts
        )

        assert outcome.status == FAILED
        assert outcome.reason == "gate_exhausted"
        assert outcome.category is FailureCategory.UNKNOWN
        assert stage.calls == 0
        assert len(repo.failures) == 1

    def test_gate_is_open_only_for_ready_statuses(self, settings):
        from asset_pipeline.types import Asset

        for status in ThumbnailStatus:
            asset = Asset(id="a", tenant_id="t", thumbnail_status=status)
            assert SequencingGate.is_open(asset) is (
                status in (ThumbnailStatus.COMPLETED, ThumbnailStatus.SKIPPED)
            )
