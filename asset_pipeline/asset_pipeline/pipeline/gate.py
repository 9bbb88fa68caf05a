"""
Sequencing gate.

No stage that needs pixel access runs until the asset's thumbnail_status is
COMPLETED or SKIPPED. A gated stage that finds the gate closed does nothing
and asks to be re-enqueued after a fixed delay; the worker turns that into a
queue deferral, so no worker ever blocks waiting on another asset's preview.
"""

from __future__ import annotations

import logging

from ..config import PipelineSettings
from ..types import READY_THUMBNAIL_STATUSES, Asset
from .errors import GateExhausted, NotReady

logger = logging.getLogger("asset_pipeline.pipeline.gate")


class SequencingGate:
    def __init__(self, settings: PipelineSettings):
        self.settings = settings

    @staticmethod
    def is_open(asset: Asset) -> bool:
        return asset.thumbnail_status in READY_THUMBNAIL_STATUSES

    def check(self, stage_name: str, asset: Asset, attempt: int) -> None:
        """
        Pass when previews are ready.

        Args:
            stage_name: The gated stage asking
            asset: Freshly loaded asset row
            attempt: How many times this stage job has been claimed

        Raises:
            NotReady: Previews are not ready; come back after gate_delay_seconds
            GateExhausted: Still not ready and the attempt budget is spent
        """
        if self.is_open(asset):
            return
        status = asset.thumbnail_status.value
        if attempt >= self.settings.gate_max_attempts:
            logger.warning(
                "[%s] %s gave up waiting on previews after %d attempts (status=%s)",
                asset.id, stage_name, attempt, status,
            )
            raise GateExhausted(stage_name, attempt, status)
        logger.debug(
            "[%s] %s not ready (status=%s, attempt %d/%d), retrying in %ds",
            asset.id, stage_name, status, attempt,
            self.settings.gate_max_attempts, self.settings.gate_delay_seconds,
        )
        raise NotReady(stage_name, self.settings.gate_delay_seconds, status)


__all__ = ["SequencingGate"]
