"""
Pipeline module for asset processing.

Provides a stage-based architecture in which each stage runs as its own queue
job. Stage implementations live in ``pipeline.stages``.
"""

from .base import Stage, StageOutcome, StageRunner
from .chain import FULL_CHAIN, GATED_STAGES, ChainDispatcher, stages_after
from .context import StageContext
from .errors import (
    DecodeError,
    GateExhausted,
    MissingCapabilityError,
    NotReady,
    OversizedInputError,
    PipelineError,
    StageError,
    StageSkipped,
    StageTimeoutError,
    TransientIOError,
    UnsupportedFormatError,
)
from .failures import FailureRecorder, RetryRefused
from .gate import SequencingGate
from .orchestrator import PipelineOrchestrator

__all__ = [
    # Core classes
    "Stage",
    "StageOutcome",
    "StageRunner",
    "StageContext",
    "SequencingGate",
    "ChainDispatcher",
    "FailureRecorder",
    "PipelineOrchestrator",
    "FULL_CHAIN",
    "GATED_STAGES",
    "stages_after",
    # Exceptions
    "PipelineError",
    "StageError",
    "StageSkipped",
    "NotReady",
    "GateExhausted",
    "RetryRefused",
    "TransientIOError",
    "UnsupportedFormatError",
    "OversizedInputError",
    "DecodeError",
    "StageTimeoutError",
    "MissingCapabilityError",
]
