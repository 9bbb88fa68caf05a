"""
Pipeline-specific exceptions.

Provides a clear hierarchy for different error types:
- PipelineError: Base exception for all pipeline errors
- StageError: Error during stage execution, carrying a failure category
- StageSkipped: Stage was intentionally skipped
- NotReady: A gated stage must come back later
- GateExhausted: A gated stage gave up waiting
- The failure taxonomy: TransientIOError, UnsupportedFormatError,
  OversizedInputError, DecodeError, StageTimeoutError, MissingCapabilityError
"""

from __future__ import annotations

from typing import Optional

from ..types import FailureCategory


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, stage_name: Optional[str] = None):
        self.stage_name = stage_name
        super().__init__(message)


class StageError(PipelineError):
    """Error during stage execution."""

    category: FailureCategory = FailureCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        stage_name: Optional[str] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
        reason: Optional[str] = None,
    ):
        self.cause = cause
        self.recoverable = recoverable
        self.reason = reason
        super().__init__(message, stage_name)


class StageSkipped(PipelineError):
    """Stage was intentionally skipped (not an error)."""

    def __init__(self, stage_name: str, reason: str):
        self.reason = reason
        super().__init__(f"Stage skipped: {reason}", stage_name)


class NotReady(PipelineError):
    """Raised by the sequencing gate: previews are not ready yet, come back after `delay`."""

    def __init__(self, stage_name: str, delay_seconds: int, status: str):
        self.delay_seconds = delay_seconds
        self.status = status
        super().__init__(
            f"{stage_name} waiting on previews (thumbnail_status={status})", stage_name
        )


class TransientIOError(StageError):
    """
    Temporary error that may succeed on retry.

    Examples:
    - Network timeout talking to storage or the vision API
    - Rate limiting / throttling
    - Temporary service unavailability
    """

    category = FailureCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        stage_name: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, stage_name, cause, recoverable=True)


class UnsupportedFormatError(StageError):
    """The file cannot be previewed at all. Terminal; leads to SKIPPED."""

    category = FailureCategory.UNSUPPORTED


class OversizedInputError(StageError):
    """Input too large even for degraded mode."""

    category = FailureCategory.OVERSIZED


class DecodeError(StageError):
    """Corrupt or unrecognised payload."""

    category = FailureCategory.DECODE


class StageTimeoutError(StageError):
    """A stage was forced terminal because it outlived the watchdog threshold."""

    category = FailureCategory.TIMEOUT


class MissingCapabilityError(StageError):
    """
    A required decoder is unavailable in this process.

    Kept distinct so affected assets can be bulk-retried once the capability
    is installed.
    """

    category = FailureCategory.MISSING_CAPABILITY

    def __init__(
        self,
        capability: str,
        stage_name: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        self.capability = capability
        super().__init__(
            f"Required decoder unavailable: {capability}",
            stage_name,
            cause,
            recoverable=False,
            reason=f"missing_capability:{capability}",
        )


class GateExhausted(StageError):
    """A gated stage used its whole attempt budget waiting on previews."""

    def __init__(self, stage_name: str, attempts: int, status: str):
        self.attempts = attempts
        super().__init__(
            f"Previews still not ready after {attempts} attempts (thumbnail_status={status})",
            stage_name,
            reason="gate_exhausted",
        )
