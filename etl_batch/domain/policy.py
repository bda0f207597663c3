"""
etl_batch.domain.policy -- Per-step failure policy.

ZERO I/O.  Pure evaluation: the engine asks the policy what to do with a
record-level error and how many times to retry a failed flush.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from etl_kernel.exceptions import RecordError, SourceError, TransformError


class ErrorAction(str, Enum):
    SKIP = "skip"  # Count it, drop the record, keep filling
    FATAL = "fatal"  # Abort the chunk without flushing, step FAILED


@dataclass(frozen=True)
class FailurePolicy:
    """How a step reacts to record-level and chunk-level failures.

    The default is fatal on any record error and one immediate retry of a
    failed flush.  ``skip_limit`` caps the number of skipped records per
    step execution; ``flush_timeout`` (seconds) bounds each sink call.
    """

    on_source_error: ErrorAction = ErrorAction.FATAL
    on_transform_error: ErrorAction = ErrorAction.FATAL
    skip_limit: int = 0
    sink_retry_limit: int = 1
    flush_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.skip_limit < 0:
            raise ValueError("skip_limit must be >= 0")
        if self.sink_retry_limit < 0:
            raise ValueError("sink_retry_limit must be >= 0")
        if self.flush_timeout is not None and self.flush_timeout <= 0:
            raise ValueError("flush_timeout must be positive")

    def action_for(self, error: RecordError) -> ErrorAction:
        if isinstance(error, SourceError):
            return self.on_source_error
        if isinstance(error, TransformError):
            return self.on_transform_error
        return ErrorAction.FATAL

    def can_skip(self, error: RecordError, skips_so_far: int) -> bool:
        """True if ``error`` may be skipped given the skips already counted."""
        return (
            self.action_for(error) == ErrorAction.SKIP
            and skips_so_far < self.skip_limit
        )

    @property
    def max_flush_attempts(self) -> int:
        return 1 + self.sink_retry_limit
