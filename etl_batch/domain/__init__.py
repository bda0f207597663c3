"""
etl_batch.domain -- Pure types and value objects for the batch engine.

ZERO I/O.
"""

from etl_batch.domain.chunk import Chunk, ChunkState
from etl_batch.domain.policy import ErrorAction, FailurePolicy
from etl_batch.domain.types import (
    ExecutionStatus,
    JobExecution,
    JobInstance,
    Record,
    StepExecution,
    aggregate_status,
    can_transition,
    compute_job_key,
)

__all__ = [
    "Chunk",
    "ChunkState",
    "ErrorAction",
    "ExecutionStatus",
    "FailurePolicy",
    "JobExecution",
    "JobInstance",
    "Record",
    "StepExecution",
    "aggregate_status",
    "can_transition",
    "compute_job_key",
]
