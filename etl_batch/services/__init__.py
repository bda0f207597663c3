"""
etl_batch.services -- Execution-state persistence, trackers and the chunk engine.
"""

from etl_batch.services.chunk_engine import ChunkEngine
from etl_batch.services.job_tracker import JobExecutionTracker
from etl_batch.services.launcher import JobLauncher
from etl_batch.services.repository import ExecutionRepository, state_transaction
from etl_batch.services.step_tracker import StepExecutionTracker

__all__ = [
    "ChunkEngine",
    "ExecutionRepository",
    "JobExecutionTracker",
    "JobLauncher",
    "StepExecutionTracker",
    "state_transaction",
]
