"""
JobLauncher -- runs a Job end to end.

Contract:
    ``run(job, parameters)`` opens a JobExecution, executes each step in
    order through a ChunkEngine, finalises the job status and invokes the
    job's completion listener once.  Returns the terminal JobExecution.

Architecture: etl_batch/services.  The only entry point callers need;
    wires JobExecutionTracker, StepExecutionTracker and ChunkEngine.

Failure modes:
    - RestartViolationError / JobExecutionAlreadyRunningError are raised
      before any step runs; nothing is written.
    - Any other ExecutionStateError raised mid-run is re-raised after the
      run is marked FAILED (best effort).
    - Record and chunk errors never escape: they end the step FAILED and
      are reported through the returned JobExecution.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Mapping
from uuid import uuid4

from sqlalchemy.orm import Session

from etl_kernel.domain.clock import Clock
from etl_kernel.exceptions import ExecutionStateError
from etl_kernel.logging_config import LogContext, get_logger

from etl_batch.definition import Job
from etl_batch.domain.types import ExecutionStatus, JobExecution
from etl_batch.services.chunk_engine import ChunkEngine
from etl_batch.services.job_tracker import JobExecutionTracker

logger = get_logger("batch.launcher")


class JobLauncher:
    """Synchronous, single-threaded job runner."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        tracker: JobExecutionTracker | None = None,
    ):
        self._session_factory = session_factory
        self._tracker = tracker or JobExecutionTracker(session_factory, clock)

    @property
    def tracker(self) -> JobExecutionTracker:
        return self._tracker

    def run(
        self,
        job: Job,
        parameters: Mapping[str, Any] | None = None,
        stop_event: threading.Event | None = None,
    ) -> JobExecution:
        """Run ``job`` for the JobInstance identified by ``parameters``.

        Raises:
            RestartViolationError: The JobInstance already completed.
            JobExecutionAlreadyRunningError: A run of it is unfinished.
            ExecutionStateError: Execution state could not be persisted.
        """
        start_time = time.monotonic()
        with LogContext.bind(correlation_id=str(uuid4()), job_name=job.name):
            execution = self._tracker.start(job.name, parameters)
            with LogContext.bind(
                job_execution_id=str(execution.job_execution_id),
                run_id=str(execution.run_id),
            ):
                try:
                    self._run_steps(job, execution, stop_event)
                except ExecutionStateError as exc:
                    self._tracker.abort(execution.job_execution_id, exc)
                    raise
                result = self._tracker.finish(
                    execution.job_execution_id, listener=job.listener,
                )
                logger.info(
                    "job_run_summary",
                    extra={
                        "status": result.status.value,
                        "steps": [
                            {
                                "step_name": s.step_name,
                                "status": s.status.value,
                                "read_count": s.read_count,
                                "write_count": s.write_count,
                                "skip_count": s.skip_count,
                                "commit_count": s.commit_count,
                            }
                            for s in result.step_executions
                        ],
                        "duration_ms": int((time.monotonic() - start_time) * 1000),
                    },
                )
                return result

    def _run_steps(
        self,
        job: Job,
        execution: JobExecution,
        stop_event: threading.Event | None,
    ) -> None:
        for index, step in enumerate(job.steps):
            step_tracker = self._tracker.start_step(execution, step.name, index)
            if step_tracker is None:
                continue
            engine = ChunkEngine(step, step_tracker, self._session_factory, stop_event)
            step_execution = engine.execute()
            if step_execution.status != ExecutionStatus.COMPLETED:
                logger.warning(
                    "job_halted",
                    extra={
                        "halted_step": step.name,
                        "step_status": step_execution.status.value,
                    },
                )
                return
