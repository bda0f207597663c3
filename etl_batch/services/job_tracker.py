"""
JobExecutionTracker -- job-level execution state and restart rules.

Contract:
    ``start()`` resolves the JobInstance for (job name, identifying
    parameters), refuses to re-run a completed instance, allocates the next
    run id and opens a STARTED JobExecution.  ``start_step()`` creates the
    StepExecution for one step of that run, positioned after the last
    committed chunk of the previous run.  ``finish()`` aggregates step
    statuses into the terminal job status and invokes the completion
    listener exactly once.

Architecture: etl_batch/services.  All state goes through
    ExecutionRepository; each operation is one short transaction.

Invariants enforced:
    - Run ids are strictly increasing per JobInstance (locked counter row).
    - A COMPLETED JobInstance is never executed again.
    - At most one unfinished JobExecution per JobInstance.
    - A step that completed in an earlier run is not re-run.
    - Listener failures never change the finalised job status.

Failure modes:
    - RestartViolationError: latest execution of the instance is COMPLETED.
    - JobExecutionAlreadyRunningError: latest execution is still running.
    - TrackerPersistenceError: store unreachable, or a status compare-and-set
      lost against another writer.
    - JobExecutionNotFoundError: unknown job execution id.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from etl_kernel.domain.clock import Clock, SystemClock
from etl_kernel.exceptions import (
    JobExecutionAlreadyRunningError,
    JobExecutionNotFoundError,
    RestartViolationError,
    TrackerPersistenceError,
)
from etl_kernel.logging_config import get_logger

from etl_batch.domain.types import (
    ExecutionStatus,
    JobExecution,
    aggregate_status,
    compute_job_key,
)
from etl_batch.models.execution import JobExecutionModel, StepExecutionModel
from etl_batch.services.repository import ExecutionRepository, state_transaction
from etl_batch.services.step_tracker import StepExecutionTracker

if TYPE_CHECKING:
    from etl_batch.listeners import JobCompletionListener

logger = get_logger("batch.job_tracker")


class JobExecutionTracker:
    """Opens, tracks and finalises JobExecutions."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        repository: ExecutionRepository | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._repository = repository or ExecutionRepository()

    @property
    def clock(self) -> Clock:
        return self._clock

    # -------------------------------------------------------------------------
    # Job lifecycle
    # -------------------------------------------------------------------------

    def start(
        self, job_name: str, parameters: Mapping[str, Any] | None = None,
    ) -> JobExecution:
        """Open a new run of the JobInstance identified by ``parameters``.

        Raises:
            RestartViolationError: The instance already completed.
            JobExecutionAlreadyRunningError: A previous run is unfinished.
            TrackerPersistenceError: The store could not be written.
        """
        params = dict(parameters or {})
        job_key = compute_job_key(params)
        repo = self._repository

        with state_transaction(self._session_factory, "start_job") as session:
            instance = repo.find_instance(session, job_name, job_key)
            if instance is None:
                instance = repo.create_instance(session, job_name, job_key, params)

            # Locks the instance row; the checks below run under that lock.
            run_id = repo.allocate_run_id(session, instance.id)

            latest = repo.latest_execution(session, instance.id)
            if latest is not None:
                latest_status = ExecutionStatus(latest.status)
                if latest_status == ExecutionStatus.COMPLETED:
                    raise RestartViolationError(job_name, job_key, str(instance.id))
                if not latest_status.is_terminal:
                    raise JobExecutionAlreadyRunningError(
                        job_name, str(latest.id), latest.run_id,
                    )

            execution = repo.create_job_execution(
                session, instance.id, run_id, self._clock.now(),
            )
            job_execution_id = execution.id

        with state_transaction(self._session_factory, "job_started") as session:
            if not repo.compare_and_set_status(
                session,
                JobExecutionModel,
                job_execution_id,
                ExecutionStatus.STARTING,
                ExecutionStatus.STARTED,
            ):
                raise TrackerPersistenceError(
                    "job_started",
                    f"job execution {job_execution_id} was not "
                    f"{ExecutionStatus.STARTING.value}",
                )

        logger.info(
            "job_started",
            extra={
                "job_execution_id": str(job_execution_id),
                "run_id": run_id,
                "job_key": job_key,
            },
        )
        return self.get_job_execution(job_execution_id)

    def start_step(
        self, execution: JobExecution, step_name: str, step_index: int,
    ) -> StepExecutionTracker | None:
        """Create the StepExecution for ``step_name`` in this run.

        Returns None when the step already completed in an earlier run of
        the same JobInstance.
        """
        repo = self._repository
        with state_transaction(self._session_factory, "start_step") as session:
            previous = repo.latest_step_execution(
                session, execution.job_instance.job_instance_id, step_name,
            )
            if (
                previous is not None
                and previous.status == ExecutionStatus.COMPLETED.value
            ):
                logger.info(
                    "step_already_complete",
                    extra={
                        "step_name": step_name,
                        "previous_step_execution_id": str(previous.id),
                    },
                )
                return None

            start_position = previous.committed_position if previous else 0
            model = repo.create_step_execution(
                session,
                execution.job_execution_id,
                step_name,
                step_index,
                start_position,
            )
            step_execution_id = model.id

        if start_position:
            logger.info(
                "step_restarting",
                extra={"step_name": step_name, "start_position": start_position},
            )
        return StepExecutionTracker(
            self._session_factory,
            repo,
            self._clock,
            step_execution_id,
            step_name,
            start_position=start_position,
        )

    def finish(
        self,
        job_execution_id: UUID,
        listener: JobCompletionListener | None = None,
        exit_message: str | None = None,
    ) -> JobExecution:
        """Finalise the run from its step statuses, then notify ``listener``."""
        repo = self._repository
        with state_transaction(self._session_factory, "finish_job") as session:
            model = self._require(session, job_execution_id)
            current = ExecutionStatus(model.status)
            if current.is_terminal:
                raise TrackerPersistenceError(
                    "finish_job",
                    f"job execution {job_execution_id} was already {current.value}",
                )
            status = aggregate_status(
                ExecutionStatus(s.status) for s in model.step_executions
            )
            if exit_message is None:
                exit_message = next(
                    (
                        s.exit_message
                        for s in model.step_executions
                        if s.status != ExecutionStatus.COMPLETED.value
                        and s.exit_message
                    ),
                    None,
                )
            changed = repo.compare_and_set_status(
                session,
                JobExecutionModel,
                job_execution_id,
                current,
                status,
                ended_at=self._clock.now(),
                exit_message=exit_message,
            )
        if not changed:
            raise TrackerPersistenceError(
                "finish_job",
                f"job execution {job_execution_id} was not {current.value}",
            )

        execution = self.get_job_execution(job_execution_id)
        log = logger.info if status == ExecutionStatus.COMPLETED else logger.error
        log(
            "job_finished",
            extra={
                "status": status.value,
                "run_id": execution.run_id,
                "write_count": execution.write_count,
            },
        )

        if listener is not None:
            try:
                listener.after_job(execution)
            except Exception:
                logger.exception(
                    "job_listener_failed",
                    extra={"listener": type(listener).__name__},
                )
        return execution

    def abort(self, job_execution_id: UUID, error: BaseException) -> None:
        """Best-effort FAILED for a run interrupted by an execution-state error.

        Never raises: the original error is what the caller reports.
        """
        message = f"{type(error).__name__}: {error}"
        try:
            with state_transaction(self._session_factory, "abort_job") as session:
                model = self._require(session, job_execution_id)
                current = ExecutionStatus(model.status)
                if current.is_terminal:
                    return
                for step in model.step_executions:
                    step_status = ExecutionStatus(step.status)
                    if not step_status.is_terminal:
                        self._repository.compare_and_set_status(
                            session,
                            StepExecutionModel,
                            step.id,
                            step_status,
                            ExecutionStatus.FAILED,
                            ended_at=self._clock.now(),
                            exit_message=message,
                        )
                self._repository.compare_and_set_status(
                    session,
                    JobExecutionModel,
                    job_execution_id,
                    current,
                    ExecutionStatus.FAILED,
                    ended_at=self._clock.now(),
                    exit_message=message,
                )
        except Exception:
            logger.exception(
                "job_abort_failed",
                extra={"job_execution_id": str(job_execution_id)},
            )
            return
        logger.error(
            "job_aborted",
            extra={
                "job_execution_id": str(job_execution_id),
                "error_type": type(error).__name__,
                "error_code": getattr(error, "code", None),
            },
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_job_execution(self, job_execution_id: UUID) -> JobExecution:
        with state_transaction(self._session_factory, "get_job_execution") as session:
            return self._require(session, job_execution_id).to_dto()

    def list_job_executions(self, job_name: str) -> list[JobExecution]:
        """All executions of ``job_name``, oldest first."""
        with state_transaction(self._session_factory, "list_job_executions") as session:
            return [
                m.to_dto()
                for m in self._repository.list_job_executions(session, job_name)
            ]

    def _require(self, session: Session, job_execution_id: UUID) -> JobExecutionModel:
        model = self._repository.get_job_execution(session, job_execution_id)
        if model is None:
            raise JobExecutionNotFoundError(str(job_execution_id))
        return model
