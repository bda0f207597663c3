"""
ExecutionRepository -- durable job/step execution state.

Contract:
    Reads and writes JobInstance / JobExecution / StepExecution rows on a
    caller-supplied session.  Never commits; callers own the transaction.

Architecture: etl_batch/services.  Imports from etl_batch.models and
    etl_batch.domain only.

Invariants enforced:
    - Run ids come from the instance row's ``last_run_id`` counter, read
      with SELECT ... FOR UPDATE, so they are strictly increasing per
      instance even with concurrent launchers.
    - Status changes are compare-and-set: the UPDATE only matches the row
      while it still has the expected status.
    - Chunk counters are added with SQL expressions (``col = col + n``)
      inside the chunk transaction, so they become visible exactly when
      the chunk's records do.

Failure modes:
    - SQLAlchemyError propagates; the trackers wrap it in
      TrackerPersistenceError.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Generator
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from etl_kernel.exceptions import TrackerPersistenceError
from etl_kernel.logging_config import get_logger

from etl_batch.domain.chunk import Chunk
from etl_batch.domain.types import ExecutionStatus
from etl_batch.models.execution import (
    JobExecutionModel,
    JobInstanceModel,
    StepExecutionModel,
)

logger = get_logger("batch.repository")


@contextmanager
def state_transaction(
    session_factory: Callable[[], Session], operation: str,
) -> Generator[Session, None, None]:
    """One short transaction for execution-state bookkeeping.

    Commits on success.  SQLAlchemyError is rolled back and re-raised as
    TrackerPersistenceError naming ``operation``; other errors are rolled
    back and propagate unchanged.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise TrackerPersistenceError(operation, str(exc)) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class ExecutionRepository:
    """Persistence for execution state, keyed by instance identity + run id."""

    # -------------------------------------------------------------------------
    # Job instances
    # -------------------------------------------------------------------------

    def find_instance(
        self, session: Session, job_name: str, job_key: str,
    ) -> JobInstanceModel | None:
        return session.execute(
            select(JobInstanceModel).where(
                JobInstanceModel.job_name == job_name,
                JobInstanceModel.job_key == job_key,
            )
        ).scalar_one_or_none()

    def create_instance(
        self,
        session: Session,
        job_name: str,
        job_key: str,
        parameters: dict[str, Any],
    ) -> JobInstanceModel:
        model = JobInstanceModel(
            job_name=job_name,
            job_key=job_key,
            parameters=parameters or None,
            last_run_id=0,
        )
        session.add(model)
        session.flush()
        logger.info(
            "job_instance_created",
            extra={"job_instance_id": str(model.id), "job_key": job_key},
        )
        return model

    def allocate_run_id(self, session: Session, job_instance_id: UUID) -> int:
        """Increment and return the instance's run counter (row locked)."""
        instance = session.execute(
            select(JobInstanceModel)
            .where(JobInstanceModel.id == job_instance_id)
            .with_for_update()
        ).scalar_one()
        instance.last_run_id = instance.last_run_id + 1
        session.flush()
        return instance.last_run_id

    # -------------------------------------------------------------------------
    # Job executions
    # -------------------------------------------------------------------------

    def latest_execution(
        self, session: Session, job_instance_id: UUID,
    ) -> JobExecutionModel | None:
        return session.execute(
            select(JobExecutionModel)
            .where(JobExecutionModel.job_instance_id == job_instance_id)
            .order_by(JobExecutionModel.run_id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def create_job_execution(
        self,
        session: Session,
        job_instance_id: UUID,
        run_id: int,
        started_at: datetime,
    ) -> JobExecutionModel:
        model = JobExecutionModel(
            job_instance_id=job_instance_id,
            run_id=run_id,
            status=ExecutionStatus.STARTING.value,
            started_at=started_at,
        )
        session.add(model)
        session.flush()
        return model

    def get_job_execution(
        self, session: Session, job_execution_id: UUID,
    ) -> JobExecutionModel | None:
        return session.get(JobExecutionModel, job_execution_id)

    def list_job_executions(
        self, session: Session, job_name: str,
    ) -> list[JobExecutionModel]:
        return list(
            session.execute(
                select(JobExecutionModel)
                .join(JobInstanceModel)
                .where(JobInstanceModel.job_name == job_name)
                .order_by(JobExecutionModel.started_at, JobExecutionModel.run_id)
            ).scalars().all()
        )

    # -------------------------------------------------------------------------
    # Step executions
    # -------------------------------------------------------------------------

    def latest_step_execution(
        self, session: Session, job_instance_id: UUID, step_name: str,
    ) -> StepExecutionModel | None:
        """Most recent execution of ``step_name`` across runs of the instance."""
        return session.execute(
            select(StepExecutionModel)
            .join(JobExecutionModel)
            .where(
                JobExecutionModel.job_instance_id == job_instance_id,
                StepExecutionModel.step_name == step_name,
            )
            .order_by(JobExecutionModel.run_id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def create_step_execution(
        self,
        session: Session,
        job_execution_id: UUID,
        step_name: str,
        step_index: int,
        committed_position: int,
    ) -> StepExecutionModel:
        model = StepExecutionModel(
            job_execution_id=job_execution_id,
            step_name=step_name,
            step_index=step_index,
            status=ExecutionStatus.STARTING.value,
            read_count=0,
            write_count=0,
            filter_count=0,
            skip_count=0,
            commit_count=0,
            rollback_count=0,
            committed_position=committed_position,
        )
        session.add(model)
        session.flush()
        return model

    def get_step_execution(
        self, session: Session, step_execution_id: UUID,
    ) -> StepExecutionModel | None:
        return session.get(StepExecutionModel, step_execution_id)

    def add_chunk_counts(
        self, session: Session, step_execution_id: UUID, chunk: Chunk,
    ) -> bool:
        """Add a committed chunk's counters; False if the step is not STARTED."""
        result = session.execute(
            update(StepExecutionModel)
            .where(
                StepExecutionModel.id == step_execution_id,
                StepExecutionModel.status == ExecutionStatus.STARTED.value,
            )
            .values(
                read_count=StepExecutionModel.read_count + chunk.read_count,
                write_count=StepExecutionModel.write_count + len(chunk.items),
                filter_count=StepExecutionModel.filter_count + chunk.filter_count,
                skip_count=StepExecutionModel.skip_count + chunk.skip_count,
                commit_count=StepExecutionModel.commit_count + 1,
                committed_position=chunk.end_position,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def add_rollback(self, session: Session, step_execution_id: UUID) -> None:
        session.execute(
            update(StepExecutionModel)
            .where(StepExecutionModel.id == step_execution_id)
            .values(rollback_count=StepExecutionModel.rollback_count + 1)
            .execution_options(synchronize_session=False)
        )

    # -------------------------------------------------------------------------
    # Compare-and-set status
    # -------------------------------------------------------------------------

    def compare_and_set_status(
        self,
        session: Session,
        model_cls: type[JobExecutionModel] | type[StepExecutionModel],
        row_id: UUID,
        expected: ExecutionStatus,
        new: ExecutionStatus,
        **values: Any,
    ) -> bool:
        """Move ``row_id`` from ``expected`` to ``new``; False if it was not ``expected``."""
        result = session.execute(
            update(model_cls)
            .where(
                model_cls.id == row_id,
                model_cls.status == expected.value,
            )
            .values(status=new.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
