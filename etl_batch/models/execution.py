"""
ORM models for job/step execution-state persistence.

Contract:
    JobInstanceModel, JobExecutionModel and StepExecutionModel persist the
    identity of a job, each run of it, and each step of each run.  Models
    expose ``to_dto()`` to build the frozen snapshots in
    ``etl_batch.domain.types``.

Architecture: etl_batch/models. Imports from etl_kernel.db.base only.

Invariants enforced:
    - (job_name, job_key) is UNIQUE: one JobInstance per identity.
    - (job_instance_id, run_id) is UNIQUE: run ids never repeat per instance.
    - ``last_run_id`` on the instance row is the locked counter that run
      ids are allocated from.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from etl_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from etl_batch.domain.types import JobExecution, JobInstance, StepExecution


class JobInstanceModel(TrackedBase):
    """Persistent job identity (name + hash of identifying parameters)."""

    __tablename__ = "batch_job_instances"

    __table_args__ = (
        UniqueConstraint("job_name", "job_key", name="uq_batch_job_instances_key"),
    )

    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    parameters: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    last_run_id: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    executions: Mapped[list["JobExecutionModel"]] = relationship(
        "JobExecutionModel",
        back_populates="job_instance",
        order_by="JobExecutionModel.run_id",
    )

    def to_dto(self) -> JobInstance:
        from etl_batch.domain.types import JobInstance

        return JobInstance(
            job_instance_id=self.id,
            job_name=self.job_name,
            job_key=self.job_key,
            parameters=dict(self.parameters or {}),
        )


class JobExecutionModel(TrackedBase):
    """One run of a JobInstance."""

    __tablename__ = "batch_job_executions"

    __table_args__ = (
        UniqueConstraint(
            "job_instance_id", "run_id", name="uq_batch_job_executions_run",
        ),
        Index("ix_batch_job_executions_status", "status"),
    )

    job_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    run_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    exit_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    job_instance: Mapped["JobInstanceModel"] = relationship(
        "JobInstanceModel",
        back_populates="executions",
    )
    step_executions: Mapped[list["StepExecutionModel"]] = relationship(
        "StepExecutionModel",
        back_populates="job_execution",
        order_by="StepExecutionModel.step_index",
    )

    def to_dto(self) -> JobExecution:
        from etl_batch.domain.types import ExecutionStatus, JobExecution

        return JobExecution(
            job_execution_id=self.id,
            job_instance=self.job_instance.to_dto(),
            run_id=self.run_id,
            status=ExecutionStatus(self.status),
            step_executions=tuple(s.to_dto() for s in self.step_executions),
            started_at=self.started_at,
            ended_at=self.ended_at,
            exit_message=self.exit_message,
        )


class StepExecutionModel(TrackedBase):
    """One step of one job run, with committed-work counters."""

    __tablename__ = "batch_step_executions"

    __table_args__ = (
        Index("ix_batch_step_executions_job", "job_execution_id", "step_name"),
    )

    job_execution_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_executions.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(200), nullable=False)
    step_index: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    read_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    write_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    filter_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    skip_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    commit_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    rollback_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    committed_position: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    exit_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    job_execution: Mapped["JobExecutionModel"] = relationship(
        "JobExecutionModel",
        back_populates="step_executions",
    )

    def to_dto(self) -> StepExecution:
        from etl_batch.domain.types import ExecutionStatus, StepExecution

        return StepExecution(
            step_execution_id=self.id,
            job_execution_id=self.job_execution_id,
            step_name=self.step_name,
            status=ExecutionStatus(self.status),
            read_count=self.read_count,
            write_count=self.write_count,
            filter_count=self.filter_count,
            skip_count=self.skip_count,
            commit_count=self.commit_count,
            rollback_count=self.rollback_count,
            committed_position=self.committed_position,
            started_at=self.started_at,
            ended_at=self.ended_at,
            exit_message=self.exit_message,
        )
