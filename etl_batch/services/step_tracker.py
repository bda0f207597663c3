"""
StepExecutionTracker -- owns one StepExecution for the duration of a run.

Contract:
    - ``mark_started()`` / ``complete()`` / ``fail()`` / ``stop()`` apply
      monotonic status transitions, each in its own short transaction.
    - ``record_chunk()`` adds a chunk's counters inside the chunk's own
      transaction; ``chunk_committed()`` updates the in-memory mirror only
      after that transaction commits.
    - ``record_rollback()`` counts a rolled-back flush attempt.
    - ``snapshot()`` returns the durable state as a frozen StepExecution.

Architecture: etl_batch/services.

Invariants enforced:
    - Status transitions are monotonic (no COMPLETED -> STARTED).
    - Counters of a rolled-back chunk never reach the StepExecution.

Failure modes:
    - InvalidStatusTransitionError on a backwards transition.
    - TrackerPersistenceError when the store is unreachable or the row's
      status was changed by another writer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from etl_kernel.domain.clock import Clock
from etl_kernel.exceptions import (
    InvalidStatusTransitionError,
    TrackerPersistenceError,
)
from etl_kernel.logging_config import get_logger

from etl_batch.domain.chunk import Chunk
from etl_batch.domain.types import ExecutionStatus, StepExecution, can_transition
from etl_batch.models.execution import StepExecutionModel
from etl_batch.services.repository import ExecutionRepository, state_transaction

logger = get_logger("batch.step_tracker")


@dataclass
class _CommittedCounts:
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    committed_position: int = 0


class StepExecutionTracker:
    """Status and committed counters of one StepExecution."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        repository: ExecutionRepository,
        clock: Clock,
        step_execution_id: UUID,
        step_name: str,
        start_position: int = 0,
    ):
        self._session_factory = session_factory
        self._repository = repository
        self._clock = clock
        self._step_execution_id = step_execution_id
        self._step_name = step_name
        self._status = ExecutionStatus.STARTING
        self._counts = _CommittedCounts(committed_position=start_position)

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    @property
    def step_execution_id(self) -> UUID:
        return self._step_execution_id

    @property
    def step_name(self) -> str:
        return self._step_name

    @property
    def status(self) -> ExecutionStatus:
        return self._status

    @property
    def committed_position(self) -> int:
        return self._counts.committed_position

    @property
    def skip_count(self) -> int:
        return self._counts.skip_count

    @property
    def write_count(self) -> int:
        return self._counts.write_count

    @property
    def commit_count(self) -> int:
        return self._counts.commit_count

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def mark_started(self) -> None:
        self._transition(ExecutionStatus.STARTED, started_at=self._clock.now())
        logger.info(
            "step_started",
            extra={"start_position": self._counts.committed_position},
        )

    def complete(self) -> None:
        self._transition(ExecutionStatus.COMPLETED, ended_at=self._clock.now())
        logger.info("step_completed", extra=self._counter_extra())

    def fail(self, error: BaseException) -> None:
        self._transition(
            ExecutionStatus.FAILED,
            ended_at=self._clock.now(),
            exit_message=f"{type(error).__name__}: {error}",
        )
        logger.error(
            "step_failed",
            extra={
                **self._counter_extra(),
                "error_type": type(error).__name__,
                "error_code": getattr(error, "code", None),
                "error_message": str(error),
            },
        )

    def stop(self) -> None:
        self._transition(
            ExecutionStatus.STOPPED,
            ended_at=self._clock.now(),
            exit_message="Stop requested",
        )
        logger.warning("step_stopped", extra=self._counter_extra())

    # -------------------------------------------------------------------------
    # Chunk bookkeeping
    # -------------------------------------------------------------------------

    def record_chunk(self, session: Session, chunk: Chunk) -> None:
        """Add ``chunk``'s counters inside the chunk transaction.

        A store failure here is an execution-state failure, not a sink
        failure: it raises TrackerPersistenceError and is never retried.
        """
        try:
            updated = self._repository.add_chunk_counts(
                session, self._step_execution_id, chunk,
            )
        except SQLAlchemyError as exc:
            raise TrackerPersistenceError("record_chunk", str(exc)) from exc
        if not updated:
            raise TrackerPersistenceError(
                "record_chunk",
                f"step execution {self._step_execution_id} is no longer "
                f"{ExecutionStatus.STARTED.value}",
            )

    def chunk_committed(self, chunk: Chunk) -> None:
        """Apply a committed chunk to the in-memory counters."""
        c = self._counts
        c.read_count += chunk.read_count
        c.write_count += len(chunk.items)
        c.filter_count += chunk.filter_count
        c.skip_count += chunk.skip_count
        c.commit_count += 1
        c.committed_position = chunk.end_position

    def record_rollback(self, chunk: Chunk, error: BaseException) -> None:
        with state_transaction(self._session_factory, "record_rollback") as session:
            self._repository.add_rollback(session, self._step_execution_id)
        self._counts.rollback_count += 1
        logger.warning(
            "chunk_rolled_back",
            extra={
                "chunk_index": chunk.index,
                "attempt": chunk.attempts,
                "error_type": type(error).__name__,
                "error_message": str(error),
            },
        )

    def snapshot(self) -> StepExecution:
        with state_transaction(self._session_factory, "snapshot") as session:
            model = self._repository.get_step_execution(
                session, self._step_execution_id,
            )
            if model is None:
                raise TrackerPersistenceError(
                    "snapshot",
                    f"step execution {self._step_execution_id} not found",
                )
            return model.to_dto()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _transition(self, new: ExecutionStatus, **values) -> None:
        if not can_transition(self._status, new):
            raise InvalidStatusTransitionError(
                f"step {self._step_name}", self._status.value, new.value,
            )
        with state_transaction(self._session_factory, f"step_{new.value}") as session:
            changed = self._repository.compare_and_set_status(
                session,
                StepExecutionModel,
                self._step_execution_id,
                self._status,
                new,
                **values,
            )
        if not changed:
            raise TrackerPersistenceError(
                f"step_{new.value}",
                f"step execution {self._step_execution_id} was not "
                f"{self._status.value}",
            )
        self._status = new

    def _counter_extra(self) -> dict[str, int]:
        c = self._counts
        return {
            "read_count": c.read_count,
            "write_count": c.write_count,
            "filter_count": c.filter_count,
            "skip_count": c.skip_count,
            "commit_count": c.commit_count,
            "rollback_count": c.rollback_count,
            "committed_position": c.committed_position,
        }
