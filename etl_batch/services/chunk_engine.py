"""
ChunkEngine -- transaction-per-chunk read/transform/write loop.

Contract:
    ``execute()`` runs one ChunkStep to a terminal status: it pulls records
    from the step's source, transforms them, buffers up to ``chunk_size``
    results and flushes each chunk through the sink inside one database
    transaction that also carries the step's counter update.

Architecture: etl_batch/services.  Drives a StepExecutionTracker; never
    touches job-level state.

Chunk states:
    FILLING -> FLUSHING -> COMMITTED
                        -> ROLLED_BACK -> FLUSHING (retry) | step FAILED

Invariants enforced:
    - A chunk is written in full or not at all; its records and its
      counters commit in the same transaction.
    - Records are read, transformed and written in source order.
    - The sink is called once per flush attempt; a chunk with no records
      (everything filtered or skipped) commits counters without a sink call.
    - A failed flush is retried ``policy.sink_retry_limit`` times (default
      once) before the step FAILS.
    - Cancellation is only honoured between chunks, never mid-flush.

Failure modes:
    - RecordError: per FailurePolicy, skipped (counted) or step FAILED.
    - SkipLimitExceededError: step FAILED.
    - SinkError / SinkTimeoutError: rollback, retry, then step FAILED.
    - ExecutionStateError: propagates to the caller untouched.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from sqlalchemy.orm import Session

from etl_kernel.exceptions import (
    ChunkError,
    ExecutionStateError,
    RecordError,
    SinkError,
    SinkTimeoutError,
    SkipLimitExceededError,
    SourceError,
    TransformError,
)
from etl_kernel.logging_config import LogContext, get_logger

from etl_batch.adapters.base import RecordSource
from etl_batch.definition import ChunkStep
from etl_batch.domain.chunk import Chunk, ChunkState
from etl_batch.domain.policy import ErrorAction
from etl_batch.domain.types import Record, StepExecution
from etl_batch.services.step_tracker import StepExecutionTracker

logger = get_logger("batch.chunk_engine")


class ChunkEngine:
    """Runs one ChunkStep for one StepExecution."""

    def __init__(
        self,
        step: ChunkStep,
        tracker: StepExecutionTracker,
        session_factory: Callable[[], Session],
        stop_event: threading.Event | None = None,
    ):
        self._step = step
        self._policy = step.policy
        self._tracker = tracker
        self._session_factory = session_factory
        self._stop_event = stop_event

    def execute(self) -> StepExecution:
        """Run the step to COMPLETED, FAILED or STOPPED and return its snapshot.

        Raises:
            ExecutionStateError: Execution state could not be persisted.
        """
        with LogContext.bind(step_name=self._step.name):
            self._run()
            return self._tracker.snapshot()

    # -------------------------------------------------------------------------
    # Step loop
    # -------------------------------------------------------------------------

    def _run(self) -> None:
        tracker = self._tracker
        source = self._step.source_factory()
        try:
            source.open(tracker.committed_position)
        except SourceError as exc:
            tracker.fail(exc)
            return

        try:
            tracker.mark_started()
            chunk_index = 0
            while True:
                if self._stop_requested():
                    tracker.stop()
                    return
                chunk = Chunk(
                    index=chunk_index,
                    size=self._step.chunk_size,
                    start_position=source.position,
                )
                self._fill(source, chunk)
                if chunk.has_work:
                    self._flush(chunk)
                if chunk.end_of_input:
                    tracker.complete()
                    return
                chunk_index += 1
        except (RecordError, ChunkError) as exc:
            tracker.fail(exc)
        finally:
            source.close()

    def _stop_requested(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    # -------------------------------------------------------------------------
    # FILLING
    # -------------------------------------------------------------------------

    def _fill(self, source: RecordSource, chunk: Chunk) -> None:
        try:
            while not chunk.is_full:
                try:
                    record = source.read()
                except SourceError as exc:
                    self._skip_or_raise(chunk, exc)
                    continue
                if record is None:
                    chunk.end_of_input = True
                    return

                chunk.read_count += 1
                try:
                    result = self._transform(record)
                except TransformError as exc:
                    self._skip_or_raise(chunk, exc)
                    continue

                if result is None:
                    chunk.filter_count += 1
                else:
                    chunk.items.append(result)
        finally:
            chunk.consumed = source.position - chunk.start_position

    def _transform(self, record: Record) -> Record | None:
        transformer = self._step.transformer
        if transformer is None:
            return record
        try:
            return transformer.transform(record)
        except TransformError:
            raise
        except Exception as exc:
            raise TransformError(record, exc) from exc

    def _skip_or_raise(self, chunk: Chunk, error: RecordError) -> None:
        skips_so_far = self._tracker.skip_count + chunk.skip_count
        if self._policy.can_skip(error, skips_so_far):
            chunk.skip_count += 1
            logger.warning(
                "record_skipped",
                extra={
                    "chunk_index": chunk.index,
                    "error_type": type(error).__name__,
                    "error_message": str(error),
                    "skip_count": skips_so_far + 1,
                },
            )
            return
        if self._policy.action_for(error) == ErrorAction.SKIP:
            raise SkipLimitExceededError(
                self._step.name, self._policy.skip_limit, error,
            ) from error
        raise error

    # -------------------------------------------------------------------------
    # FLUSHING
    # -------------------------------------------------------------------------

    def _flush(self, chunk: Chunk) -> None:
        while True:
            chunk.attempts += 1
            chunk.state = ChunkState.FLUSHING
            try:
                self._write_in_transaction(chunk)
            except SinkError as exc:
                chunk.state = ChunkState.ROLLED_BACK
                self._tracker.record_rollback(chunk, exc)
                if chunk.attempts >= self._policy.max_flush_attempts:
                    raise
                continue

            chunk.state = ChunkState.COMMITTED
            self._tracker.chunk_committed(chunk)
            logger.info(
                "chunk_committed",
                extra={
                    "chunk_index": chunk.index,
                    "item_count": len(chunk.items),
                    "attempt": chunk.attempts,
                    "committed_position": chunk.end_position,
                },
            )
            return

    def _write_in_transaction(self, chunk: Chunk) -> None:
        """Write the chunk and its counters in one transaction.

        Anything other than an execution-state error becomes a SinkError so
        that the caller can roll back and retry uniformly.
        """
        session = self._session_factory()
        try:
            with session.begin():
                if chunk.items:
                    self._write_with_timeout(chunk, session)
                self._tracker.record_chunk(session, chunk)
        except SinkError as exc:
            if exc.chunk_index is None:
                exc.chunk_index = chunk.index
            raise
        except ExecutionStateError:
            raise
        except Exception as exc:
            raise SinkError(
                f"{type(exc).__name__}: {exc}", chunk_index=chunk.index, cause=exc,
            ) from exc
        finally:
            session.close()

    def _write_with_timeout(self, chunk: Chunk, session: Session) -> None:
        started = time.monotonic()
        self._step.sink.write(tuple(chunk.items), session)
        elapsed = time.monotonic() - started
        timeout = self._policy.flush_timeout
        if timeout is not None and elapsed > timeout:
            raise SinkTimeoutError(elapsed, timeout, chunk_index=chunk.index)
