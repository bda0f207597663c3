"""
Tests for etl_batch.services.chunk_engine.

Validates the chunk loop end to end through JobLauncher: write-call counts
and batch sizes, ordering, per-chunk atomicity, flush retry, skip/fatal
record policy, flush timeout and cancellation between chunks.

Uses a file-backed SQLite database per test (no PostgreSQL required).
"""

import math
import threading
import time

import pytest

from etl_kernel.exceptions import SinkError, TransformError

from etl_batch.adapters.memory_source import IterableSource
from etl_batch.adapters.transformers import FunctionTransformer
from etl_batch.definition import ChunkStep, Job
from etl_batch.domain.policy import ErrorAction, FailurePolicy
from etl_batch.domain.types import ExecutionStatus, Record
from etl_batch.services.chunk_engine import ChunkEngine
from etl_batch.services.job_tracker import JobExecutionTracker
from tests.conftest import PEOPLE, PEOPLE_FIELDS, RecordingSink, people_step

UPPER_PEOPLE = [("JILL", "DOE"), ("JOE", "DOE"), ("JUSTIN", "DOE"), ("JANE", "DOE"), ("JOHN", "DOE")]


def _job(step: ChunkStep, listener=None) -> Job:
    return Job(name="import_people", steps=(step,), listener=listener)


# =============================================================================
# Happy path
# =============================================================================


class TestChunking:
    def test_five_records_chunk_size_ten(self, launcher, people_rows):
        sink = RecordingSink()
        execution = launcher.run(_job(people_step(sink, chunk_size=10)))

        assert sink.batch_sizes == [5]
        assert sink.written == UPPER_PEOPLE
        assert people_rows() == UPPER_PEOPLE
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.run_id == 1

        step = execution.step("load_people")
        assert step.status == ExecutionStatus.COMPLETED
        assert step.read_count == 5
        assert step.write_count == 5
        assert step.commit_count == 1
        assert step.skip_count == 0
        assert step.rollback_count == 0
        assert step.committed_position == 5

    def test_five_records_chunk_size_two(self, launcher, people_rows):
        sink = RecordingSink()
        execution = launcher.run(_job(people_step(sink, chunk_size=2)))

        assert sink.batch_sizes == [2, 2, 1]
        assert [[r.values for r in call] for call in sink.calls] == [
            UPPER_PEOPLE[0:2], UPPER_PEOPLE[2:4], UPPER_PEOPLE[4:5],
        ]
        assert people_rows() == UPPER_PEOPLE
        assert execution.step("load_people").commit_count == 3

    @pytest.mark.parametrize("count", [0, 1, 4, 6, 7])
    @pytest.mark.parametrize("chunk_size", [1, 3, 5])
    def test_write_calls_equal_ceiling(self, launcher, people_rows, count, chunk_size):
        rows = [(f"first{i}", f"last{i}") for i in range(count)]
        sink = RecordingSink()
        execution = launcher.run(_job(people_step(sink, rows=rows, chunk_size=chunk_size)))

        assert len(sink.calls) == math.ceil(count / chunk_size)
        assert len(people_rows()) == count
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.write_count == count

    def test_order_preserved_across_chunks(self, launcher, people_rows):
        rows = [(f"n{i:02d}", "x") for i in range(23)]
        launcher.run(_job(people_step(RecordingSink(), rows=rows, chunk_size=4)))
        assert people_rows() == [(f"N{i:02d}", "X") for i in range(23)]

    def test_filtered_records_are_counted_not_written(self, launcher, people_rows):
        drop_joe = FunctionTransformer(
            lambda r: None if r["first_name"].startswith("Jo") else r,
        )
        sink = RecordingSink()
        execution = launcher.run(
            _job(people_step(sink, chunk_size=2, transformer=drop_joe)),
        )

        step = execution.step("load_people")
        assert people_rows() == [("Jill", "Doe"), ("Justin", "Doe"), ("Jane", "Doe")]
        assert step.read_count == 5
        assert step.filter_count == 2
        assert step.write_count == 3
        assert step.read_count >= step.write_count + step.filter_count

    def test_chunk_of_only_filtered_records_skips_sink(self, launcher, people_rows):
        drop_all = FunctionTransformer(lambda r: None)
        sink = RecordingSink()
        execution = launcher.run(_job(people_step(sink, chunk_size=2, transformer=drop_all)))

        assert sink.calls == []
        assert people_rows() == []
        step = execution.step("load_people")
        assert step.status == ExecutionStatus.COMPLETED
        assert step.filter_count == 5
        assert step.committed_position == 5

    def test_chunk_committed_logged(self, launcher, captured_logs):
        launcher.run(_job(people_step(RecordingSink(), chunk_size=2)))
        committed = [r for r in captured_logs() if r["message"] == "chunk_committed"]
        assert [r["chunk_index"] for r in committed] == [0, 1, 2]
        assert all(r["step_name"] == "load_people" for r in committed)
        assert all(r["job_name"] == "import_people" for r in committed)


# =============================================================================
# Flush failure and retry
# =============================================================================


class TestFlushRetry:
    def test_single_failure_is_retried(self, launcher, people_rows):
        sink = RecordingSink(fail_on=[2])
        execution = launcher.run(_job(people_step(sink, chunk_size=2)))

        assert sink.batch_sizes == [2, 2, 2, 1]
        assert people_rows() == UPPER_PEOPLE
        step = execution.step("load_people")
        assert execution.status == ExecutionStatus.COMPLETED
        assert step.rollback_count == 1
        assert step.commit_count == 3
        assert step.write_count == 5

    @pytest.mark.parametrize("failing_chunk", [1, 2, 3])
    def test_double_failure_leaves_only_prior_chunks(
        self, launcher, people_rows, failing_chunk,
    ):
        chunk_size = 2
        # chunk j is written by calls j and j + 1 (first attempt and retry)
        sink = RecordingSink(fail_on=[failing_chunk, failing_chunk + 1])
        execution = launcher.run(_job(people_step(sink, chunk_size=chunk_size)))

        committed = (failing_chunk - 1) * chunk_size
        assert people_rows() == UPPER_PEOPLE[:committed]
        assert execution.status == ExecutionStatus.FAILED
        step = execution.step("load_people")
        assert step.status == ExecutionStatus.FAILED
        assert step.commit_count == failing_chunk - 1
        assert step.write_count == committed
        assert step.rollback_count == 2
        assert step.committed_position == committed
        assert "SinkError" in step.exit_message

    def test_retry_limit_zero_fails_immediately(self, launcher, people_rows):
        sink = RecordingSink(fail_on=[1])
        policy = FailurePolicy(sink_retry_limit=0)
        execution = launcher.run(_job(people_step(sink, policy=policy)))

        assert len(sink.calls) == 1
        assert people_rows() == []
        assert execution.status == ExecutionStatus.FAILED

    def test_unexpected_sink_exception_wrapped(self, launcher, people_rows):
        class BrokenSink:
            def write(self, records, session):
                raise RuntimeError("connection reset")

        execution = launcher.run(_job(people_step(BrokenSink())))
        step = execution.step("load_people")
        assert step.status == ExecutionStatus.FAILED
        assert step.rollback_count == 2
        assert "connection reset" in step.exit_message

    def test_rollback_logged(self, launcher, captured_logs):
        launcher.run(_job(people_step(RecordingSink(fail_on=[1]), chunk_size=2)))
        rolled_back = [r for r in captured_logs() if r["message"] == "chunk_rolled_back"]
        assert len(rolled_back) == 1
        assert rolled_back[0]["chunk_index"] == 0
        assert rolled_back[0]["attempt"] == 1


class TestFlushTimeout:
    def test_slow_sink_times_out_and_rolls_back(self, launcher, people_rows):
        class SlowSink(RecordingSink):
            def write(self, records, session):
                super().write(records, session)
                time.sleep(0.05)

        sink = SlowSink()
        policy = FailurePolicy(flush_timeout=0.001)
        execution = launcher.run(_job(people_step(sink, policy=policy)))

        assert len(sink.calls) == 2
        assert people_rows() == []
        step = execution.step("load_people")
        assert step.status == ExecutionStatus.FAILED
        assert "SinkTimeoutError" in step.exit_message

    def test_fast_sink_within_timeout(self, launcher, people_rows):
        policy = FailurePolicy(flush_timeout=30)
        execution = launcher.run(_job(people_step(RecordingSink(), policy=policy)))
        assert execution.status == ExecutionStatus.COMPLETED
        assert len(people_rows()) == 5


# =============================================================================
# Record-level failure policy
# =============================================================================

BAD_ROWS = [("Jill", "Doe"), ("Joe", "Doe"), ("Justin",), ("Jane", "Doe"), ("John", "Doe")]


class TestRecordErrors:
    def test_source_error_is_fatal_by_default(self, launcher, people_rows):
        sink = RecordingSink()
        execution = launcher.run(_job(people_step(sink, rows=BAD_ROWS, chunk_size=2)))

        # chunk 0 committed; chunk 1 aborted without flushing
        assert sink.batch_sizes == [2]
        assert people_rows() == UPPER_PEOPLE[:2]
        step = execution.step("load_people")
        assert step.status == ExecutionStatus.FAILED
        assert step.read_count == 2
        assert step.committed_position == 2
        assert "SourceError" in step.exit_message

    def test_source_error_skipped(self, launcher, people_rows):
        policy = FailurePolicy(on_source_error=ErrorAction.SKIP, skip_limit=1)
        execution = launcher.run(
            _job(people_step(RecordingSink(), rows=BAD_ROWS, chunk_size=2, policy=policy)),
        )

        assert people_rows() == [("JILL", "DOE"), ("JOE", "DOE"), ("JANE", "DOE"), ("JOHN", "DOE")]
        step = execution.step("load_people")
        assert step.status == ExecutionStatus.COMPLETED
        assert step.skip_count == 1
        assert step.read_count == 4
        assert step.write_count == 4
        assert step.committed_position == 5

    def test_skip_limit_exceeded_fails_step(self, launcher, people_rows):
        rows = [("a", "b"), ("bad",), ("c", "d"), ("bad",), ("e", "f")]
        policy = FailurePolicy(on_source_error=ErrorAction.SKIP, skip_limit=1)
        execution = launcher.run(
            _job(people_step(RecordingSink(), rows=rows, chunk_size=2, policy=policy)),
        )

        step = execution.step("load_people")
        assert step.status == ExecutionStatus.FAILED
        assert "SkipLimitExceededError" in step.exit_message
        # first chunk (a, c with one skip) committed before the second skip
        assert people_rows() == [("A", "B"), ("C", "D")]
        assert step.skip_count == 1

    def test_transform_error_skipped(self, launcher, people_rows):
        def reject_joe(record: Record) -> Record:
            if record["first_name"] == "Joe":
                raise TransformError(record, "Joe is not allowed")
            return record

        policy = FailurePolicy(on_transform_error=ErrorAction.SKIP, skip_limit=5)
        execution = launcher.run(
            _job(people_step(
                RecordingSink(), transformer=FunctionTransformer(reject_joe), policy=policy,
            )),
        )

        assert ("Joe", "Doe") not in people_rows()
        step = execution.step("load_people")
        assert step.skip_count == 1
        assert step.read_count == 5
        assert step.write_count == 4

    def test_untyped_transform_exception_is_fatal(self, launcher, people_rows):
        def explode(record: Record) -> Record:
            raise ZeroDivisionError("bad math")

        execution = launcher.run(
            _job(people_step(RecordingSink(), transformer=FunctionTransformer(explode))),
        )

        step = execution.step("load_people")
        assert step.status == ExecutionStatus.FAILED
        assert step.exit_message.startswith("TransformError")
        assert people_rows() == []

    def test_skipped_record_logged(self, launcher, captured_logs):
        policy = FailurePolicy(on_source_error=ErrorAction.SKIP, skip_limit=1)
        launcher.run(_job(people_step(RecordingSink(), rows=BAD_ROWS, policy=policy)))
        skipped = [r for r in captured_logs() if r["message"] == "record_skipped"]
        assert len(skipped) == 1
        assert skipped[0]["error_type"] == "SourceError"

    def test_source_open_failure_fails_step(self, launcher, tmp_path):
        from etl_batch.adapters.delimited_source import DelimitedFileSource

        step = ChunkStep(
            name="load_people",
            source_factory=lambda: DelimitedFileSource(tmp_path / "missing.csv", PEOPLE_FIELDS),
            sink=RecordingSink(),
        )
        execution = launcher.run(_job(step))
        assert execution.status == ExecutionStatus.FAILED
        assert execution.step("load_people").status == ExecutionStatus.FAILED
        assert "SourceError" in execution.exit_message


# =============================================================================
# Cancellation
# =============================================================================


class TestStop:
    def test_stop_before_first_chunk(self, launcher, people_rows):
        stop = threading.Event()
        stop.set()
        sink = RecordingSink()
        execution = launcher.run(_job(people_step(sink)), stop_event=stop)

        assert sink.calls == []
        assert execution.status == ExecutionStatus.STOPPED
        assert execution.step("load_people").status == ExecutionStatus.STOPPED

    def test_stop_waits_for_in_flight_chunk(self, launcher, people_rows):
        stop = threading.Event()

        class StoppingSink(RecordingSink):
            def write(self, records, session):
                super().write(records, session)
                stop.set()

        execution = launcher.run(
            _job(people_step(StoppingSink(), chunk_size=2)), stop_event=stop,
        )

        assert people_rows() == UPPER_PEOPLE[:2]
        step = execution.step("load_people")
        assert step.status == ExecutionStatus.STOPPED
        assert step.commit_count == 1
        assert step.exit_message == "Stop requested"
        assert execution.status == ExecutionStatus.STOPPED


# =============================================================================
# ChunkEngine used directly
# =============================================================================


class TestChunkEngineDirect:
    def test_execute_returns_step_snapshot(self, session_factory, clock, people_rows):
        tracker = JobExecutionTracker(session_factory, clock)
        execution = tracker.start("direct", {})
        step_tracker = tracker.start_step(execution, "load_people", 0)

        step = ChunkStep(
            name="load_people",
            source_factory=lambda: IterableSource(PEOPLE, PEOPLE_FIELDS),
            sink=RecordingSink(),
            chunk_size=3,
        )
        result = ChunkEngine(step, step_tracker, session_factory).execute()

        assert result.status == ExecutionStatus.COMPLETED
        assert result.commit_count == 2
        assert result.started_at is not None
        assert result.ended_at is not None
        # no transformer: records written unchanged
        assert people_rows() == PEOPLE

    def test_sink_error_chunk_index_filled(self, session_factory, clock):
        tracker = JobExecutionTracker(session_factory, clock)
        execution = tracker.start("direct", {})
        step_tracker = tracker.start_step(execution, "load_people", 0)

        errors = []

        class CapturingSink:
            def write(self, records, session):
                error = SinkError("nope")
                errors.append(error)
                raise error

        step = ChunkStep(
            name="load_people",
            source_factory=lambda: IterableSource(PEOPLE, PEOPLE_FIELDS),
            sink=CapturingSink(),
            chunk_size=2,
        )
        result = ChunkEngine(step, step_tracker, session_factory).execute()

        assert result.status == ExecutionStatus.FAILED
        assert [e.chunk_index for e in errors] == [0, 0]
