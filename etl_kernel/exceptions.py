"""
Typed Exception Hierarchy for the ETL Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The chunk engine decides what to do with a failure by its CLASS, not by its
message: a record-level error is skipped or escalated according to the
step's failure policy, a sink error rolls the chunk back and is retried once,
and an execution-state error aborts the run immediately.  Matching on
message text would make that policy fragile.

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, log-safe)
  3. Carries structured DATA as attributes (not just a message string)

Example:
    try:
        launcher.run(job, parameters)
    except RestartViolationError as e:
        log.warning("already complete", extra={"job_key": e.job_key})

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from EtlKernelError:

    EtlKernelError (base)
    |
    +-- RecordError
    |   +-- SourceError
    |   +-- TransformError
    |
    +-- ChunkError
    |   +-- SinkError
    |   |   +-- SinkTimeoutError
    |   +-- SkipLimitExceededError
    |
    +-- ExecutionStateError
    |   +-- TrackerPersistenceError
    |   +-- RestartViolationError
    |   +-- JobExecutionAlreadyRunningError
    |   +-- InvalidStatusTransitionError
    |   +-- JobExecutionNotFoundError
    |
    +-- JobDefinitionError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Record          | SOURCE_ERROR                  | Malformed or unreadable source record
                | TRANSFORM_ERROR               | Transformer failed for one record
----------------|-------------------------------|---------------------------------------
Chunk           | SINK_ERROR                    | Write or commit of a chunk failed
                | SINK_TIMEOUT                  | Sink call exceeded flush_timeout
                | SKIP_LIMIT_EXCEEDED           | Too many skipped records in a step
----------------|-------------------------------|---------------------------------------
Execution state | TRACKER_PERSISTENCE_ERROR     | Execution-state store unavailable
                | JOB_INSTANCE_ALREADY_COMPLETE | Re-run of a COMPLETED JobInstance
                | JOB_EXECUTION_ALREADY_RUNNING | Latest execution still running
                | INVALID_STATUS_TRANSITION     | Non-monotonic status change
                | JOB_EXECUTION_NOT_FOUND       | Unknown job execution id
----------------|-------------------------------|---------------------------------------
Definition      | INVALID_JOB_DEFINITION        | Bad chunk size, duplicate step names

===============================================================================
PROPAGATION
===============================================================================

    RecordError          -> per-step FailurePolicy: skip (counted) or fatal
    SinkError            -> rollback, one immediate retry, then step FAILED
    ExecutionStateError  -> never retried locally; propagates to the caller
===============================================================================
"""

from typing import Any


class EtlKernelError(Exception):
    """
    Base exception for all ETL kernel errors.

    All subclasses must have a `code` class attribute
    for machine-readable error identification.
    """

    code: str = "ETL_KERNEL_ERROR"


# Record-level exceptions


class RecordError(EtlKernelError):
    """Base exception for errors tied to a single source record."""

    code: str = "RECORD_ERROR"


class SourceError(RecordError):
    """
    A source record could not be read or decoded.

    `position` is the 1-based line (or item) number in the resource, or
    None when the failure happened before any record was read (e.g. the
    file does not exist).
    """

    code: str = "SOURCE_ERROR"

    def __init__(self, resource: str, position: int | None, reason: str):
        self.resource = resource
        self.position = position
        self.reason = reason
        where = f"{resource}:{position}" if position is not None else resource
        super().__init__(f"Cannot read record at {where}: {reason}")


class TransformError(RecordError):
    """The transformer failed for one record."""

    code: str = "TRANSFORM_ERROR"

    def __init__(self, record: Any, cause: BaseException | str):
        self.record = record
        self.cause = cause
        super().__init__(f"Transform failed for {record!r}: {cause}")


# Chunk-level exceptions


class ChunkError(EtlKernelError):
    """Base exception for failures that affect a whole chunk."""

    code: str = "CHUNK_ERROR"


class SinkError(ChunkError):
    """
    Writing or committing a chunk failed.

    The enclosing transaction is rolled back in full; no record of the
    chunk is visible.
    """

    code: str = "SINK_ERROR"

    def __init__(
        self,
        reason: str,
        chunk_index: int | None = None,
        cause: BaseException | None = None,
    ):
        self.reason = reason
        self.chunk_index = chunk_index
        self.cause = cause
        prefix = f"Chunk {chunk_index}: " if chunk_index is not None else ""
        super().__init__(f"{prefix}{reason}")


class SinkTimeoutError(SinkError):
    """The sink call took longer than the step's flush timeout."""

    code: str = "SINK_TIMEOUT"

    def __init__(self, elapsed: float, timeout: float, chunk_index: int | None = None):
        self.elapsed = elapsed
        self.timeout = timeout
        super().__init__(
            f"Sink write took {elapsed:.3f}s, exceeding timeout of {timeout:.3f}s",
            chunk_index=chunk_index,
        )


class SkipLimitExceededError(ChunkError):
    """A step skipped more records than its failure policy allows."""

    code: str = "SKIP_LIMIT_EXCEEDED"

    def __init__(self, step_name: str, skip_limit: int, last_error: BaseException):
        self.step_name = step_name
        self.skip_limit = skip_limit
        self.last_error = last_error
        super().__init__(
            f"Step {step_name!r} exceeded skip limit of {skip_limit}: {last_error}"
        )


# Execution-state exceptions


class ExecutionStateError(EtlKernelError):
    """Base exception for job/step execution bookkeeping errors."""

    code: str = "EXECUTION_STATE_ERROR"


class TrackerPersistenceError(ExecutionStateError):
    """
    The execution-state store could not be read or written.

    Always fatal: never retried locally.
    """

    code: str = "TRACKER_PERSISTENCE_ERROR"

    def __init__(self, operation: str, cause: BaseException | str):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Execution-state store failed during {operation}: {cause}")


class RestartViolationError(ExecutionStateError):
    """
    The JobInstance already has a COMPLETED execution.

    Re-running it with identical identifying parameters is refused.
    """

    code: str = "JOB_INSTANCE_ALREADY_COMPLETE"

    def __init__(self, job_name: str, job_key: str, job_instance_id: str):
        self.job_name = job_name
        self.job_key = job_key
        self.job_instance_id = job_instance_id
        super().__init__(
            f"Job instance already complete: {job_name} ({job_key[:12]}); "
            f"change the identifying parameters to run it again"
        )


class JobExecutionAlreadyRunningError(ExecutionStateError):
    """The latest execution of the JobInstance has not finished."""

    code: str = "JOB_EXECUTION_ALREADY_RUNNING"

    def __init__(self, job_name: str, job_execution_id: str, run_id: int):
        self.job_name = job_name
        self.job_execution_id = job_execution_id
        self.run_id = run_id
        super().__init__(
            f"Job {job_name} already has a running execution "
            f"{job_execution_id} (run {run_id})"
        )


class InvalidStatusTransitionError(ExecutionStateError):
    """A status change would move an execution backwards."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, entity: str, current_status: str, requested_status: str):
        self.entity = entity
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Cannot move {entity} from {current_status} to {requested_status}"
        )


class JobExecutionNotFoundError(ExecutionStateError):
    """Job execution with given ID was not found."""

    code: str = "JOB_EXECUTION_NOT_FOUND"

    def __init__(self, job_execution_id: str):
        self.job_execution_id = job_execution_id
        super().__init__(f"Job execution not found: {job_execution_id}")


# Definition exceptions


class JobDefinitionError(EtlKernelError):
    """A job or step definition is invalid."""

    code: str = "INVALID_JOB_DEFINITION"

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid definition {name!r}: {reason}")
