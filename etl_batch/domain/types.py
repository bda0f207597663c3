"""
etl_batch.domain.types -- Pure frozen dataclasses for the batch engine.

ZERO I/O.

Frozen dataclasses with enum status fields and tuples for immutable
collections.  ``JobExecution`` / ``StepExecution`` are snapshots: the
mutable state lives in the execution-state store and is owned by the
trackers while a run is in flight.

Invariants enforced:
    - Records are immutable; transformers produce new values.
    - Execution status transitions are monotonic (see ``can_transition``).
    - A job is COMPLETED only if every step is COMPLETED, FAILED if any
      step FAILED (see ``aggregate_status``).
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class ExecutionStatus(str, Enum):
    """Job- and step-level lifecycle status."""

    STARTING = "starting"  # Created, no chunk work yet
    STARTED = "started"  # Chunk loop running
    COMPLETED = "completed"  # Source exhausted, every chunk committed
    FAILED = "failed"  # Unrecoverable error; committed chunks stay visible
    STOPPED = "stopped"  # Cancelled between chunks

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def is_restartable(self) -> bool:
        return self in (ExecutionStatus.FAILED, ExecutionStatus.STOPPED)


_TERMINAL = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.STOPPED}
)

_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.STARTING: frozenset(
        {ExecutionStatus.STARTED, ExecutionStatus.FAILED, ExecutionStatus.STOPPED}
    ),
    ExecutionStatus.STARTED: _TERMINAL,
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.STOPPED: frozenset(),
}


def can_transition(current: ExecutionStatus, requested: ExecutionStatus) -> bool:
    """True if ``current -> requested`` moves the execution forward."""
    return requested in _TRANSITIONS[current]


def aggregate_status(step_statuses: Iterable[ExecutionStatus]) -> ExecutionStatus:
    """Derive a job status from its step statuses.

    FAILED wins over STOPPED, which wins over anything unfinished.  An empty
    iterable (every step already completed in an earlier run) is COMPLETED.
    """
    statuses = tuple(step_statuses)
    if ExecutionStatus.FAILED in statuses:
        return ExecutionStatus.FAILED
    if ExecutionStatus.STOPPED in statuses:
        return ExecutionStatus.STOPPED
    if all(s == ExecutionStatus.COMPLETED for s in statuses):
        return ExecutionStatus.COMPLETED
    return ExecutionStatus.FAILED


# =============================================================================
# Record
# =============================================================================


@dataclass(frozen=True)
class Record:
    """Immutable record with a fixed set of named fields.

    Identity is positional: ``position`` is the record's 1-based offset in
    its source and is excluded from equality, so a transformed record
    compares equal to an expected value regardless of where it came from.
    """

    fields: tuple[str, ...]
    values: tuple[Any, ...]
    position: int | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "values", tuple(self.values))
        if len(self.fields) != len(self.values):
            raise ValueError(
                f"Record has {len(self.fields)} fields but {len(self.values)} values"
            )
        if len(set(self.fields)) != len(self.fields):
            raise ValueError(f"Duplicate field names in {self.fields}")

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, Any], position: int | None = None,
    ) -> Record:
        return cls(tuple(data.keys()), tuple(data.values()), position)

    def __getitem__(self, name: str) -> Any:
        try:
            return self.values[self.fields.index(name)]
        except ValueError:
            raise KeyError(name) from None

    def get(self, name: str, default: Any = None) -> Any:
        try:
            return self[name]
        except KeyError:
            return default

    def as_dict(self) -> dict[str, Any]:
        return dict(zip(self.fields, self.values))

    def replace(self, **changes: Any) -> Record:
        """Return a new record with some field values replaced."""
        unknown = set(changes) - set(self.fields)
        if unknown:
            raise KeyError(f"Unknown fields: {sorted(unknown)}")
        values = tuple(changes.get(f, v) for f, v in zip(self.fields, self.values))
        return Record(self.fields, values, self.position)

    def __repr__(self) -> str:
        body = ", ".join(f"{f}={v!r}" for f, v in zip(self.fields, self.values))
        return f"Record({body})"


# =============================================================================
# Job identity
# =============================================================================


def compute_job_key(parameters: Mapping[str, Any]) -> str:
    """Deterministic SHA-256 over the canonical JSON of identifying parameters."""
    canonical = json.dumps(
        {str(k): parameters[k] for k in sorted(parameters, key=str)},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class JobInstance:
    """A job definition plus its identifying parameters.

    Stable across re-runs; never mutated after creation.
    """

    job_instance_id: UUID
    job_name: str
    job_key: str
    parameters: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Execution snapshots
# =============================================================================


@dataclass(frozen=True)
class StepExecution:
    """Immutable snapshot of one step's execution within one job run.

    Counters reflect committed chunks only.  ``committed_position`` is the
    number of raw source records consumed through the last committed chunk,
    cumulative across restarts of the same JobInstance.
    """

    step_execution_id: UUID
    job_execution_id: UUID
    step_name: str
    status: ExecutionStatus
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    committed_position: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_message: str | None = None


@dataclass(frozen=True)
class JobExecution:
    """Immutable snapshot of one run of a JobInstance.

    ``run_id`` is 1 for the first execution of an instance and increases
    by one for every restart.
    """

    job_execution_id: UUID
    job_instance: JobInstance
    run_id: int
    status: ExecutionStatus
    step_executions: tuple[StepExecution, ...] = ()
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_message: str | None = None

    @property
    def job_name(self) -> str:
        return self.job_instance.job_name

    def step(self, step_name: str) -> StepExecution:
        for step in self.step_executions:
            if step.step_name == step_name:
                return step
        raise KeyError(step_name)

    @property
    def write_count(self) -> int:
        return sum(s.write_count for s in self.step_executions)
