"""
Job and step definitions.

Contract:
    ``ChunkStep`` names the three stages of one chunk-oriented step plus its
    chunk size and failure policy.  ``Job`` is an ordered list of steps and
    an optional completion listener.  Both are immutable and validated at
    construction.

Architecture: etl_batch.  Pure wiring; no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from etl_kernel.exceptions import JobDefinitionError

from etl_batch.adapters.base import RecordSink, RecordSource, RecordTransformer
from etl_batch.domain.policy import FailurePolicy

if TYPE_CHECKING:
    from etl_batch.listeners import JobCompletionListener


@dataclass(frozen=True)
class ChunkStep:
    """One chunk-oriented step.

    ``source_factory`` is called once per run: sources are single-use.
    """

    name: str
    source_factory: Callable[[], RecordSource]
    sink: RecordSink
    transformer: RecordTransformer | None = None
    chunk_size: int = 10
    policy: FailurePolicy = field(default_factory=FailurePolicy)

    def __post_init__(self) -> None:
        if not self.name:
            raise JobDefinitionError(self.name, "step name must not be empty")
        if self.chunk_size < 1:
            raise JobDefinitionError(
                self.name, f"chunk_size must be >= 1, got {self.chunk_size}",
            )


@dataclass(frozen=True)
class Job:
    """Named, ordered sequence of steps run one after another."""

    name: str
    steps: tuple[ChunkStep, ...]
    listener: JobCompletionListener | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.name:
            raise JobDefinitionError(self.name, "job name must not be empty")
        if not self.steps:
            raise JobDefinitionError(self.name, "a job needs at least one step")
        names = [s.name for s in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise JobDefinitionError(
                self.name, f"duplicate step names: {', '.join(duplicates)}",
            )
