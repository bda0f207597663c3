"""
etl_batch.domain.chunk -- In-flight chunk state.

ZERO I/O.  A ``Chunk`` lives for exactly one engine iteration: created
empty, filled from the source, flushed through the sink, then discarded.
Its counters are speculative until the chunk commits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from etl_batch.domain.types import Record


class ChunkState(str, Enum):
    FILLING = "filling"
    FLUSHING = "flushing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Chunk:
    """Up to ``size`` transformed records plus the raw-record accounting
    needed to commit them.

    ``consumed`` counts every raw source record pulled while filling,
    including records that were dropped or skipped, so that
    ``start_position + consumed`` is the restart point once the chunk
    commits.
    """

    index: int
    size: int
    start_position: int
    items: list[Record] = field(default_factory=list)
    read_count: int = 0
    filter_count: int = 0
    skip_count: int = 0
    consumed: int = 0
    end_of_input: bool = False
    state: ChunkState = ChunkState.FILLING
    attempts: int = 0

    @property
    def is_full(self) -> bool:
        return len(self.items) >= self.size

    @property
    def end_position(self) -> int:
        return self.start_position + self.consumed

    @property
    def has_work(self) -> bool:
        """True if committing this chunk changes any persisted state."""
        return self.consumed > 0
