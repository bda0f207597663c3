"""
Source / transformer / sink protocols.

Contract:
    Three narrow capability interfaces.  Concrete adapters implement them
    directly; there is no shared base class.

    RecordSource.read() returns one Record per call and None at end of
    input.  Failures raise SourceError; the engine applies the step's
    failure policy.  A source is single-use: one instance per run.

    RecordTransformer.transform() maps one record to a new record, or None
    to drop it.  It must not mutate the input.

    RecordSink.write() persists a whole chunk using the session of the
    chunk transaction.  It must not commit or roll back; the engine owns
    the transaction boundary.

Architecture: etl_batch/adapters. No imports from etl_batch.services.
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from sqlalchemy.orm import Session

from etl_batch.domain.types import Record


@runtime_checkable
class RecordSource(Protocol):
    """Lazy, finite, forward-only sequence of raw records."""

    @property
    def position(self) -> int:
        """Raw records consumed so far, including ones that failed to decode."""
        ...

    def open(self, start_position: int = 0) -> None:
        """Open the resource and skip the first ``start_position`` records."""
        ...

    def read(self) -> Record | None:
        """Next record, or None at end of input.

        Raises:
            SourceError: The record is malformed or unreadable.
        """
        ...

    def close(self) -> None: ...


@runtime_checkable
class RecordTransformer(Protocol):
    """Maps one input record to zero or one output record."""

    def transform(self, record: Record) -> Record | None:
        """Return the transformed record, or None to drop it."""
        ...


@runtime_checkable
class RecordSink(Protocol):
    """Persists a chunk of records as one atomic unit."""

    def write(self, records: Sequence[Record], session: Session) -> None:
        """Write every record in ``records`` inside the caller's transaction.

        Raises:
            SinkError: The write failed; the caller rolls back the chunk.
        """
        ...
