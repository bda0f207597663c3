"""In-memory record source over a list of rows (tuples, mappings or Records)."""

from __future__ import annotations

from typing import Any, Iterable, Iterator, Mapping, Sequence

from etl_kernel.exceptions import SourceError

from etl_batch.domain.types import Record


class IterableSource:
    """Serve pre-built rows as Records.

    Rows may be Records, mappings, or sequences of values (which need
    ``field_names``).  The rows iterable is consumed lazily on ``read()``.
    """

    def __init__(self, rows: Iterable[Any], field_names: Sequence[str] | None = None):
        self._rows = rows
        self._fields = tuple(field_names) if field_names else None
        self._iter: Iterator[Any] | None = None
        self._position = 0

    @property
    def position(self) -> int:
        return self._position

    def open(self, start_position: int = 0) -> None:
        if self._iter is not None:
            raise RuntimeError("source already opened; create a fresh source per run")
        self._iter = iter(self._rows)
        for _ in range(start_position):
            if next(self._iter, _END) is _END:
                break
            self._position += 1

    def read(self) -> Record | None:
        if self._iter is None:
            raise RuntimeError("source is not open")
        row = next(self._iter, _END)
        if row is _END:
            return None
        self._position += 1
        try:
            return self._to_record(row)
        except ValueError as exc:
            raise SourceError("<memory>", self._position, str(exc)) from exc

    def close(self) -> None:
        self._iter = iter(())

    def _to_record(self, row: Any) -> Record:
        if isinstance(row, Record):
            return Record(row.fields, row.values, position=self._position)
        if isinstance(row, Mapping):
            return Record.from_mapping(row, position=self._position)
        if self._fields is None:
            raise ValueError("field_names are required for sequence rows")
        return Record(self._fields, tuple(row), position=self._position)


_END = object()
