"""
Delimited-text record source.

Uses csv.reader. Configurable: delimiter, encoding, has_header, quoting.
Handles BOM via utf-8-sig when encoding is utf-8. Streams rows; never
loads the whole file.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Sequence

from etl_kernel.exceptions import SourceError
from etl_kernel.logging_config import get_logger

from etl_batch.domain.types import Record

logger = get_logger("batch.source")


_QUOTING = {
    "minimal": csv.QUOTE_MINIMAL,
    "all": csv.QUOTE_ALL,
    "nonnumeric": csv.QUOTE_NONNUMERIC,
    "none": csv.QUOTE_NONE,
}


def _get_encoding(encoding: str) -> str:
    if encoding.lower() == "utf-8":
        return "utf-8-sig"  # Strip BOM if present
    return encoding


def _get_quoting(quoting: str | int) -> int:
    if isinstance(quoting, int):
        return quoting
    return _QUOTING.get(str(quoting).lower(), csv.QUOTE_MINIMAL)


class DelimitedFileSource:
    """Read a delimited text file as one Record per row.

    ``position`` counts data rows (header and blank lines excluded), so a
    restarted run opened with ``start_position=n`` resumes at data row n+1.
    A row with the wrong number of fields raises SourceError carrying its
    line number; it still counts as consumed.
    """

    def __init__(
        self,
        path: str | Path,
        field_names: Sequence[str],
        delimiter: str = ",",
        has_header: bool = False,
        encoding: str = "utf-8",
        quoting: str | int = "minimal",
        skip_blank_lines: bool = True,
    ):
        if not field_names:
            raise ValueError("field_names must not be empty")
        self._path = Path(path)
        self._fields = tuple(field_names)
        self._delimiter = delimiter
        self._has_header = has_header
        self._encoding = _get_encoding(encoding)
        self._quoting = _get_quoting(quoting)
        self._skip_blank_lines = skip_blank_lines
        self._file: Any = None
        self._reader: Any = None
        self._position = 0
        self._opened = False

    @property
    def position(self) -> int:
        return self._position

    @property
    def resource(self) -> str:
        return str(self._path)

    def open(self, start_position: int = 0) -> None:
        if self._opened:
            raise RuntimeError(
                f"{self.resource} already opened; create a fresh source per run"
            )
        self._opened = True
        try:
            self._file = self._path.open("r", encoding=self._encoding, newline="")
        except OSError as exc:
            raise SourceError(self.resource, None, str(exc)) from exc

        self._reader = csv.reader(
            self._file, delimiter=self._delimiter, quoting=self._quoting,
        )
        if self._has_header:
            self._next_row()

        # Unparseable rows were consumed (skipped) by the run that committed
        # them, so they count toward start_position.
        skipped = 0
        while skipped < start_position:
            try:
                if self._next_row() is None:
                    break
            except SourceError:
                pass
            skipped += 1
        self._position = skipped

        logger.debug(
            "source_opened",
            extra={"resource": self.resource, "start_position": start_position},
        )

    def read(self) -> Record | None:
        if self._reader is None:
            raise RuntimeError(f"{self.resource} is not open")
        row = self._next_row()
        if row is None:
            return None
        self._position += 1
        if len(row) != len(self._fields):
            raise SourceError(
                self.resource,
                self._reader.line_num,
                f"expected {len(self._fields)} fields, found {len(row)}",
            )
        return Record(self._fields, tuple(row), position=self._position)

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        self._reader = None

    def _next_row(self) -> list[str] | None:
        """Next non-blank row, or None at end of file."""
        while True:
            try:
                row = next(self._reader)
            except StopIteration:
                return None
            except (csv.Error, UnicodeDecodeError) as exc:
                self._position += 1
                raise SourceError(self.resource, self._reader.line_num, str(exc)) from exc
            if self._skip_blank_lines and not any(cell.strip() for cell in row):
                continue
            return row
