"""
XLSX record source.

Streams one worksheet with openpyxl in read-only mode.  Sheet is chosen by
0-based index or name (default: the active sheet).  Cell values are
normalised: None becomes "", strings are stripped, integral floats become
int.  Fully blank rows are skipped and do not count toward ``position``.
"""

from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Any, Iterator, Sequence

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from etl_kernel.exceptions import SourceError
from etl_kernel.logging_config import get_logger

from etl_batch.domain.types import Record

logger = get_logger("batch.source")


def _cell_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return value.strip()
    return value


class XlsxSource:
    """Read one worksheet of an .xlsx workbook as one Record per row.

    ``position`` counts data rows (header, ``skip_rows`` and blank rows
    excluded).  A row with non-empty cells beyond the configured fields
    raises SourceError carrying its sheet row number, as DelimitedFileSource
    does for a row with too many fields.

    Unlike DelimitedFileSource, a row with too few fields is not an error:
    a worksheet does not store trailing empty cells, so a missing last field
    and an empty one read the same.  Shorter rows are padded with "".
    """

    def __init__(
        self,
        path: str | Path,
        field_names: Sequence[str],
        sheet: int | str | None = None,
        has_header: bool = False,
        skip_rows: int = 0,
    ):
        if not field_names:
            raise ValueError("field_names must not be empty")
        self._path = Path(path)
        self._fields = tuple(field_names)
        self._sheet = sheet
        self._has_header = has_header
        self._skip_rows = skip_rows
        self._workbook: Any = None
        self._rows: Iterator[tuple[int, tuple[Any, ...]]] | None = None
        self._position = 0
        self._opened = False

    @property
    def position(self) -> int:
        return self._position

    @property
    def resource(self) -> str:
        if self._sheet is None:
            return str(self._path)
        return f"{self._path}[{self._sheet}]"

    def open(self, start_position: int = 0) -> None:
        if self._opened:
            raise RuntimeError(
                f"{self.resource} already opened; create a fresh source per run"
            )
        self._opened = True
        try:
            self._workbook = openpyxl.load_workbook(
                self._path, read_only=True, data_only=True,
            )
            worksheet = self._worksheet()
        except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError, IndexError) as exc:
            self.close()
            raise SourceError(self.resource, None, f"{type(exc).__name__}: {exc}") from exc

        first_row = 1 + self._skip_rows + (1 if self._has_header else 0)
        self._rows = enumerate(
            worksheet.iter_rows(min_row=first_row, values_only=True),
            start=first_row,
        )

        skipped = 0
        while skipped < start_position and self._next_row() is not None:
            skipped += 1
        self._position = skipped

        logger.debug(
            "source_opened",
            extra={"resource": self.resource, "start_position": start_position},
        )

    def read(self) -> Record | None:
        if self._rows is None:
            raise RuntimeError(f"{self.resource} is not open")
        numbered = self._next_row()
        if numbered is None:
            return None
        row_number, values = numbered
        self._position += 1

        width = len(self._fields)
        extra = [v for v in values[width:] if v != ""]
        if extra:
            raise SourceError(
                self.resource,
                row_number,
                f"expected {width} fields, found {width + len(extra)}",
            )
        padded = (list(values[:width]) + [""] * width)[:width]
        return Record(self._fields, tuple(padded), position=self._position)

    def close(self) -> None:
        if self._workbook is not None:
            self._workbook.close()
            self._workbook = None
        self._rows = None

    def _worksheet(self) -> Any:
        if self._sheet is None:
            return self._workbook.active
        if isinstance(self._sheet, int):
            return self._workbook.worksheets[self._sheet]
        return self._workbook[self._sheet]

    def _next_row(self) -> tuple[int, list[Any]] | None:
        """Next non-blank (row number, values), or None at end of sheet."""
        for row_number, raw in self._rows:
            values = [_cell_value(v) for v in raw]
            if any(v != "" for v in values):
                return row_number, values
        return None
