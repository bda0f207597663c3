"""
SQL insert sink.

Contract:
    Executes one parameterised INSERT per chunk as a single executemany on
    the chunk transaction's session.  Record fields are bound to statement
    parameters by name.  Never commits.

Failure modes:
    - SinkError wrapping SQLAlchemyError (constraint violation, lost
      connection, ...).
    - SinkError when a record lacks a mapped field.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from etl_kernel.exceptions import SinkError
from etl_kernel.logging_config import get_logger

from etl_batch.domain.types import Record

logger = get_logger("batch.sink")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Not a valid SQL identifier: {name!r}")
    return name


class SqlInsertSink:
    """Write records with a parameterised INSERT statement.

    ``field_map`` maps record field name -> statement parameter name.  When
    omitted, every record field is bound under its own name.
    """

    def __init__(self, statement: str, field_map: Mapping[str, str] | None = None):
        self._sql = statement
        self._statement = text(statement)
        self._field_map = dict(field_map) if field_map else None

    @classmethod
    def for_table(
        cls, table: str, field_to_column: Mapping[str, str],
    ) -> SqlInsertSink:
        """Build ``INSERT INTO table (columns) VALUES (:fields)``."""
        if not field_to_column:
            raise ValueError("field_to_column must not be empty")
        _check_identifier(table)
        columns = ", ".join(_check_identifier(c) for c in field_to_column.values())
        params = ", ".join(f":{_check_identifier(f)}" for f in field_to_column)
        statement = f"INSERT INTO {table} ({columns}) VALUES ({params})"
        return cls(statement, {f: f for f in field_to_column})

    @property
    def statement(self) -> str:
        return self._sql

    def write(self, records: Sequence[Record], session: Session) -> None:
        if not records:
            return
        try:
            params = [self._bind(r) for r in records]
        except KeyError as exc:
            raise SinkError(f"record is missing field {exc}") from exc

        try:
            session.execute(self._statement, params)
        except SQLAlchemyError as exc:
            raise SinkError(
                f"insert failed: {type(exc).__name__}: {exc}", cause=exc,
            ) from exc

        logger.debug("sink_batch_written", extra={"record_count": len(params)})

    def _bind(self, record: Record) -> dict[str, Any]:
        if self._field_map is None:
            return record.as_dict()
        return {param: record[field] for field, param in self._field_map.items()}
