"""Record transformers."""

from __future__ import annotations

from typing import Callable, Sequence

from etl_kernel.logging_config import get_logger

from etl_batch.domain.types import Record

logger = get_logger("batch.transform")


class UppercaseTransformer:
    """Upper-case string fields (all of them, or only ``fields``)."""

    def __init__(self, fields: Sequence[str] | None = None):
        self._fields = tuple(fields) if fields else None

    def transform(self, record: Record) -> Record:
        targets = self._fields or record.fields
        changes = {
            name: record[name].upper()
            for name in targets
            if isinstance(record[name], str)
        }
        converted = record.replace(**changes)
        logger.info(
            "record_converted",
            extra={"before": record.as_dict(), "after": converted.as_dict()},
        )
        return converted


class FunctionTransformer:
    """Adapt a plain callable ``fn(record) -> Record | None``."""

    def __init__(self, fn: Callable[[Record], Record | None]):
        self._fn = fn

    def transform(self, record: Record) -> Record | None:
        return self._fn(record)
