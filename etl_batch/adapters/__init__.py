"""Source, transformer and sink adapters."""

from etl_batch.adapters.base import RecordSink, RecordSource, RecordTransformer
from etl_batch.adapters.delimited_source import DelimitedFileSource
from etl_batch.adapters.memory_source import IterableSource
from etl_batch.adapters.sql_sink import SqlInsertSink
from etl_batch.adapters.transformers import FunctionTransformer, UppercaseTransformer
from etl_batch.adapters.xlsx_source import XlsxSource

__all__ = [
    "RecordSink",
    "RecordSource",
    "RecordTransformer",
    "DelimitedFileSource",
    "IterableSource",
    "SqlInsertSink",
    "FunctionTransformer",
    "UppercaseTransformer",
    "XlsxSource",
]
