"""
Wire a runnable Job from a JobConfig.

Contract:
    ``build_job(config, session_factory)`` returns a single-step Job: a
    DelimitedFileSource or XlsxSource over ``config.source``, the configured
    transformer, an SqlInsertSink for ``config.sink`` and, when
    ``verify_query`` is set, a PersistedRowsListener.
    ``apply_schema_sql()`` runs the optional DDL script before the job.
"""

from __future__ import annotations

from functools import partial
from pathlib import Path
from typing import Callable

from sqlalchemy import Engine, text
from sqlalchemy.orm import Session

from etl_config.schema import JobConfig, PolicyConfig, SourceConfig
from etl_kernel.logging_config import get_logger

from etl_batch.adapters.base import RecordSource
from etl_batch.adapters.delimited_source import DelimitedFileSource
from etl_batch.adapters.sql_sink import SqlInsertSink
from etl_batch.adapters.transformers import UppercaseTransformer
from etl_batch.adapters.xlsx_source import XlsxSource
from etl_batch.definition import ChunkStep, Job
from etl_batch.domain.policy import ErrorAction, FailurePolicy
from etl_batch.listeners import PersistedRowsListener

logger = get_logger("batch.jobs")


def build_policy(config: PolicyConfig) -> FailurePolicy:
    return FailurePolicy(
        on_source_error=ErrorAction(config.on_source_error),
        on_transform_error=ErrorAction(config.on_transform_error),
        skip_limit=config.skip_limit,
        sink_retry_limit=config.sink_retry_limit,
        flush_timeout=config.flush_timeout,
    )


def build_source_factory(config: SourceConfig) -> Callable[[], RecordSource]:
    """A factory producing a fresh, unopened source per run."""
    if config.format == "xlsx":
        return partial(
            XlsxSource,
            config.path,
            config.fields,
            sheet=config.sheet,
            has_header=config.has_header,
            skip_rows=config.skip_rows,
        )
    return partial(
        DelimitedFileSource,
        config.path,
        config.fields,
        delimiter=config.delimiter,
        has_header=config.has_header,
        encoding=config.encoding,
    )


def build_job(
    config: JobConfig,
    session_factory: Callable[[], Session] | None = None,
) -> Job:
    """Build the Job described by ``config``.

    ``session_factory`` is only needed for the verification listener.
    """
    step = ChunkStep(
        name=f"{config.name}_step",
        source_factory=build_source_factory(config.source),
        sink=SqlInsertSink.for_table(config.sink.table, config.sink.columns),
        transformer=UppercaseTransformer() if config.transform == "uppercase" else None,
        chunk_size=config.chunk_size,
        policy=build_policy(config.policy),
    )

    listener = None
    if config.verify_query and session_factory is not None:
        listener = PersistedRowsListener(session_factory, config.verify_query)

    return Job(name=config.name, steps=(step,), listener=listener)


def apply_schema_sql(engine: Engine, path: Path) -> None:
    """Run each ``;``-separated statement of a DDL script in one transaction."""
    script = path.read_text(encoding="utf-8")
    statements = [s.strip() for s in script.split(";") if s.strip()]
    with engine.begin() as conn:
        for statement in statements:
            conn.execute(text(statement))
    logger.info(
        "schema_applied",
        extra={"path": str(path), "statement_count": len(statements)},
    )
