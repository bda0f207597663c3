"""
Job configuration schema.

Defines the human-authored job file as frozen dataclasses.  YAML is parsed
into these types by ``etl_config.loader``; ``etl_batch.jobs.build_job``
turns a ``JobConfig`` into a runnable ``Job``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceConfig:
    """File to read: delimited text (csv) or an Excel worksheet (xlsx)."""

    path: Path
    fields: tuple[str, ...]
    format: str = "csv"  # "csv" or "xlsx"
    delimiter: str = ","
    has_header: bool = False
    encoding: str = "utf-8"
    sheet: int | str | None = None  # xlsx only
    skip_rows: int = 0  # xlsx only


@dataclass(frozen=True)
class SinkConfig:
    """Destination table and record-field -> column mapping."""

    table: str
    columns: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyConfig:
    """Failure policy as written in YAML (values are validated on load)."""

    on_source_error: str = "fatal"  # "fatal" or "skip"
    on_transform_error: str = "fatal"
    skip_limit: int = 0
    sink_retry_limit: int = 1
    flush_timeout: float | None = None


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobConfig:
    """One chunk-oriented job read from a YAML file."""

    name: str
    source: SourceConfig
    sink: SinkConfig
    database_url: str
    chunk_size: int = 10
    transform: str = "none"  # "uppercase" or "none"
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    schema_sql: Path | None = None
    verify_query: str | None = None
    config_path: Path | None = None
