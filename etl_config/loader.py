"""
Configuration Loader (``etl_config.loader``).

Responsibility
--------------
Loads a job YAML file and parses it into the frozen dataclasses of
``etl_config.schema``.

Invariants enforced
-------------------
* Parse errors raise ``KeyError`` (missing required key) or ``ValueError``
  (invalid value) with descriptive messages; no silent defaults for
  required fields.
* Relative file paths resolve against the directory of the YAML file.
* The ``DATABASE_URL`` environment variable overrides ``database_url``;
  a relative SQLite file in ``database_url`` is anchored like any path.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping

import yaml
from sqlalchemy.engine import make_url

from etl_config.schema import JobConfig, PolicyConfig, SinkConfig, SourceConfig

DATABASE_URL_ENV = "DATABASE_URL"

_TRANSFORMS = ("none", "uppercase")
_ERROR_ACTIONS = ("fatal", "skip")
_SOURCE_FORMATS = ("csv", "xlsx")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _resolve(base_dir: Path, value: str | os.PathLike[str]) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base_dir / path).resolve()


def _resolve_database_url(base_dir: Path, url: str) -> str:
    """Anchor a relative SQLite file path to the YAML directory."""
    parsed = make_url(url)
    database = parsed.database
    if (
        parsed.get_backend_name() != "sqlite"
        or not database
        or database == ":memory:"
        or Path(database).is_absolute()
    ):
        return url
    resolved = parsed.set(database=str(_resolve(base_dir, database)))
    return resolved.render_as_string(hide_password=False)


def parse_source(data: Mapping[str, Any], base_dir: Path) -> SourceConfig:
    """
    Parse the ``source:`` mapping.  ``format`` defaults from the file
    suffix (``.xlsx`` -> xlsx, anything else -> csv).

    Raises:
        ValueError: if ``fields`` is empty or ``format`` is unknown.
    """
    fields = data["fields"]
    if not isinstance(fields, list) or not fields:
        raise ValueError("source.fields must be a non-empty list of field names")
    path = _resolve(base_dir, data["path"])
    default_format = "xlsx" if path.suffix.lower() == ".xlsx" else "csv"
    source_format = str(data.get("format", default_format)).lower()
    if source_format not in _SOURCE_FORMATS:
        raise ValueError(
            f"source.format must be one of {_SOURCE_FORMATS}, got {source_format!r}"
        )
    return SourceConfig(
        path=path,
        fields=tuple(str(f) for f in fields),
        format=source_format,
        delimiter=str(data.get("delimiter", ",")),
        has_header=bool(data.get("has_header", False)),
        encoding=str(data.get("encoding", "utf-8")),
        sheet=data.get("sheet"),
        skip_rows=int(data.get("skip_rows", 0)),
    )


def parse_sink(data: Mapping[str, Any]) -> SinkConfig:
    columns = data["columns"]
    if isinstance(columns, list):
        columns = {c: c for c in columns}
    if not isinstance(columns, dict) or not columns:
        raise ValueError("sink.columns must map record fields to table columns")
    return SinkConfig(
        table=str(data["table"]),
        columns={str(k): str(v) for k, v in columns.items()},
    )


def parse_policy(data: Mapping[str, Any] | None) -> PolicyConfig:
    """
    Parse a ``PolicyConfig``; every key is optional.

    Raises:
        ValueError: if an error action or number is invalid.
    """
    data = data or {}
    for key in ("on_source_error", "on_transform_error"):
        if key in data and data[key] not in _ERROR_ACTIONS:
            raise ValueError(
                f"policy.{key} must be one of {_ERROR_ACTIONS}, got {data[key]!r}"
            )
    timeout = data.get("flush_timeout")
    return PolicyConfig(
        on_source_error=data.get("on_source_error", "fatal"),
        on_transform_error=data.get("on_transform_error", "fatal"),
        skip_limit=int(data.get("skip_limit", 0)),
        sink_retry_limit=int(data.get("sink_retry_limit", 1)),
        flush_timeout=float(timeout) if timeout is not None else None,
    )


def parse_job(
    data: Mapping[str, Any],
    base_dir: Path,
    env: Mapping[str, str] | None = None,
) -> JobConfig:
    """
    Parse the ``job:`` mapping of a job file.

    Raises:
        KeyError: if ``name``, ``source``, ``sink`` or a database URL is missing.
        ValueError: if ``chunk_size`` or ``transform`` is invalid.
    """
    env = os.environ if env is None else env

    chunk_size = int(data.get("chunk_size", 10))
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

    transform = str(data.get("transform", "none")).lower()
    if transform not in _TRANSFORMS:
        raise ValueError(f"transform must be one of {_TRANSFORMS}, got {transform!r}")

    database_url = env.get(DATABASE_URL_ENV)
    if not database_url and data.get("database_url"):
        database_url = _resolve_database_url(base_dir, str(data["database_url"]))
    if not database_url:
        raise KeyError(
            f"database_url (or the {DATABASE_URL_ENV} environment variable) is required"
        )

    schema_sql = data.get("schema_sql")
    return JobConfig(
        name=str(data["name"]),
        source=parse_source(data["source"], base_dir),
        sink=parse_sink(data["sink"]),
        database_url=str(database_url),
        chunk_size=chunk_size,
        transform=transform,
        policy=parse_policy(data.get("policy")),
        schema_sql=_resolve(base_dir, schema_sql) if schema_sql else None,
        verify_query=data.get("verify_query"),
    )


def load_job_config(
    path: str | os.PathLike[str],
    env: Mapping[str, str] | None = None,
) -> JobConfig:
    """Load and parse a job YAML file."""
    config_path = Path(path).resolve()
    raw = load_yaml_file(config_path)
    if "job" not in raw:
        raise KeyError(f"{config_path} has no top-level 'job' mapping")
    config = parse_job(raw["job"], config_path.parent, env)
    return replace(config, config_path=config_path)
