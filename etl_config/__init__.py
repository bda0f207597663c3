"""
etl_config -- YAML job configuration.

Public API:
    load_job_config(path)  -> JobConfig
"""

from etl_config.loader import load_job_config
from etl_config.schema import JobConfig, PolicyConfig, SinkConfig, SourceConfig

__all__ = [
    "JobConfig",
    "PolicyConfig",
    "SinkConfig",
    "SourceConfig",
    "load_job_config",
]
