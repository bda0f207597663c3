"""
etl_batch.models -- ORM models for execution-state persistence.

Architecture: etl_batch/models. Imports from etl_kernel.db.base only.
"""

from etl_batch.models.execution import (
    JobExecutionModel,
    JobInstanceModel,
    StepExecutionModel,
)

__all__ = [
    "JobExecutionModel",
    "JobInstanceModel",
    "StepExecutionModel",
]
