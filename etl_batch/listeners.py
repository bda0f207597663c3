"""
Job completion listeners.

A listener is called once, synchronously, after the job tracker has
finalised a JobExecution.  Its exceptions are logged by the tracker and
never change the finalised status.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.orm import Session

from etl_kernel.db.engine import session_scope
from etl_kernel.logging_config import get_logger

from etl_batch.domain.types import ExecutionStatus, JobExecution

logger = get_logger("batch.listener")


@runtime_checkable
class JobCompletionListener(Protocol):
    def after_job(self, execution: JobExecution) -> None: ...


class PersistedRowsListener:
    """Read the destination back after a COMPLETED run and log every row.

    The rows of the last verification are kept on ``rows`` as dicts, in
    query order.
    """

    def __init__(self, session_factory: Callable[[], Session], query: str):
        self._session_factory = session_factory
        self._query = text(query)
        self.rows: list[dict[str, Any]] = []

    def after_job(self, execution: JobExecution) -> None:
        if execution.status != ExecutionStatus.COMPLETED:
            logger.warning(
                "job_not_verified",
                extra={"status": execution.status.value},
            )
            return

        logger.info("job_finished_verifying", extra={"run_id": execution.run_id})
        with session_scope(self._session_factory) as session:
            result = session.execute(self._query)
            self.rows = [dict(row) for row in result.mappings()]

        for row in self.rows:
            logger.info("row_found", extra={"row": row})
        logger.info("job_verified", extra={"row_count": len(self.rows)})
