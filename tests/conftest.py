"""
Pytest fixtures for the ETL batch test suite.

Provides:
- Structured logging configured once per session, LogContext cleared per test
- ``captured_logs`` for asserting on emitted JSON log events
- A file-backed SQLite database per test with the execution-state tables
  and a ``people`` destination table
- A DeterministicClock
- A recording sink that can fail on chosen write calls
- ``people_step()`` and a JobLauncher for driving the chunk engine

No PostgreSQL or network access is needed.
"""

import json
import logging
from datetime import timedelta
from io import StringIO
from typing import Callable, Sequence

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

import etl_batch.models  # noqa: F401  registers batch tables on Base.metadata
from etl_kernel.db.base import Base
from etl_kernel.domain.clock import DeterministicClock
from etl_kernel.exceptions import SinkError
from etl_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

from etl_batch.adapters.memory_source import IterableSource
from etl_batch.adapters.sql_sink import SqlInsertSink
from etl_batch.adapters.transformers import UppercaseTransformer
from etl_batch.definition import ChunkStep
from etl_batch.domain.policy import FailurePolicy
from etl_batch.domain.types import Record
from etl_batch.services.launcher import JobLauncher

PEOPLE_DDL = """
CREATE TABLE people (
    person_id INTEGER PRIMARY KEY,
    first_name VARCHAR(20),
    last_name VARCHAR(20)
)
"""

PEOPLE = [
    ("Jill", "Doe"),
    ("Joe", "Doe"),
    ("Justin", "Doe"),
    ("Jane", "Doe"),
    ("John", "Doe"),
]

PEOPLE_FIELDS = ("first_name", "last_name")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture etl logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, launcher):
            launcher.run(job)
            logs = captured_logs()
            assert any(r["message"] == "chunk_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("etl")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    eng = create_engine(f"sqlite:///{tmp_path / 'etl.db'}")
    Base.metadata.create_all(eng)
    with eng.begin() as conn:
        conn.execute(text(PEOPLE_DDL))
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(step=timedelta(seconds=1))


@pytest.fixture
def people_rows(engine) -> Callable[[], list[tuple[str, str]]]:
    """Read the ``people`` table back in insertion order."""

    def _rows() -> list[tuple[str, str]]:
        with engine.connect() as conn:
            result = conn.execute(
                text("SELECT first_name, last_name FROM people ORDER BY person_id")
            )
            return [tuple(r) for r in result]

    return _rows


# =============================================================================
# Sinks
# =============================================================================


class RecordingSink:
    """Insert into ``people`` and remember every write call's batch.

    ``fail_on`` holds 1-based write-call numbers that raise SinkError
    after the insert ran, so the chunk transaction must roll it back.
    """

    def __init__(self, fail_on: Sequence[int] = ()):
        self._delegate = SqlInsertSink.for_table(
            "people", {"first_name": "first_name", "last_name": "last_name"},
        )
        self.fail_on = set(fail_on)
        self.calls: list[list[Record]] = []

    def write(self, records: Sequence[Record], session: Session) -> None:
        self.calls.append(list(records))
        self._delegate.write(records, session)
        if len(self.calls) in self.fail_on:
            raise SinkError(f"forced failure on write call {len(self.calls)}")

    @property
    def batch_sizes(self) -> list[int]:
        return [len(c) for c in self.calls]

    @property
    def written(self) -> list[tuple]:
        return [r.values for call in self.calls for r in call]


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


# =============================================================================
# Job wiring
# =============================================================================


def people_step(
    sink,
    rows: Sequence = tuple(PEOPLE),
    chunk_size: int = 10,
    transformer=None,
    policy: FailurePolicy | None = None,
    name: str = "load_people",
) -> ChunkStep:
    """A ChunkStep reading ``rows`` from memory; a fresh source per run."""
    return ChunkStep(
        name=name,
        source_factory=lambda: IterableSource(list(rows), PEOPLE_FIELDS),
        sink=sink,
        transformer=transformer if transformer is not None else UppercaseTransformer(),
        chunk_size=chunk_size,
        policy=policy or FailurePolicy(),
    )


@pytest.fixture
def launcher(session_factory, clock):
    return JobLauncher(session_factory, clock=clock)
