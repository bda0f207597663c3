"""
End-to-end tests for the ``etl-batch`` command line.

Each test writes a job YAML, a CSV and a DDL script into tmp_path and
drives ``main()`` against a file-backed SQLite database there.
"""

from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from etl_kernel.db.engine import reset_engine

from etl_batch.cli import (
    EXIT_ALREADY_COMPLETE,
    EXIT_COMPLETED,
    EXIT_FAILED,
    main,
)

JOB_YAML = """\
job:
  name: import_people
  chunk_size: 2
  database_url: sqlite:///people.db
  schema_sql: schema.sql
  source:
    path: people.csv
    fields: [first_name, last_name]
  transform: uppercase
  sink:
    table: people
    columns: [first_name, last_name]
  verify_query: SELECT first_name, last_name FROM people
"""

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS people (
    person_id INTEGER PRIMARY KEY,
    first_name VARCHAR(20),
    last_name VARCHAR(20)
);
"""

GOOD_CSV = "Jill,Doe\nJoe,Doe\nJustin,Doe\nJane,Doe\nJohn,Doe\n"


@pytest.fixture(autouse=True)
def _isolated_engine(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    reset_engine()
    yield
    reset_engine()


@pytest.fixture
def job_dir(tmp_path) -> Path:
    (tmp_path / "job.yaml").write_text(JOB_YAML, encoding="utf-8")
    (tmp_path / "schema.sql").write_text(SCHEMA_SQL, encoding="utf-8")
    (tmp_path / "people.csv").write_text(GOOD_CSV, encoding="utf-8")
    return tmp_path


def _people(job_dir: Path) -> list[tuple]:
    engine = create_engine(f"sqlite:///{job_dir / 'people.db'}")
    try:
        with engine.connect() as conn:
            return [
                tuple(r)
                for r in conn.execute(
                    text("SELECT first_name, last_name FROM people ORDER BY person_id")
                )
            ]
    finally:
        engine.dispose()


class TestRunCommand:
    def test_run_then_rerun_refused(self, job_dir, capsys):
        config = str(job_dir / "job.yaml")

        assert main(["run", config]) == EXIT_COMPLETED
        out = capsys.readouterr().out
        assert "import_people run 1: completed (5 written)" in out
        assert _people(job_dir) == [
            ("JILL", "DOE"), ("JOE", "DOE"), ("JUSTIN", "DOE"), ("JANE", "DOE"), ("JOHN", "DOE"),
        ]

        assert main(["run", config]) == EXIT_ALREADY_COMPLETE
        assert "already complete" in capsys.readouterr().err
        assert len(_people(job_dir)) == 5

    def test_new_param_runs_again(self, job_dir):
        config = str(job_dir / "job.yaml")
        assert main(["run", config, "--param", "run_date=2024-01-01"]) == EXIT_COMPLETED
        assert main(["run", config, "--param", "run_date=2024-01-02"]) == EXIT_COMPLETED
        assert len(_people(job_dir)) == 10

    def test_failure_then_restart(self, job_dir, capsys):
        config = str(job_dir / "job.yaml")
        (job_dir / "people.csv").write_text(
            "Jill,Doe\nJoe,Doe\nJustin,Doe,extra\nJane,Doe\nJohn,Doe\n",
            encoding="utf-8",
        )

        assert main(["run", config]) == EXIT_FAILED
        captured = capsys.readouterr()
        assert "import_people run 1: failed (2 written)" in captured.out
        assert "SourceError" in captured.err
        assert len(_people(job_dir)) == 2

        (job_dir / "people.csv").write_text(GOOD_CSV, encoding="utf-8")
        assert main(["run", config]) == EXIT_COMPLETED
        assert "import_people run 2: completed (3 written)" in capsys.readouterr().out
        assert len(_people(job_dir)) == 5

    def test_bad_param_rejected(self, job_dir):
        with pytest.raises(SystemExit):
            main(["run", str(job_dir / "job.yaml"), "--param", "no-equals"])


class TestHistoryCommand:
    def test_empty_history(self, job_dir, capsys):
        assert main(["history", str(job_dir / "job.yaml")]) == 0
        assert "No executions of import_people" in capsys.readouterr().out

    def test_lists_runs(self, job_dir, capsys):
        config = str(job_dir / "job.yaml")
        (job_dir / "people.csv").write_text("Jill,Doe\nbroken\n", encoding="utf-8")
        main(["run", config])
        (job_dir / "people.csv").write_text(GOOD_CSV, encoding="utf-8")
        main(["run", config])
        capsys.readouterr()

        assert main(["history", config]) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert lines[0].split() == ["RUN", "STATUS", "STARTED", "STEPS"]
        assert lines[1].split()[:2] == ["1", "failed"]
        assert lines[2].split()[:2] == ["2", "completed"]
        assert "import_people_step completed" in lines[2]
