"""
Command-line entry point: ``etl-batch``.

Usage:
    etl-batch run jobs/import_people.yaml [--param key=value ...]
    etl-batch history jobs/import_people.yaml

``run`` exit codes:
    0  job COMPLETED
    1  job FAILED, or execution state could not be persisted
    2  job instance already complete (identical parameters)
    3  job STOPPED (SIGINT between chunks)
    4  job instance already running
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Sequence

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_ALREADY_COMPLETE = 2
EXIT_STOPPED = 3
EXIT_ALREADY_RUNNING = 4


def _parse_param(value: str) -> tuple[str, str]:
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected key=value, got {value!r}")
    return key, val


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="etl-batch",
        description="Run chunk-oriented batch jobs described by YAML files.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Log level for the JSON log stream on stderr (default: INFO).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run (or restart) a job.")
    run.add_argument("config", type=Path, help="Job YAML file.")
    run.add_argument(
        "--param",
        action="append",
        type=_parse_param,
        default=[],
        metavar="KEY=VALUE",
        help="Identifying job parameter; repeat for several.",
    )

    history = sub.add_parser("history", help="List executions of a job.")
    history.add_argument("config", type=Path, help="Job YAML file.")
    return parser


def _install_stop_handler(stop_event: threading.Event):
    def _handler(signum, frame):
        print("Stop requested; finishing the current chunk...", file=sys.stderr)
        stop_event.set()

    return signal.signal(signal.SIGINT, _handler)


def _run(args: argparse.Namespace) -> int:
    from etl_config import load_job_config
    from etl_kernel.db.engine import (
        create_tables,
        get_engine,
        get_session_factory,
        init_engine_from_url,
    )
    from etl_kernel.exceptions import (
        ExecutionStateError,
        JobExecutionAlreadyRunningError,
        RestartViolationError,
    )

    from etl_batch.domain.types import ExecutionStatus
    from etl_batch.jobs import apply_schema_sql, build_job
    from etl_batch.services.launcher import JobLauncher

    config = load_job_config(args.config)
    init_engine_from_url(config.database_url)
    create_tables()
    if config.schema_sql is not None:
        apply_schema_sql(get_engine(), config.schema_sql)

    session_factory = get_session_factory()
    job = build_job(config, session_factory)
    launcher = JobLauncher(session_factory)

    stop_event = threading.Event()
    previous_handler = _install_stop_handler(stop_event)
    try:
        execution = launcher.run(job, dict(args.param), stop_event=stop_event)
    except RestartViolationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_ALREADY_COMPLETE
    except JobExecutionAlreadyRunningError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_ALREADY_RUNNING
    except ExecutionStateError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print(
        f"{execution.job_name} run {execution.run_id}: {execution.status.value} "
        f"({execution.write_count} written)"
    )
    if execution.status == ExecutionStatus.COMPLETED:
        return EXIT_COMPLETED
    if execution.status == ExecutionStatus.STOPPED:
        return EXIT_STOPPED
    if execution.exit_message:
        print(f"  {execution.exit_message}", file=sys.stderr)
    return EXIT_FAILED


def _history(args: argparse.Namespace) -> int:
    from etl_config import load_job_config
    from etl_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url

    from etl_batch.services.job_tracker import JobExecutionTracker

    config = load_job_config(args.config)
    init_engine_from_url(config.database_url)
    create_tables()

    executions = JobExecutionTracker(get_session_factory()).list_job_executions(
        config.name,
    )
    if not executions:
        print(f"No executions of {config.name}")
        return 0

    print(f"{'RUN':>4}  {'STATUS':<10}  {'STARTED':<25}  STEPS")
    for execution in executions:
        started = execution.started_at.isoformat() if execution.started_at else "-"
        steps = "; ".join(
            f"{s.step_name} {s.status.value} read={s.read_count} "
            f"write={s.write_count} skip={s.skip_count} commits={s.commit_count}"
            for s in execution.step_executions
        )
        print(
            f"{execution.run_id:>4}  {execution.status.value:<10}  "
            f"{started:<25}  {steps or '-'}"
        )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    from etl_kernel.logging_config import configure_logging

    configure_logging(level=args.log_level.upper())

    if args.command == "run":
        return _run(args)
    return _history(args)


if __name__ == "__main__":
    sys.exit(main())
