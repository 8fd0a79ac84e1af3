"""
Command line surface

    dmvwatch catalog
    dmvwatch run <query-id> [--timeout S]
    dmvwatch schedule start [--once] | stop
    dmvwatch report <query-id> [--since N] [--all]
    dmvwatch session create|start|stop|drop|read <template>

Exit codes: 0 success, 1 execution error, 2 configuration/catalog error.
"""

import argparse
import json
import os
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Any, Dict, List, Optional, Sequence

from dmvwatch import __app_name__, __version__
from dmvwatch.core.config import Settings
from dmvwatch.core.constants import (
    EXIT_CONFIG_ERROR,
    EXIT_EXECUTION_ERROR,
    EXIT_OK,
    RunOutcome,
)
from dmvwatch.core.exceptions import (
    ConfigError,
    DmvWatchError,
    UnknownQueryError,
)
from dmvwatch.core.logger import LogContext, get_logger, setup_logging
from dmvwatch.database.connection import DatabaseConnection
from dmvwatch.database.queries.event_session_queries import SESSION_TEMPLATES
from dmvwatch.services.event_session_service import EventSessionService
from dmvwatch.services.executor import QueryExecutor
from dmvwatch.services.query_catalog import QueryCatalog
from dmvwatch.services.report_comparator import report
from dmvwatch.services.result_store import ResultStore
from dmvwatch.services.scheduler import DiagnosticScheduler

logger = get_logger('cli')

_MAX_CELL_WIDTH = 60


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    try:
        settings = Settings.load(Path(args.config) if args.config else None)
        setup_logging(
            level=args.log_level or settings.logging.level,
            log_dir=settings.logs_dir,
            file_enabled=settings.logging.file_enabled,
            retention_days=settings.logging.retention_days,
        )
        catalog = QueryCatalog.load(settings.catalog.path)
        return _dispatch(args, settings, catalog)
    except (ConfigError, UnknownQueryError) as e:
        logger.debug(f"Configuration error: {e}")
        print(f"error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except DmvWatchError as e:
        logger.debug(f"Command failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return EXIT_EXECUTION_ERROR
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return EXIT_EXECUTION_ERROR


def _dispatch(args: argparse.Namespace, settings: Settings, catalog: QueryCatalog) -> int:
    if args.command == "catalog":
        return _run_catalog(catalog, args)
    if args.command == "run":
        return _run_query(settings, catalog, args)
    if args.command == "schedule":
        if args.action == "start":
            return _schedule_start(settings, catalog, args)
        return _schedule_stop(settings)
    if args.command == "report":
        return _run_report(settings, catalog, args)
    if args.command == "session":
        return _run_session(settings, args)
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dmvwatch",
        description="Scheduled SQL Server DMV diagnostics with run-to-run regression reports.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"{__app_name__} {__version__}")
    parser.add_argument(
        "--config",
        help="Path to a JSON settings file (default: settings.json in the app directory).",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level.",
    )
    sub = parser.add_subparsers(dest="command")

    catalog_cmd = sub.add_parser("catalog", help="List the diagnostic query catalog.")
    catalog_cmd.add_argument("--json", action="store_true", help="Print entries as JSON.")

    run_cmd = sub.add_parser(
        "run",
        help="Run one diagnostic query now and store the result.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""Examples:
  dmvwatch run top-io
  dmvwatch run top-cpu --timeout 10 --rows 5""",
    )
    run_cmd.add_argument("query_id", help="Catalog id (see `dmvwatch catalog`).")
    run_cmd.add_argument("--timeout", type=_positive_float, help="Deadline in seconds.")
    run_cmd.add_argument("--rows", type=int, default=10, help="Rows to print (0 for none).")
    run_cmd.add_argument("--json", action="store_true", help="Print the stored record as JSON.")

    schedule_cmd = sub.add_parser(
        "schedule",
        help="Start or stop the scheduler.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""Intervals come from scheduler.intervals in the settings file:
  {"scheduler": {"intervals": {"top-io": 900, "top-cpu": 300}}}""",
    )
    schedule_cmd.add_argument("action", choices=["start", "stop"])
    schedule_cmd.add_argument(
        "--once",
        action="store_true",
        help="Trigger every scheduled query once, wait for them and exit.",
    )

    report_cmd = sub.add_parser(
        "report",
        help="Compare the latest run of a query with an earlier one.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""Examples:
  dmvwatch report top-io
  dmvwatch report top-cpu --since 3 --all""",
    )
    report_cmd.add_argument("query_id")
    report_cmd.add_argument(
        "--since",
        type=_positive_int,
        default=1,
        help="Compare against the run N positions before the latest (default 1).",
    )
    report_cmd.add_argument("--all", action="store_true", help="Show every aligned row, not only regressions.")
    report_cmd.add_argument("--threshold", type=_non_negative_float,
                            help="Relative increase that counts as a regression.")

    session_cmd = sub.add_parser(
        "session",
        help="Manage Extended Events tracing sessions.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="Templates: " + ", ".join(sorted(SESSION_TEMPLATES)),
    )
    session_cmd.add_argument("action", choices=["create", "start", "stop", "drop", "read"])
    session_cmd.add_argument("template", choices=sorted(SESSION_TEMPLATES))
    session_cmd.add_argument("--name", help="Server-side session name (default: template name).")
    session_cmd.add_argument("--database", help="Database filter (default: configured database).")
    session_cmd.add_argument("--file-path", help="Event file target path on the server.")
    session_cmd.add_argument("--cpu-threshold-us", help="CPU threshold in microseconds.")
    session_cmd.add_argument("--rows", type=int, default=20, help="Events to print for `read`.")

    return parser


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def _non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must not be negative")
    return number


# =============================================================================
# Output helpers
# =============================================================================


def _cell(value: Any) -> str:
    text = "" if value is None else " ".join(str(value).split())
    if len(text) > _MAX_CELL_WIDTH:
        text = text[:_MAX_CELL_WIDTH - 3] + "..."
    return text


def format_table(rows: List[Dict[str, Any]], columns: Optional[List[str]] = None) -> str:
    """Plain-text table; columns default to the first row's keys"""
    if not rows:
        return "(no rows)"
    columns = columns or list(rows[0].keys())
    cells = [[_cell(row.get(column)) for column in columns] for row in rows]
    widths = [
        max(len(column), *(len(line[i]) for line in cells))
        for i, column in enumerate(columns)
    ]
    lines = [
        "  ".join(column.ljust(widths[i]) for i, column in enumerate(columns)),
        "  ".join("-" * width for width in widths),
    ]
    for line in cells:
        lines.append("  ".join(value.ljust(widths[i]) for i, value in enumerate(line)))
    return "\n".join(lines)


# =============================================================================
# Commands
# =============================================================================


def _run_catalog(catalog: QueryCatalog, args: argparse.Namespace) -> int:
    if args.json:
        print(json.dumps({"queries": [query.to_dict() for query in catalog]}, indent=2))
        return EXIT_OK

    rows = [
        {
            "id": query.id,
            "metric": query.metric_column,
            "identity": query.identity_column or "-",
            "interval": query.default_interval_seconds,
            "risk": ",".join(sorted(flag.value for flag in query.risk_flags)) or "-",
            "title": query.title,
        }
        for query in catalog
    ]
    print(format_table(rows))
    return EXIT_OK


def _run_query(settings: Settings, catalog: QueryCatalog, args: argparse.Namespace) -> int:
    query = catalog.get(args.query_id)
    connection = DatabaseConnection(settings.database)
    try:
        executor = QueryExecutor(connection, default_timeout=settings.database.query_timeout)
        with ResultStore(settings.results_file) as store:
            result = executor.execute(query, timeout=args.timeout)
            store.append(result)
    finally:
        connection.disconnect()

    if args.json:
        print(json.dumps(result.to_record(), indent=2, ensure_ascii=False))
        return EXIT_OK

    print(f"{query.id}: {result.row_count} rows in {result.duration_ms:.0f} ms "
          f"at {result.timestamp.isoformat()}")
    if args.rows > 0 and result.rows:
        columns = [c for c in result.columns if c in query.expected_columns] or list(result.columns)
        print(format_table([dict(row) for row in result.rows[:args.rows]], columns))
    return EXIT_OK


def _read_pid(pid_file: Path) -> Optional[int]:
    try:
        return int(pid_file.read_text(encoding="utf-8").strip())
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable pid file {pid_file}: {e}")
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _schedule_start(settings: Settings, catalog: QueryCatalog, args: argparse.Namespace) -> int:
    intervals = settings.scheduler.intervals
    if not intervals:
        raise ConfigError(
            "No queries scheduled: set scheduler.intervals in the settings file",
            {"example": {"top-io": 900}},
        )

    pid_file = settings.pid_file
    if not args.once:
        existing = _read_pid(pid_file)
        if existing is not None and existing != os.getpid() and _pid_alive(existing):
            print(f"error: scheduler already running (pid {existing})", file=sys.stderr)
            return EXIT_EXECUTION_ERROR

    connection = DatabaseConnection(settings.database)
    executor = QueryExecutor(connection, default_timeout=settings.database.query_timeout)
    with ResultStore(settings.results_file) as store:
        scheduler = DiagnosticScheduler(
            catalog,
            executor,
            store,
            intervals,
            max_in_flight=settings.scheduler.max_in_flight,
            poll_interval=settings.scheduler.poll_interval_seconds,
        )
        try:
            if args.once:
                return _schedule_once(scheduler)
            return _schedule_forever(scheduler, pid_file)
        finally:
            scheduler.stop(wait=True)
            connection.disconnect()


def _schedule_once(scheduler: DiagnosticScheduler) -> int:
    pending = set(scheduler.scheduled_ids)
    with LogContext(logger, f"Single pass over {len(pending)} scheduled queries"):
        while pending:
            pending -= set(scheduler.tick())
            scheduler.wait_until_idle()

    events = scheduler.events()
    for event in events:
        print(f"{event.query_id}: {event.outcome.value} {event.detail}".rstrip())
    failed = any(event.outcome == RunOutcome.FAILED for event in events)
    return EXIT_EXECUTION_ERROR if failed else EXIT_OK


def _schedule_forever(scheduler: DiagnosticScheduler, pid_file: Path) -> int:
    stop_requested = Event()

    def _request_stop(signum, frame):
        logger.info(f"Received signal {signum}, stopping scheduler")
        stop_requested.set()

    previous = {sig: signal.signal(sig, _request_stop) for sig in (signal.SIGTERM, signal.SIGINT)}
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()), encoding="utf-8")
    try:
        scheduler.start()
        print(f"Scheduler running (pid {os.getpid()}); stop with `dmvwatch schedule stop`")
        while not stop_requested.wait(0.5):
            if not scheduler.is_running:
                break
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        try:
            pid_file.unlink()
        except FileNotFoundError:
            pass
    return EXIT_OK


def _schedule_stop(settings: Settings) -> int:
    pid_file = settings.pid_file
    pid = _read_pid(pid_file)
    if pid is None:
        print("Scheduler is not running", file=sys.stderr)
        return EXIT_EXECUTION_ERROR

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        logger.warning(f"Removing stale pid file for pid {pid}")
        pid_file.unlink(missing_ok=True)
        print("Scheduler is not running", file=sys.stderr)
        return EXIT_EXECUTION_ERROR

    print(f"Sent stop request to scheduler (pid {pid})")
    return EXIT_OK


def _run_report(settings: Settings, catalog: QueryCatalog, args: argparse.Namespace) -> int:
    threshold = args.threshold if args.threshold is not None else settings.comparator.threshold
    with ResultStore(settings.results_file) as store:
        records = report(store, catalog, args.query_id, since=args.since,
                         threshold=threshold, include_all=args.all)

    if not records:
        print(f"{args.query_id}: no regressions above {threshold:.0%}")
        return EXIT_OK

    rows = [
        {
            "identity": record.label,
            "baseline": f"{record.baseline_value:g}",
            "current": f"{record.current_value:g}",
            "change": "new" if record.change_percent is None else f"{record.change_percent:+.1f}%",
            "flag": "REGRESSION" if record.exceeds_threshold else "",
        }
        for record in records
    ]
    first = records[0]
    print(f"{args.query_id} [{first.metric}] "
          f"{first.baseline_timestamp.isoformat()} -> {first.current_timestamp.isoformat()}")
    print(format_table(rows))
    return EXIT_OK


def _run_session(settings: Settings, args: argparse.Namespace) -> int:
    overrides = {
        "session_name": args.name,
        "database_name": args.database or settings.database.database,
        "file_path": args.file_path,
        "cpu_threshold_us": args.cpu_threshold_us,
    }
    connection = DatabaseConnection(settings.database)
    service = EventSessionService(connection)
    try:
        if args.action == "read":
            events = service.read_events(args.template, **overrides)
            print(format_table(events[:args.rows]) if args.rows > 0 else f"{len(events)} events")
            return EXIT_OK

        operation = getattr(service, args.action)
        name = operation(args.template, **overrides)
        print(f"{args.action}: [{name}]")
        return EXIT_OK
    finally:
        connection.disconnect()
