#!/usr/bin/env python3
"""Command-line interface for the reconciliation sweeps.

Meant to be run from cron; each invocation runs one sweep and exits.

Usage:
    slip-reconcile daily
    slip-reconcile monthly --year 2024 --month 1 --format text
    slip-reconcile runs --kind daily --limit 5
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from ..config import Settings
from ..database import (
    ReconciliationRunRepository,
    create_async_engine,
    create_tables,
    get_async_session_factory,
    get_database_url,
    session_scope,
)
from ..exceptions import RunAlreadyActive
from ..services import PipelineDependencies
from .report import ReportGenerator
from .scheduler import ReconciliationScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ITEMS_FAILED = 1
EXIT_REFUSED = 2


def _write_output(output: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Report written to {output_file}")
    else:
        print(output)


def _install_stop_handlers(stop_event: asyncio.Event) -> List[signal.Signals]:
    """Let SIGINT/SIGTERM finish the current items and close the run as cancelled."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug(f"Signal handler for {sig.name} not installed")
        else:
            installed.append(sig)
    return installed


def _remove_stop_handlers(signals: List[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in signals:
        loop.remove_signal_handler(sig)


async def run_sweep_async(
    kind: str,
    year: Optional[int] = None,
    month: Optional[int] = None,
    output_file: Optional[str] = None,
    output_format: str = "json",
    database_url: Optional[str] = None,
    deps: Optional[PipelineDependencies] = None,
) -> int:
    """Run one sweep asynchronously.

    Args:
        kind: ``daily`` or ``monthly``.
        year: Year of the monthly period.
        month: Month of the monthly period.
        output_file: Optional output file path.
        output_format: Output format for the monthly summary.
        database_url: Database URL, defaults to DATABASE_URL.
        deps: Pipeline collaborators, built from the environment if omitted.

    Returns:
        Exit code (0 success, 1 some items failed, 2 refused or failed).
    """
    engine = create_async_engine(database_url=database_url or get_database_url())
    await create_tables(engine)
    session_factory = get_async_session_factory(engine)
    owns_deps = deps is None
    if deps is None:
        deps = PipelineDependencies.from_settings(Settings.from_env())

    stop_event = asyncio.Event()
    installed = _install_stop_handlers(stop_event)
    scheduler = ReconciliationScheduler(session_factory, deps, stop_event=stop_event)

    try:
        if kind == "daily":
            stats = await scheduler.run_daily()
            _write_output(json.dumps(stats.to_dict(), indent=2), output_file)
        else:
            summary = await scheduler.run_monthly(year, month)
            stats = summary.stats
            _write_output(ReportGenerator(summary).render(output_format), output_file)
    except RunAlreadyActive as e:
        logger.error(f"Sweep refused: {e.message}")
        return EXIT_REFUSED
    except Exception as e:
        logger.error(f"{kind.capitalize()} sweep failed: {e}")
        return EXIT_REFUSED
    finally:
        _remove_stop_handlers(installed)
        if owns_deps:
            await deps.aclose()
        await engine.dispose()

    if stats.items_failed:
        logger.warning(f"Sweep completed with {stats.items_failed} failed item(s)")
        return EXIT_ITEMS_FAILED
    return EXIT_OK


async def list_runs_async(
    kind: Optional[str] = None,
    limit: int = 20,
    database_url: Optional[str] = None,
) -> int:
    engine = create_async_engine(database_url=database_url or get_database_url())
    await create_tables(engine)
    try:
        async with session_scope(get_async_session_factory(engine)) as session:
            runs = await ReconciliationRunRepository(session).list_recent(kind=kind, limit=limit)
            print(json.dumps([run.to_dict() for run in runs], indent=2))
    finally:
        await engine.dispose()
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="slip-reconcile",
        description="Reconciliation sweeps for slip payments.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    daily_parser = subparsers.add_parser(
        "daily",
        help="Re-verify stuck slips, close overdue payments, send queued notifications",
    )
    daily_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )

    monthly_parser = subparsers.add_parser(
        "monthly",
        help="Summarize payments due in one month",
    )
    monthly_parser.add_argument(
        "--year", "-y",
        type=int,
        help="Year of the month to summarize (default: previous month)",
    )
    monthly_parser.add_argument(
        "--month", "-m",
        type=int,
        choices=range(1, 13),
        metavar="{1..12}",
        help="Month to summarize (default: previous month)",
    )
    monthly_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    monthly_parser.add_argument(
        "--format", "-f",
        choices=["json", "csv", "text", "detailed_text"],
        default="json",
        help="Output format (default: json)",
    )

    runs_parser = subparsers.add_parser(
        "runs",
        help="List recent sweep runs",
    )
    runs_parser.add_argument(
        "--kind", "-k",
        choices=["daily", "monthly"],
        help="Only list runs of this kind",
    )
    runs_parser.add_argument(
        "--limit", "-n",
        type=int,
        default=20,
        help="Number of runs to list (default: 20)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return EXIT_REFUSED

    if parsed_args.command == "runs":
        return asyncio.run(list_runs_async(kind=parsed_args.kind, limit=parsed_args.limit))

    if parsed_args.command == "monthly":
        if (parsed_args.year is None) != (parsed_args.month is None):
            logger.error("--year and --month must be given together")
            return EXIT_REFUSED
        return asyncio.run(run_sweep_async(
            kind="monthly",
            year=parsed_args.year,
            month=parsed_args.month,
            output_file=parsed_args.output,
            output_format=parsed_args.format,
        ))

    return asyncio.run(run_sweep_async(kind="daily", output_file=parsed_args.output))


if __name__ == "__main__":
    sys.exit(main())
