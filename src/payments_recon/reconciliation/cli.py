#!/usr/bin/env python3
"""Command-line interface for reconciliation runs.

This CLI runs reconciliation between the app ledger and the payment
gateway ledger and reads back stored runs.

Usage:
    payments-recon run --period-start 2024-01-01 --period-end 2024-01-31
    payments-recon run --period-start 2024-01-01 --period-end 2024-01-31 --county Nairobi --dry-run
    payments-recon run --period-start 2024-01-01 --period-end 2024-01-31 --no-sync
    payments-recon run --period-start 2024-01-01 --period-end 2024-01-31 --app-file app.json --gateway-file gateway.json
    payments-recon show --run-id <run_id>
    payments-recon export --run-id <run_id> --status amount_mismatch --output mismatches.json
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date, datetime
from typing import Any, Dict, Optional

from ..database import DatabaseManager
from .errors import ConcurrentRunConflict, LedgerFetchError, RunNotFound, StorageError
from .ledger import StaticLedgerSource
from .models import ItemStatus, RecordSource, RunStatus, TriggerRequest
from .service import create_reconciliation_service
from .store import DatabaseRunStore

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_FAILED = 2
EXIT_INVALID = 3

RUN_STATUS_EXIT_CODES = {
    RunStatus.SUCCESS: EXIT_SUCCESS,
    RunStatus.PARTIAL: EXIT_PARTIAL,
    RunStatus.FAILED: EXIT_FAILED,
}


def parse_date(date_string: str) -> date:
    """Parse a date string in various formats.

    Args:
        date_string: Date string (YYYY-MM-DD) or ISO datetime.

    Returns:
        Parsed date object.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    formats = [
        "%Y-%m-%d",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%d %H:%M:%S",
    ]

    for fmt in formats:
        try:
            return datetime.strptime(date_string, fmt).date()
        except ValueError:
            continue

    raise ValueError(
        f"Unable to parse date: {date_string}. Expected format: YYYY-MM-DD"
    )


def write_output(payload: Any, output_file: Optional[str] = None) -> None:
    """Write a JSON payload to a file or stdout."""
    output = json.dumps(payload, indent=2, default=str)
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Output written to {output_file}")
    else:
        print(output)


async def _open_database() -> DatabaseManager:
    db_manager = DatabaseManager()
    # Create tables if they don't exist
    await db_manager.initialize(create_tables=True)
    return db_manager


async def run_reconciliation_async(args: argparse.Namespace) -> int:
    """Run reconciliation asynchronously.

    Returns:
        Exit code (0 success, 1 partial, 2 failed, 3 conflict or invalid input).
    """
    try:
        request = TriggerRequest(
            dry_run=args.dry_run,
            sync=args.sync,
            period_start=parse_date(args.period_start),
            period_end=parse_date(args.period_end),
            county=args.county,
            amount_percentage_tolerance=args.amount_percentage_tolerance,
            amount_absolute_tolerance=args.amount_absolute_tolerance,
            date_tolerance=args.date_tolerance,
            fuzzy_match_threshold=args.fuzzy_match_threshold,
        )
        app_ledger = (
            StaticLedgerSource.from_json_file(args.app_file, RecordSource.APP)
            if args.app_file else None
        )
        gateway_ledger = (
            StaticLedgerSource.from_json_file(args.gateway_file, RecordSource.GATEWAY)
            if args.gateway_file else None
        )
    except (ValueError, LedgerFetchError) as e:
        logger.error(str(e))
        return EXIT_INVALID

    db_manager = await _open_database()

    try:
        service = create_reconciliation_service(
            db_manager.session_factory,
            app_ledger=app_ledger,
            gateway_ledger=gateway_ledger,
            provider=args.provider,
        )
        result = await service.trigger(request, created_by=args.operator)
        if not request.sync:
            logger.info(f"Run {result.run.run_id} queued, waiting for it to finish")
            result = await service.wait(result.run.run_id)
    except ConcurrentRunConflict as e:
        logger.error(str(e))
        return EXIT_INVALID
    except ValueError as e:
        # InvalidPolicy, unsupported provider or missing provider credentials
        logger.error(str(e))
        return EXIT_INVALID
    except StorageError as e:
        logger.error(str(e))
        return EXIT_FAILED
    finally:
        await db_manager.shutdown()

    run = result.run
    payload: Dict[str, Any] = run.to_summary_dict()
    payload["persisted"] = result.persisted
    if not args.summary_only:
        payload["items"] = [item.model_dump(mode="json") for item in result.items]
    write_output(payload, args.output)

    if run.status == RunStatus.PARTIAL:
        logger.warning(
            f"Reconciliation completed with issues: "
            f"{run.total_unmatched_app} unmatched app, "
            f"{run.total_unmatched_gateway} unmatched gateway, "
            f"{run.total_amount_mismatch} amount mismatches, "
            f"{run.total_duplicate} duplicates"
        )
    elif run.status == RunStatus.FAILED:
        logger.error(f"Reconciliation failed: {run.error_message}")

    return RUN_STATUS_EXIT_CODES[run.status]


async def show_run_async(args: argparse.Namespace) -> int:
    """Print a stored run summary."""
    db_manager = await _open_database()
    try:
        run, items = await DatabaseRunStore(db_manager.session_factory).get(args.run_id)
    except RunNotFound as e:
        logger.error(str(e))
        return EXIT_INVALID
    except StorageError as e:
        logger.error(str(e))
        return EXIT_FAILED
    finally:
        await db_manager.shutdown()

    payload = run.to_summary_dict()
    payload["item_count"] = len(items)
    write_output(payload)
    return EXIT_SUCCESS


async def export_run_async(args: argparse.Namespace) -> int:
    """Write the items of a stored run as JSON."""
    status = ItemStatus(args.status) if args.status else None
    db_manager = await _open_database()
    try:
        items = await DatabaseRunStore(db_manager.session_factory).export(args.run_id, status)
    except RunNotFound as e:
        logger.error(str(e))
        return EXIT_INVALID
    except StorageError as e:
        logger.error(str(e))
        return EXIT_FAILED
    finally:
        await db_manager.shutdown()

    write_output([item.model_dump(mode="json") for item in items], args.output)
    return EXIT_SUCCESS


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="payments-recon",
        description="Reconcile app payment records against the payment gateway ledger.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run a reconciliation",
    )
    run_parser.add_argument(
        "--period-start", "-s",
        required=True,
        help="First day of the period (YYYY-MM-DD)",
    )
    run_parser.add_argument(
        "--period-end", "-e",
        required=True,
        help="Last day of the period, inclusive (YYYY-MM-DD)",
    )
    run_parser.add_argument(
        "--county", "-c",
        help="Only reconcile records for this county",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview the result without storing the run",
    )
    run_parser.add_argument(
        "--sync",
        dest="sync",
        action="store_true",
        default=True,
        help="Run the reconciliation in the foreground (default)",
    )
    run_parser.add_argument(
        "--no-sync",
        dest="sync",
        action="store_false",
        help="Queue the run as a background task and wait for its result",
    )
    run_parser.add_argument(
        "--app-file",
        help="JSON file with app ledger records (default: payments table)",
    )
    run_parser.add_argument(
        "--gateway-file",
        help="JSON file with gateway ledger records (default: provider API)",
    )
    run_parser.add_argument(
        "--provider", "-p",
        default=None,
        help="Gateway provider (default: RECONCILIATION_GATEWAY_PROVIDER or stripe)",
    )
    run_parser.add_argument(
        "--amount-percentage-tolerance",
        type=float,
        help="Allowed amount difference as a fraction of the larger amount",
    )
    run_parser.add_argument(
        "--amount-absolute-tolerance",
        help="Allowed absolute amount difference",
    )
    run_parser.add_argument(
        "--date-tolerance",
        type=int,
        help="Allowed date difference in days",
    )
    run_parser.add_argument(
        "--fuzzy-match-threshold",
        type=int,
        help="Minimum fuzzy match score (0-100)",
    )
    run_parser.add_argument(
        "--operator",
        default="cli",
        help="Operator recorded as the run creator (default: cli)",
    )
    run_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    run_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Only include the run summary, not the classified items",
    )

    # Show command
    show_parser = subparsers.add_parser(
        "show",
        help="Show a stored run",
    )
    show_parser.add_argument("--run-id", required=True, help="Run identifier")

    # Export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export the items of a stored run",
    )
    export_parser.add_argument("--run-id", required=True, help="Run identifier")
    export_parser.add_argument(
        "--status",
        choices=[status.value for status in ItemStatus],
        help="Only export items with this status",
    )
    export_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
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
        return EXIT_INVALID

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    commands = {
        "run": run_reconciliation_async,
        "show": show_run_async,
        "export": export_run_async,
    }
    return asyncio.run(commands[parsed_args.command](parsed_args))


if __name__ == "__main__":
    sys.exit(main())
