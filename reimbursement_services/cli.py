"""
Command-line entry point.

Usage:
    python -m reimbursement_services.cli init-db
    python -m reimbursement_services.cli summary [--from YYYY-MM-DD] [--to YYYY-MM-DD]
    python -m reimbursement_services.cli summary --month 2024-01
    python -m reimbursement_services.cli export-approved [--from ..] [--to ..] [--out FILE]

Settings come from ``reimbursement_config.load_settings()`` (``--config``
overrides the ``REIMBURSEMENT_CONFIG`` file).
"""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

from reimbursement_config import load_settings
from reimbursement_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_settings,
)
from reimbursement_kernel.exceptions import ReimbursementKernelError
from reimbursement_kernel.logging_config import configure_logging, get_logger
from reimbursement_services.collaborators import StaticDirectory
from reimbursement_services.reports import format_summary, write_approved_requests_csv
from reimbursement_services.workflow import ReimbursementWorkflow

logger = get_logger("cli")


def _month(value: str) -> tuple[int, int]:
    try:
        year, month = value.split("-", 1)
        parsed = (int(year), int(month))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {value!r}") from None
    if not 1 <= parsed[1] <= 12:
        raise argparse.ArgumentTypeError(f"month out of range in {value!r}")
    return parsed


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="reimbursement",
        description="Reimbursement ledger maintenance and reports.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables.")

    summary = sub.add_parser("summary", help="Income vs. expenses for a period.")
    summary.add_argument("--from", dest="start", type=date.fromisoformat, default=None)
    summary.add_argument("--to", dest="end", type=date.fromisoformat, default=None)
    summary.add_argument("--month", type=_month, default=None, help="YYYY-MM")

    export = sub.add_parser("export-approved", help="CSV of approved requests.")
    export.add_argument("--from", dest="start", type=date.fromisoformat, default=None)
    export.add_argument("--to", dest="end", type=date.fromisoformat, default=None)
    export.add_argument("--out", type=Path, default=None, help="Output file (default: stdout).")

    args = parser.parse_args(argv)
    if args.command == "summary" and args.month and (args.start or args.end):
        parser.error("--month cannot be combined with --from/--to")
    return args


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings(args.config)
    configure_logging(level=settings.log_level)
    init_engine_from_settings(settings)

    if args.command == "init-db":
        create_tables()
        print("Tables created.")
        return 0

    # Reports need no approvers
    workflow = ReimbursementWorkflow(
        get_session_factory(),
        StaticDirectory(admins=()),
        settings=settings,
        subscribe_notifications=False,
    )
    try:
        if args.command == "summary":
            if args.month:
                result = workflow.summarize_month(*args.month)
            else:
                result = workflow.summarize(args.start, args.end)
            print(format_summary(result))
            return 0

        requests = workflow.approved_requests(args.start, args.end)
        if args.out is None:
            count = write_approved_requests_csv(requests, sys.stdout)
        else:
            with open(args.out, "w", newline="", encoding="utf-8") as f:
                count = write_approved_requests_csv(requests, f)
        logger.info("approved_requests_exported", extra={"rows": count})
        return 0
    except ReimbursementKernelError as exc:
        print(f"error [{exc.code}]: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
