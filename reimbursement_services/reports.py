"""
reimbursement_services.reports -- exports built on the aggregation engine.

``write_approved_requests_csv`` produces the approved-expenses report:
one row per approved request, in the column layout finance staff import
into spreadsheets.
"""

from __future__ import annotations

import csv
from collections.abc import Callable, Iterable
from typing import IO
from uuid import UUID

from reimbursement_kernel.domain.approval import ReimbursementRequest
from reimbursement_kernel.domain.reporting import FinancialSummary
from reimbursement_kernel.utils.serialization import to_json_safe

APPROVED_REQUEST_COLUMNS = (
    "id",
    "title",
    "description",
    "user",
    "user_email",
    "category",
    "amount_min",
    "amount_avg",
    "amount_max",
    "requested_amount",
    "approved_amount",
    "start_date",
    "end_date",
    "status",
    "createdAt",
    "updatedAt",
)

# (display name, email) for a user id
UserLookup = Callable[[UUID], tuple[str, str]]
CategoryLookup = Callable[[UUID], str]


def _cell(value) -> str:
    if value is None:
        return ""
    return str(to_json_safe(value))


def approved_request_row(
    request: ReimbursementRequest,
    user_lookup: UserLookup | None = None,
    category_lookup: CategoryLookup | None = None,
) -> dict[str, str]:
    user_name, user_email = (
        user_lookup(request.owner_id) if user_lookup else (str(request.owner_id), "")
    )
    category = ""
    if request.category_id is not None:
        category = category_lookup(request.category_id) if category_lookup else str(request.category_id)
    return {
        "id": str(request.request_id),
        "title": request.title,
        "description": request.description,
        "user": user_name,
        "user_email": user_email,
        "category": category,
        "amount_min": _cell(request.amount_min),
        "amount_avg": _cell(request.amount_avg),
        "amount_max": _cell(request.amount_max),
        "requested_amount": _cell(request.requested_amount),
        "approved_amount": _cell(request.approved_amount),
        "start_date": _cell(request.start_date),
        "end_date": _cell(request.end_date),
        "status": request.status.value,
        "createdAt": _cell(request.created_at),
        "updatedAt": _cell(request.updated_at),
    }


def write_approved_requests_csv(
    requests: Iterable[ReimbursementRequest],
    out: IO[str],
    user_lookup: UserLookup | None = None,
    category_lookup: CategoryLookup | None = None,
) -> int:
    """Write the report to ``out``; returns the number of data rows."""
    writer = csv.DictWriter(out, fieldnames=APPROVED_REQUEST_COLUMNS)
    writer.writeheader()
    count = 0
    for request in requests:
        writer.writerow(approved_request_row(request, user_lookup, category_lookup))
        count += 1
    return count


def format_summary(summary: FinancialSummary) -> str:
    """Plain-text rendering used by the CLI."""
    rows = [
        ("Period", f"{summary.start.date().isoformat()} .. {summary.end.date().isoformat()}"),
        ("Total income", _cell(summary.total_income)),
        ("Ledger expenses", _cell(summary.total_ledger_expenses)),
        ("Approved personal expenses", _cell(summary.total_personal_approved)),
        ("Total expenses", _cell(summary.total_expenses)),
        ("Remaining", _cell(summary.remaining)),
    ]
    width = max(len(label) for label, _ in rows)
    return "\n".join(f"{label.ljust(width)}  {value}" for label, value in rows)
