"""Tests for the approved-requests CSV export and the summary rendering."""

import csv
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

from reimbursement_kernel.domain.approval import ReimbursementRequest, RequestStatus
from reimbursement_kernel.domain.reporting import FinancialSummary, month_range
from reimbursement_services.reports import (
    APPROVED_REQUEST_COLUMNS,
    format_summary,
    write_approved_requests_csv,
)

MOMENT = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def _approved(**overrides):
    values = dict(
        request_id=uuid4(),
        owner_id=uuid4(),
        title="Conference travel",
        description="Flights, two nights",
        amount_min=Decimal("80.000000000"),
        amount_avg=Decimal("100.000000000"),
        amount_max=Decimal("120.000000000"),
        status=RequestStatus.APPROVED,
        approved_amount=Decimal("101.000000000"),
        approved_at=MOMENT,
        start_date=date(2024, 1, 10),
        created_at=MOMENT,
        updated_at=MOMENT,
    )
    values.update(overrides)
    return ReimbursementRequest(**values)


def _rows(text):
    return list(csv.DictReader(StringIO(text)))


class TestApprovedExport:

    def test_header_and_values(self):
        request = _approved()
        out = StringIO()

        count = write_approved_requests_csv([request], out)

        assert count == 1
        reader = csv.reader(StringIO(out.getvalue()))
        assert tuple(next(reader)) == APPROVED_REQUEST_COLUMNS
        row = _rows(out.getvalue())[0]
        assert row["id"] == str(request.request_id)
        assert row["user"] == str(request.owner_id)
        assert row["amount_avg"] == "100"
        assert row["approved_amount"] == "101"
        assert row["requested_amount"] == ""
        assert row["start_date"] == "2024-01-10"
        assert row["end_date"] == ""
        assert row["status"] == "approved"
        assert row["createdAt"] == MOMENT.isoformat()

    def test_lookups(self):
        category = uuid4()
        request = _approved(category_id=category)
        out = StringIO()

        write_approved_requests_csv(
            [request],
            out,
            user_lookup=lambda uid: ("Farid Ahmadi", "farid@example.org"),
            category_lookup=lambda cid: "Travel",
        )

        row = _rows(out.getvalue())[0]
        assert row["user"] == "Farid Ahmadi"
        assert row["user_email"] == "farid@example.org"
        assert row["category"] == "Travel"

    def test_empty_export_has_header(self):
        out = StringIO()
        assert write_approved_requests_csv([], out) == 0
        assert out.getvalue().strip() == ",".join(APPROVED_REQUEST_COLUMNS)


class TestFormatSummary:

    def test_lines(self):
        rng = month_range(2024, 1)
        text = format_summary(
            FinancialSummary(
                start=rng.start,
                end=rng.end,
                total_income=Decimal("1000.000000000"),
                total_ledger_expenses=Decimal("0"),
                total_personal_approved=Decimal("300"),
            )
        )
        lines = text.splitlines()
        assert lines[0].split() == ["Period", "2024-01-01", "..", "2024-01-31"]
        assert lines[-1].split() == ["Remaining", "700"]
        assert any(line.startswith("Total income") and line.endswith("1000") for line in lines)
