"""
Tests for LedgerMaterializer -- approved request -> exactly one ledger entry.

Covers:
- First materialization creates the entry with the request's data
- Repeated materialization returns the existing entry (idempotency)
- A later, different resolved amount never overwrites the first entry
- An insert that collides on source_request_id falls back to the existing entry
- Requests that are not approved are refused
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from reimbursement_kernel.domain.approval import RequestStatus
from reimbursement_kernel.exceptions import InvalidStateError
from reimbursement_kernel.models.ledger import LedgerEntryModel
from reimbursement_kernel.models.request import ReimbursementRequestModel


@pytest.fixture
def approved_request(session, owner_id, deterministic_clock):
    """An approved request row that has not been materialized yet."""
    now = deterministic_clock.now()
    model = ReimbursementRequestModel(
        owner_id=owner_id,
        title="Printer toner",
        description="",
        amount_min=Decimal("40"),
        amount_avg=Decimal("45"),
        amount_max=Decimal("50"),
        status=RequestStatus.APPROVED.value,
        required_approver_count=2,
        approvals_count=2,
        approved_amount=Decimal("47"),
        approved_at=datetime(2024, 1, 14, 9, 0, tzinfo=timezone.utc),
        attachments=[{"name": "invoice.pdf"}],
        created_at=now,
        updated_at=now,
    )
    session.add(model)
    session.flush()
    return model.to_dto()


def _entries_for(session, request_id):
    return session.execute(
        select(func.count())
        .select_from(LedgerEntryModel)
        .where(LedgerEntryModel.source_request_id == request_id)
    ).scalar_one()


class TestMaterialize:

    def test_creates_entry(self, materializer, approved_request, admin_a, session):
        entry, created = materializer.materialize(approved_request, finalized_by=admin_a)

        assert created
        assert entry.source_request_id == approved_request.request_id
        assert entry.is_materialized
        assert entry.title == "[Personal] Printer toner"
        assert entry.actual_amount == Decimal("47")
        assert entry.recognized_amount == Decimal("47")
        assert entry.amount_min == Decimal("40")
        assert entry.entry_date == approved_request.approved_at
        assert entry.created_by == admin_a
        assert entry.attachments == ({"name": "invoice.pdf"},)
        assert _entries_for(session, approved_request.request_id) == 1

    def test_second_call_returns_existing(
        self, materializer, approved_request, admin_a, admin_b, session,
    ):
        first, _ = materializer.materialize(approved_request, finalized_by=admin_a)
        second, created = materializer.materialize(approved_request, finalized_by=admin_b)

        assert not created
        assert second.entry_id == first.entry_id
        assert _entries_for(session, approved_request.request_id) == 1

    def test_first_amount_wins(
        self, materializer, approved_request, admin_a, session, captured_logs,
    ):
        first, _ = materializer.materialize(approved_request, finalized_by=admin_a)
        changed = replace(approved_request, approved_amount=Decimal("60"))

        entry, created = materializer.materialize(changed, finalized_by=admin_a)

        assert not created
        assert entry.entry_id == first.entry_id
        assert entry.actual_amount == Decimal("47")
        conflicts = [r for r in captured_logs() if r["message"] == "materialization_conflict"]
        assert len(conflicts) == 1
        assert conflicts[0]["resolved_amount"] == "60"

    def test_unique_collision_returns_existing(
        self, materializer, approved_request, admin_a, admin_b, session, monkeypatch,
        captured_logs,
    ):
        first, _ = materializer.materialize(approved_request, finalized_by=admin_a)

        # Another transaction committed its entry after this one looked
        find = materializer._find
        lookups = []

        def _find_after_miss(request_id):
            lookups.append(request_id)
            return None if len(lookups) == 1 else find(request_id)

        monkeypatch.setattr(materializer, "_find", _find_after_miss)
        changed = replace(approved_request, approved_amount=Decimal("60"))

        entry, created = materializer.materialize(changed, finalized_by=admin_b)

        assert not created
        assert len(lookups) == 2
        assert entry.entry_id == first.entry_id
        assert entry.actual_amount == Decimal("47")
        assert entry.created_by == admin_a
        assert _entries_for(session, approved_request.request_id) == 1
        messages = [r["message"] for r in captured_logs()]
        assert "materialization_race_lost" in messages
        assert "materialization_conflict" in messages

    @pytest.mark.parametrize("status", [RequestStatus.PENDING, RequestStatus.REJECTED])
    def test_refuses_unapproved(self, materializer, approved_request, admin_a, status):
        with pytest.raises(InvalidStateError) as exc_info:
            materializer.materialize(replace(approved_request, status=status), finalized_by=admin_a)
        assert exc_info.value.operation == "materialize"

    def test_refuses_missing_amount(self, materializer, approved_request, admin_a):
        with pytest.raises(InvalidStateError):
            materializer.materialize(
                replace(approved_request, approved_amount=None), finalized_by=admin_a,
            )
