"""
Tests for ReimbursementWorkflow -- the transactional boundary.

These run against a file-backed SQLite database so every call really
commits in its own session, and subscribers run after the commit.

Covers:
- Submit notifies every admin; a failing recipient does not stop the others
- Approve / reject notify the owner with the outcome
- Kernel errors propagate unchanged; other exceptions become ServerFaultError
  and nothing from the failed call is persisted or published
- Audit failures never fail the operation
- Default database notification sink
- Ledger and report passthroughs
"""

from collections import Counter
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from reimbursement_config import Settings
from reimbursement_kernel.domain.approval import RequestStatus
from reimbursement_kernel.exceptions import (
    ForbiddenError,
    InvalidStateError,
    ServerFaultError,
    ValidationError,
)
from reimbursement_kernel.models.ledger import LedgerEntryModel
from reimbursement_kernel.models.notification import NotificationModel
from reimbursement_kernel.services.ledger_materializer import LedgerMaterializer
from reimbursement_services.notifications import (
    APPROVED_TITLE,
    PENDING_TITLE,
    REJECTED_TITLE,
)
from reimbursement_services.workflow import ReimbursementWorkflow


@pytest.fixture
def submitted(workflow, owner_id):
    request = workflow.create_request(owner_id, "Conference travel", "80", "100", "120")
    return workflow.submit_request(request.request_id, owner_id)


def _actions(workflow, request_id):
    return Counter(e.action for e in workflow.audit_trail(request_id))


class TestSubmitNotifications:

    def test_every_admin_notified(self, submitted, workflow, recording_sink, admin_ids):
        assert submitted.status == RequestStatus.PENDING
        assert recording_sink.recipients() == list(admin_ids)
        first = recording_sink.delivered[0]
        assert first["title"] == PENDING_TITLE
        assert first["link"] == f"/personal/{submitted.request_id}"
        assert _actions(workflow, submitted.request_id)["notify_admin_new_pending"] == 3

    def test_partial_delivery_failure(
        self, file_session_factory, directory, deterministic_clock, owner_id, admin_ids,
        make_sink, captured_logs,
    ):
        sink = make_sink(failing_users=[admin_ids[1]])
        workflow = ReimbursementWorkflow(
            file_session_factory,
            directory,
            clock=deterministic_clock,
            notification_sink_factory=lambda session: sink,
        )
        request = workflow.create_request(owner_id, "Taxi", 10, 12, 15)

        pending = workflow.submit_request(request.request_id, owner_id)

        assert pending.status == RequestStatus.PENDING
        assert sink.recipients() == [admin_ids[0], admin_ids[2]]
        assert _actions(workflow, request.request_id)["notify_admin_new_pending"] == 2
        failures = [r for r in captured_logs() if r["message"] == "admin_notification_failed"]
        assert [r["admin_id"] for r in failures] == [str(admin_ids[1])]

    def test_draft_creation_notifies_nobody(self, workflow, owner_id, recording_sink):
        workflow.create_request(owner_id, "Taxi", 10, 12, 15)
        assert recording_sink.delivered == []


class TestDecisionNotifications:

    def test_owner_told_of_approval(
        self, submitted, workflow, recording_sink, owner_id, admin_a, admin_b,
    ):
        first = workflow.record_decision(
            submitted.request_id, admin_a, "approve", approved_amount="100",
        )
        assert not first.finalized
        assert owner_id not in recording_sink.recipients()

        outcome = workflow.record_decision(
            submitted.request_id, admin_b, "approve", comment="Fine", approved_amount="101",
        )

        assert outcome.finalized
        assert outcome.request.approved_amount == Decimal("101")
        owner_messages = [d for d in recording_sink.delivered if d["user_id"] == owner_id]
        assert len(owner_messages) == 1
        assert owner_messages[0]["title"] == APPROVED_TITLE
        assert owner_messages[0]["body"] == "Conference travel was approved for 101: Fine"
        assert _actions(workflow, submitted.request_id)["notify_owner_decision"] == 1

    def test_unanimous_fractional_amount_reported_unrounded(
        self, workflow, file_session_factory, recording_sink, owner_id, admin_a, admin_b,
    ):
        request = workflow.create_request(owner_id, "Taxi", "90", "100", "110")
        workflow.submit_request(request.request_id, owner_id)
        workflow.record_decision(request.request_id, admin_a, "approve", approved_amount="100.5")

        outcome = workflow.record_decision(
            request.request_id, admin_b, "approve", approved_amount="100.5",
        )

        assert outcome.finalized
        assert outcome.request.approved_amount == Decimal("100.5")
        with file_session_factory() as session:
            entry = session.execute(
                select(LedgerEntryModel).where(LedgerEntryModel.source_request_id == request.request_id)
            ).scalar_one()
        assert entry.actual_amount == Decimal("100.5")
        owner_messages = [d for d in recording_sink.delivered if d["user_id"] == owner_id]
        assert [m["body"] for m in owner_messages] == ["Taxi was approved for 100.5"]
        assert owner_messages[0]["meta"]["approved_amount"] == Decimal("100.5")

    def test_owner_told_of_rejection(self, submitted, workflow, recording_sink, owner_id, admin_c):
        workflow.record_decision(submitted.request_id, admin_c, "reject", comment="No receipt")

        owner_messages = [d for d in recording_sink.delivered if d["user_id"] == owner_id]
        assert [m["title"] for m in owner_messages] == [REJECTED_TITLE]
        assert owner_messages[0]["body"].endswith("No receipt")

    def test_cancel_sends_nothing(self, submitted, workflow, recording_sink, owner_id):
        before = len(recording_sink.delivered)
        workflow.cancel_request(submitted.request_id, owner_id)
        assert len(recording_sink.delivered) == before


class TestErrors:

    def test_kernel_errors_propagate(self, submitted, workflow, owner_id):
        with pytest.raises(ForbiddenError):
            workflow.record_decision(submitted.request_id, uuid4(), "approve", approved_amount="1")
        with pytest.raises(InvalidStateError):
            workflow.submit_request(submitted.request_id, owner_id)

    def test_bad_actor_id(self, submitted, workflow):
        with pytest.raises(ValidationError) as exc_info:
            workflow.cancel_request(submitted.request_id, "not-an-id")
        assert exc_info.value.field == "actor_id"

    def test_unexpected_failure_rolls_back(
        self, monkeypatch, submitted, workflow, recording_sink, owner_id, admin_a, admin_b,
    ):
        workflow.record_decision(submitted.request_id, admin_a, "approve", approved_amount="100")

        def _explode(self, request, finalized_by):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(LedgerMaterializer, "materialize", _explode)

        with pytest.raises(ServerFaultError) as exc_info:
            workflow.record_decision(
                submitted.request_id, admin_b, "approve", approved_amount="100",
            )
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.operation == "record_decision"

        current = workflow.get_request(submitted.request_id)
        assert current.status == RequestStatus.PENDING
        assert current.approvals_count == 1
        assert [d.admin_id for d in workflow.get_approvals(submitted.request_id)] == [admin_a]
        assert owner_id not in recording_sink.recipients()

    def test_audit_failure_does_not_fail_submit(self, monkeypatch, workflow, owner_id, recording_sink):
        request = workflow.create_request(owner_id, "Taxi", 10, 12, 15)

        def _boom(_value):
            raise RuntimeError("audit store offline")

        monkeypatch.setattr("reimbursement_kernel.services.audit_recorder.to_json_safe", _boom)

        pending = workflow.submit_request(request.request_id, owner_id)

        assert pending.status == RequestStatus.PENDING
        assert len(recording_sink.delivered) == 3
        monkeypatch.undo()
        assert "submit" not in _actions(workflow, request.request_id)


class TestDatabaseSink:

    def test_notifications_stored(
        self, file_session_factory, directory, deterministic_clock, owner_id, admin_a,
    ):
        workflow = ReimbursementWorkflow(
            file_session_factory,
            directory,
            settings=Settings(notification_link_template="https://app.example/requests/{request_id}"),
            clock=deterministic_clock,
        )
        request = workflow.create_request(owner_id, "Taxi", 10, 12, 15)
        workflow.submit_request(request.request_id, owner_id)

        with file_session_factory() as session:
            rows = session.execute(
                select(NotificationModel).where(NotificationModel.user_id == admin_a)
            ).scalars().all()

        assert len(rows) == 1
        assert rows[0].title == PENDING_TITLE
        assert rows[0].link == f"https://app.example/requests/{request.request_id}"
        assert rows[0].is_read is False
        assert rows[0].meta["request_id"] == str(request.request_id)


class TestLedgerAndReports:

    def test_summary_round_trip(self, submitted, workflow, admin_a, admin_b):
        workflow.record_income("Donor grant", "1000")
        workflow.record_expense("Office rent", actual_amount="50")
        workflow.record_decision(submitted.request_id, admin_a, "approve", approved_amount="300")
        workflow.record_decision(submitted.request_id, admin_b, "approve", approved_amount="300")

        summary = workflow.summarize_month(2024, 1)

        assert summary.total_income == Decimal("1000")
        assert summary.total_ledger_expenses == Decimal("50")
        assert summary.total_personal_approved == Decimal("300")
        assert summary.remaining == Decimal("650")
        assert [r.request_id for r in workflow.approved_requests()] == [submitted.request_id]

    def test_edit_through_workflow(self, workflow, owner_id):
        request = workflow.create_request(owner_id, "Taxi", 10, 12, 15)
        edited = workflow.edit_request(request.request_id, owner_id, {"amount_max": "18"})
        assert edited.amount_max == Decimal("18")
        assert workflow.get_request(request.request_id).amount_max == Decimal("18")
