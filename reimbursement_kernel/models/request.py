"""
Module: reimbursement_kernel.models.request
Responsibility: ORM persistence for reimbursement requests and the per-admin
    decisions recorded against them.

Architecture position: Kernel > Models.  May import from db/ only
    (domain DTOs are imported lazily inside to_dto()).

Invariants enforced:
    - Status values are limited by a CHECK constraint; transition rules are
      enforced by ConsensusEngine with conditional UPDATEs.
    - UNIQUE(request_id, admin_id): at most one decision per admin per
      request.  Writes are insert-or-update on that key, so a re-vote
      overwrites rather than duplicates.
    - approved_amount and approved_at are written together, once, by the
      pending -> approved transition.

Failure modes:
    - IntegrityError on a duplicate (request_id, admin_id) plain INSERT.
      ConsensusEngine never issues one; it upserts.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from reimbursement_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from reimbursement_kernel.domain.approval import DecisionRecord, ReimbursementRequest


class ReimbursementRequestModel(TrackedBase):
    """Persistent reimbursement request.

    Contract:
        Mutable only while status is ``draft`` (owner edits).  Terminal
        statuses (approved, rejected, cancelled) are never left.
    """

    __tablename__ = "reimbursement_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'pending', 'approved', 'rejected', 'cancelled')",
            name="ck_reimbursement_requests_valid_status",
        ),
        CheckConstraint(
            "required_approver_count >= 1",
            name="ck_reimbursement_requests_quorum_positive",
        ),
        Index("ix_reimbursement_requests_owner", "owner_id", "created_at"),
        # Aggregation scans approved requests by finalization time
        Index("ix_reimbursement_requests_status_approved_at", "status", "approved_at"),
    )

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    category_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    amount_min: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    amount_avg: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    amount_max: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    requested_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    required_approver_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=2,
    )
    approvals_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approved_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    attachments: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ReimbursementRequest {self.id} {self.title!r} status={self.status}>"

    def to_dto(self) -> ReimbursementRequest:
        """Convert ORM model to frozen domain DTO."""
        from reimbursement_kernel.domain.approval import (
            ReimbursementRequest as ReimbursementRequestDTO,
            RequestStatus,
        )

        return ReimbursementRequestDTO(
            request_id=self.id,
            owner_id=self.owner_id,
            title=self.title,
            description=self.description or "",
            category_id=self.category_id,
            amount_min=self.amount_min,
            amount_avg=self.amount_avg,
            amount_max=self.amount_max,
            requested_amount=self.requested_amount,
            unit=self.unit,
            start_date=self.start_date,
            end_date=self.end_date,
            status=RequestStatus(self.status),
            required_approver_count=self.required_approver_count,
            approvals_count=self.approvals_count,
            approved_amount=self.approved_amount,
            approved_at=self.approved_at,
            attachments=tuple(dict(a) for a in (self.attachments or ())),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class ApprovalDecisionModel(Base):
    """One admin's current decision on one request.

    Guarantees:
        - UNIQUE(request_id, admin_id).
    """

    __tablename__ = "approval_decisions"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "admin_id",
            name="uq_approval_decisions_request_admin",
        ),
        CheckConstraint(
            "decision IN ('approve', 'reject')",
            name="ck_approval_decisions_valid_decision",
        ),
        Index("ix_approval_decisions_request_id", "request_id"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("reimbursement_requests.id"),
        nullable=False,
    )
    admin_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    decision: Mapped[str] = mapped_column(String(10), nullable=False)
    comment: Mapped[str] = mapped_column(Text, default="", nullable=False)
    approved_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    decided_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalDecision {self.id} "
            f"request={self.request_id} admin={self.admin_id} "
            f"decision={self.decision}>"
        )

    def to_dto(self) -> DecisionRecord:
        """Convert ORM model to frozen domain DTO."""
        from reimbursement_kernel.domain.approval import Decision, DecisionRecord

        return DecisionRecord(
            decision_id=self.id,
            request_id=self.request_id,
            admin_id=self.admin_id,
            decision=Decision(self.decision),
            comment=self.comment or "",
            approved_amount=self.approved_amount,
            decided_at=self.decided_at,
        )
