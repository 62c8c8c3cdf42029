"""
Module: reimbursement_kernel.models.audit_record
Responsibility: ORM persistence for the append-only audit trail.
Architecture position: Kernel > Models.  May import from db/ and exceptions.

Invariants enforced:
    - Audit records are append-only: ORM listeners reject UPDATE and DELETE.

Action tags:
    create, update, submit, cancelled,
    admin_approve, admin_reject, approved_final, rejected_final,
    created_from_personal_approval, income_recorded, expense_recorded,
    notify_admin_new_pending, notify_owner_decision (written by the
    notification subscriber)
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Index, String, event
from sqlalchemy.orm import Mapped, mapped_column

from reimbursement_kernel.db.base import Base, UTCDateTime, UUIDString
from reimbursement_kernel.exceptions import ImmutabilityViolationError
from reimbursement_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from reimbursement_kernel.domain.ledger import AuditEntry

logger = get_logger("models.audit_record")


class AuditAction(str, Enum):
    """Audit action tags."""

    # Request lifecycle
    CREATE = "create"
    UPDATE = "update"
    SUBMIT = "submit"
    CANCELLED = "cancelled"

    # Decisions
    ADMIN_APPROVE = "admin_approve"
    ADMIN_REJECT = "admin_reject"
    APPROVED_FINAL = "approved_final"
    REJECTED_FINAL = "rejected_final"

    # Ledger
    CREATED_FROM_PERSONAL_APPROVAL = "created_from_personal_approval"
    INCOME_RECORDED = "income_recorded"
    EXPENSE_RECORDED = "expense_recorded"

    # Notifications
    NOTIFY_ADMIN_NEW_PENDING = "notify_admin_new_pending"
    NOTIFY_OWNER_DECISION = "notify_owner_decision"


class AuditEntityType(str, Enum):
    REQUEST = "personal_expense"
    LEDGER_ENTRY = "expense"
    INCOME_ENTRY = "income"


class AuditRecord(Base):
    """Immutable audit fact."""

    __tablename__ = "audit_records"

    __table_args__ = (
        Index("ix_audit_records_entity", "entity_type", "entity_id", "recorded_at"),
        Index("ix_audit_records_action", "action"),
    )

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditRecord {self.entity_type}:{self.entity_id} {self.action}>"

    def to_dto(self) -> AuditEntry:
        from reimbursement_kernel.domain.ledger import AuditEntry

        return AuditEntry(
            record_id=self.id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            action=self.action,
            recorded_at=self.recorded_at,
            actor_id=self.actor_id,
            meta=dict(self.meta or {}),
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(AuditRecord, "before_update")
def prevent_audit_record_update(mapper, connection, target):
    """Prevent updates to audit records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditRecord",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditRecord",
        entity_id=str(target.id),
        reason="Audit records are immutable and cannot be modified",
    )


@event.listens_for(AuditRecord, "before_delete")
def prevent_audit_record_delete(mapper, connection, target):
    """Prevent deletion of audit records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditRecord",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditRecord",
        entity_id=str(target.id),
        reason="Audit records cannot be deleted",
    )
