"""SQLAlchemy ORM models. Importing this package registers every table."""

from reimbursement_kernel.models.audit_record import AuditAction, AuditEntityType, AuditRecord
from reimbursement_kernel.models.ledger import IncomeEntryModel, LedgerEntryModel
from reimbursement_kernel.models.notification import NotificationModel
from reimbursement_kernel.models.request import (
    ApprovalDecisionModel,
    ReimbursementRequestModel,
)

__all__ = [
    "ApprovalDecisionModel",
    "AuditAction",
    "AuditEntityType",
    "AuditRecord",
    "IncomeEntryModel",
    "LedgerEntryModel",
    "NotificationModel",
    "ReimbursementRequestModel",
]
