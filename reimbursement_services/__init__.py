"""
reimbursement_services -- boundary layer over the reimbursement kernel.

Owns transactions (the kernel only flushes), publishes domain events after
commit, and provides the collaborator implementations, notification
subscriber, reports and CLI.

Dependency direction:
    reimbursement_services/ -> reimbursement_kernel/, reimbursement_config/
    reimbursement_kernel/   -> reimbursement_services/ (FORBIDDEN)
"""

from reimbursement_services.collaborators import StaticCategoryResolver, StaticDirectory
from reimbursement_services.notifications import (
    DatabaseNotificationSink,
    NotificationSubscriber,
)
from reimbursement_services.workflow import ReimbursementWorkflow

__all__ = [
    "DatabaseNotificationSink",
    "NotificationSubscriber",
    "ReimbursementWorkflow",
    "StaticCategoryResolver",
    "StaticDirectory",
]
