"""Pure domain layer: value objects, lifecycle rules, events and clocks."""

from reimbursement_kernel.domain.approval import (
    EDITABLE_FIELDS,
    REQUEST_TRANSITIONS,
    TERMINAL_REQUEST_STATUSES,
    ApprovalProgress,
    Decision,
    DecisionOutcome,
    DecisionRecord,
    EditDiff,
    ReimbursementRequest,
    RequestStatus,
    distinct_approvers,
    is_transition_allowed,
    resolve_approved_amount,
    source_statuses,
)
from reimbursement_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from reimbursement_kernel.domain.events import EventBus, EventKind, RequestEvent
from reimbursement_kernel.domain.reporting import (
    DateRange,
    FinancialSummary,
    month_range,
    resolve_range,
)

__all__ = [
    "ApprovalProgress",
    "Clock",
    "DateRange",
    "Decision",
    "DecisionOutcome",
    "DecisionRecord",
    "DeterministicClock",
    "EDITABLE_FIELDS",
    "EditDiff",
    "EventBus",
    "EventKind",
    "FinancialSummary",
    "REQUEST_TRANSITIONS",
    "ReimbursementRequest",
    "RequestEvent",
    "RequestStatus",
    "SystemClock",
    "TERMINAL_REQUEST_STATUSES",
    "distinct_approvers",
    "is_transition_allowed",
    "month_range",
    "resolve_approved_amount",
    "resolve_range",
    "source_statuses",
]
