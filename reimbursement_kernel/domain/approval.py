"""
Approval domain types (``reimbursement_kernel.domain.approval``).

Responsibility
--------------
Pure value objects and rules for the reimbursement request lifecycle: the
status state machine, decision values, immutable request/decision
snapshots, and the amount reconciliation applied when quorum is reached.

Architecture position
---------------------
**Kernel domain layer**.  ZERO I/O.  Only the pure money helpers of
``db.types`` are used; nothing from ``models/``, ``services/`` or
``selectors/``.

Lifecycle
---------
::

    draft   --submit-->  pending
    draft   --cancel-->  cancelled
    draft   --edit--->   draft       (no status change)
    pending --cancel-->  cancelled
    pending --reject-->  rejected    (any single admin, terminal)
    pending --approve--> approved    (Nth distinct admin, terminal)
    pending --approve--> pending     (fewer than N distinct admins, no status change)

``REQUEST_TRANSITIONS`` holds the status changes; the engine refuses any
other move with ``InvalidStateError``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from reimbursement_kernel.db.types import money_from_value, round_money
from reimbursement_kernel.exceptions import ValidationError


# =========================================================================
# Request Status Lifecycle
# =========================================================================


class RequestStatus(str, Enum):
    """Reimbursement request lifecycle states."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Status changes only.  Editing a draft and recording an approval below
# quorum leave the status where it is and are not edges.
REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({
        RequestStatus.PENDING,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.PENDING: frozenset({
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
})

# Attributes the owner may change while the request is a draft.
EDITABLE_FIELDS: frozenset[str] = frozenset({
    "title",
    "description",
    "category",
    "amount_min",
    "amount_avg",
    "amount_max",
    "requested_amount",
    "unit",
    "start_date",
    "end_date",
    "attachments",
})

AMOUNT_FIELDS: frozenset[str] = frozenset({
    "amount_min",
    "amount_avg",
    "amount_max",
    "requested_amount",
})

DEFAULT_REQUIRED_APPROVERS = 2


def is_transition_allowed(current: RequestStatus, target: RequestStatus) -> bool:
    """Check whether ``current -> target`` is an edge of the lifecycle."""
    return target in REQUEST_TRANSITIONS.get(current, frozenset())


def source_statuses(target: RequestStatus) -> frozenset[RequestStatus]:
    """Statuses a request may be in for a move to ``target``."""
    return frozenset(
        current for current, targets in REQUEST_TRANSITIONS.items() if target in targets
    )


class Decision(str, Enum):
    """Decision types that an approver can make."""

    APPROVE = "approve"
    REJECT = "reject"


def parse_decision(value: Any) -> Decision:
    """Normalize a decision value, rejecting anything but approve/reject."""
    if isinstance(value, Decision):
        return value
    try:
        return Decision(str(value).strip().lower())
    except ValueError:
        raise ValidationError("decision", f"must be 'approve' or 'reject', got {value!r}") from None


def parse_amount(field_name: str, value: Any, *, required: bool = False) -> Decimal | None:
    """
    Parse an amount field into a finite Decimal.

    Returns None for a missing optional value.

    Raises:
        ValidationError: Missing required value, or not a finite number.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(field_name, "is required")
        return None
    try:
        return money_from_value(value)
    except ValueError as exc:
        raise ValidationError(field_name, str(exc)) from None


def parse_date(field_name: str, value: Any) -> date | None:
    """Accept a date, a datetime (date part) or an ISO ``YYYY-MM-DD`` string."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    raise ValidationError(field_name, f"not an ISO date: {value!r}")


def parse_attachments(value: Any) -> list[dict[str, Any]]:
    """Attachment metadata must be a list of mappings (file storage is external)."""
    if value is None:
        return []
    if isinstance(value, dict) or not isinstance(value, (list, tuple)):
        raise ValidationError("attachments", "must be a list of attachment metadata objects")
    result = []
    for item in value:
        if not isinstance(item, dict):
            raise ValidationError("attachments", f"attachment metadata must be an object, got {item!r}")
        result.append(dict(item))
    return result


# =========================================================================
# Request and Decision Snapshots
# =========================================================================


@dataclass(frozen=True)
class DecisionRecord:
    """One admin's current vote on one request. Immutable snapshot."""

    decision_id: UUID
    request_id: UUID
    admin_id: UUID
    decision: Decision
    comment: str = ""
    approved_amount: Decimal | None = None
    decided_at: datetime | None = None


@dataclass(frozen=True)
class ReimbursementRequest:
    """Immutable snapshot of a reimbursement request."""

    request_id: UUID
    owner_id: UUID
    title: str
    amount_min: Decimal
    amount_avg: Decimal
    amount_max: Decimal
    status: RequestStatus = RequestStatus.DRAFT
    description: str = ""
    category_id: UUID | None = None
    requested_amount: Decimal | None = None
    unit: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    required_approver_count: int = DEFAULT_REQUIRED_APPROVERS
    approvals_count: int = 0
    approved_amount: Decimal | None = None
    approved_at: datetime | None = None
    attachments: tuple[dict[str, Any], ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    @property
    def recognized_amount(self) -> Decimal:
        """Amount counted in reports: approved, else requested, else the average estimate."""
        if self.approved_amount is not None:
            return self.approved_amount
        if self.requested_amount is not None:
            return self.requested_amount
        return self.amount_avg


# =========================================================================
# Decision Outcome
# =========================================================================


@dataclass(frozen=True)
class ApprovalProgress:
    """Distinct approvers so far versus the quorum."""

    approvals: int
    required: int

    @property
    def quorum_reached(self) -> bool:
        return self.approvals >= self.required

    def __str__(self) -> str:
        return f"{self.approvals} of {self.required}"


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of ``ConsensusEngine.decide``.

    ``finalized`` is True only for the caller whose decision moved the
    request to approved or rejected.
    """

    request: ReimbursementRequest
    decision: DecisionRecord
    progress: ApprovalProgress
    finalized: bool = False
    materialized_entry_id: UUID | None = None
    message: str = ""


# =========================================================================
# Consensus rules
# =========================================================================


def distinct_approvers(decisions: Iterable[DecisionRecord]) -> frozenset[UUID]:
    """Admin ids holding a current ``approve`` decision, each counted once."""
    return frozenset(
        d.admin_id for d in decisions if d.decision == Decision.APPROVE
    )


def resolve_approved_amount(
    provided: Iterable[Decimal | None],
    requested_amount: Decimal | None,
    amount_avg: Decimal,
    decimal_places: int = 0,
) -> Decimal:
    """
    Reconcile the approvers' amounts into the final approved amount.

    - No approver gave an amount: requested_amount if set, else amount_avg.
    - All given amounts are numerically equal: that value, unchanged.
    - Otherwise: the arithmetic mean, rounded half-up to ``decimal_places``
      (whole units by default).
    """
    amounts = [a for a in provided if a is not None]
    if not amounts:
        if requested_amount is not None:
            return requested_amount
        return amount_avg

    first = amounts[0]
    if all(a == first for a in amounts):
        return first

    mean = sum(amounts, Decimal("0")) / Decimal(len(amounts))
    return round_money(mean, decimal_places)


@dataclass(frozen=True)
class EditDiff:
    """Fields actually applied by an edit, old and new values."""

    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    ignored: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.changes
