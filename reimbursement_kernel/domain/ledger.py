"""Immutable snapshots of ledger, income and audit rows handed to callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

# Title prefix and note marker for entries derived from approved requests.
PERSONAL_TITLE_PREFIX = "[Personal] "
PERSONAL_NOTE_TEMPLATE = "Approved personal expense (id: {request_id})"


def personal_entry_title(title: str) -> str:
    return f"{PERSONAL_TITLE_PREFIX}{title}"


def personal_entry_note(request_id: UUID) -> str:
    return PERSONAL_NOTE_TEMPLATE.format(request_id=request_id)


@dataclass(frozen=True)
class LedgerEntryRecord:
    """A recognized organizational expense."""

    entry_id: UUID
    title: str
    entry_date: datetime
    category_id: UUID | None = None
    batch_ref: str | None = None
    amount_min: Decimal | None = None
    amount_avg: Decimal | None = None
    amount_max: Decimal | None = None
    actual_amount: Decimal | None = None
    unit: str | None = None
    note: str = ""
    created_by: UUID | None = None
    source_request_id: UUID | None = None
    attachments: tuple[dict[str, Any], ...] = ()

    @property
    def is_materialized(self) -> bool:
        return self.source_request_id is not None

    @property
    def recognized_amount(self) -> Decimal:
        if self.actual_amount is not None:
            return self.actual_amount
        if self.amount_avg is not None:
            return self.amount_avg
        return Decimal("0")


@dataclass(frozen=True)
class IncomeRecord:
    """A recognized inflow."""

    entry_id: UUID
    source_name: str
    amount: Decimal
    currency: str
    entry_date: datetime
    note: str = ""
    created_by: UUID | None = None


@dataclass(frozen=True)
class AuditEntry:
    """One append-only audit fact."""

    record_id: UUID
    entity_type: str
    entity_id: UUID
    action: str
    recorded_at: datetime
    actor_id: UUID | None = None
    meta: dict[str, Any] = field(default_factory=dict)
