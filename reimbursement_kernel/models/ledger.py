"""
Module: reimbursement_kernel.models.ledger
Responsibility: ORM persistence for recognized expenses (ledger entries) and
    income entries.

Invariants enforced:
    - source_request_id is UNIQUE: a finalized request materializes into at
      most one ledger entry, even under concurrent or repeated calls.
    - Entries with a source_request_id are derived data and are excluded
      from the ledger expense total (the approved request is counted
      instead).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from reimbursement_kernel.db.base import TrackedBase, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from reimbursement_kernel.domain.ledger import IncomeRecord, LedgerEntryRecord


class LedgerEntryModel(TrackedBase):
    """A recognized organizational expense."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        Index("ix_ledger_entries_entry_date", "entry_date"),
    )

    batch_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    category_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    title: Mapped[str] = mapped_column(String(250), nullable=False)
    amount_min: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    amount_avg: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    amount_max: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    actual_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    note: Mapped[str] = mapped_column(Text, default="", nullable=False)
    entry_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    source_request_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("reimbursement_requests.id"),
        nullable=True,
        unique=True,
    )
    attachments: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False,
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.id} {self.title!r} actual={self.actual_amount}>"

    def to_dto(self) -> LedgerEntryRecord:
        from reimbursement_kernel.domain.ledger import LedgerEntryRecord

        return LedgerEntryRecord(
            entry_id=self.id,
            title=self.title,
            entry_date=self.entry_date,
            category_id=self.category_id,
            batch_ref=self.batch_ref,
            amount_min=self.amount_min,
            amount_avg=self.amount_avg,
            amount_max=self.amount_max,
            actual_amount=self.actual_amount,
            unit=self.unit,
            note=self.note or "",
            created_by=self.created_by,
            source_request_id=self.source_request_id,
            attachments=tuple(dict(a) for a in (self.attachments or ())),
        )


class IncomeEntryModel(TrackedBase):
    """A recognized inflow."""

    __tablename__ = "income_entries"

    __table_args__ = (
        Index("ix_income_entries_entry_date", "entry_date"),
    )

    source_name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AFN")
    note: Mapped[str] = mapped_column(Text, default="", nullable=False)
    entry_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<IncomeEntry {self.id} {self.source_name!r} {self.amount} {self.currency}>"

    def to_dto(self) -> IncomeRecord:
        from reimbursement_kernel.domain.ledger import IncomeRecord

        return IncomeRecord(
            entry_id=self.id,
            source_name=self.source_name,
            amount=self.amount,
            currency=self.currency,
            entry_date=self.entry_date,
            note=self.note or "",
            created_by=self.created_by,
        )
