"""
Module: reimbursement_kernel.selectors.ledger_selector
Responsibility: Read-only queries over income and ledger (expense) entries:
    range-filtered sums and lookup of the entry materialized from a request.
Architecture position: Kernel > Selectors.

Recognized expense amount:
    ``COALESCE(actual_amount, amount_avg, 0)`` -- the actual amount when
    known, else the average estimate.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from reimbursement_kernel.db.types import as_money
from reimbursement_kernel.domain.ledger import IncomeRecord, LedgerEntryRecord
from reimbursement_kernel.domain.reporting import DateRange
from reimbursement_kernel.models.ledger import IncomeEntryModel, LedgerEntryModel
from reimbursement_kernel.selectors.base import BaseSelector


class LedgerSelector(BaseSelector):
    """Sums and lookups over ``income_entries`` and ``ledger_entries``."""

    def sum_income(self, date_range: DateRange) -> Decimal:
        """Total income with entry_date inside the range (all currencies summed as-is)."""
        total = self.session.execute(
            select(func.coalesce(func.sum(IncomeEntryModel.amount), 0))
            .where(
                IncomeEntryModel.entry_date >= date_range.start,
                IncomeEntryModel.entry_date <= date_range.end,
            )
        ).scalar_one()
        return as_money(total)

    def sum_ledger_expenses(
        self,
        date_range: DateRange,
        exclude_materialized: bool = True,
    ) -> Decimal:
        """
        Total recognized ledger expenses inside the range.

        With ``exclude_materialized`` (the default), entries derived from an
        approved request are left out; reports count the approved request
        itself instead.
        """
        recognized = func.coalesce(
            LedgerEntryModel.actual_amount,
            LedgerEntryModel.amount_avg,
            0,
        )
        stmt = select(func.coalesce(func.sum(recognized), 0)).where(
            LedgerEntryModel.entry_date >= date_range.start,
            LedgerEntryModel.entry_date <= date_range.end,
        )
        if exclude_materialized:
            stmt = stmt.where(LedgerEntryModel.source_request_id.is_(None))
        return as_money(self.session.execute(stmt).scalar_one())

    def find_by_source_request(self, request_id: UUID) -> LedgerEntryRecord | None:
        entry = self.session.execute(
            select(LedgerEntryModel).where(
                LedgerEntryModel.source_request_id == request_id,
            )
        ).scalar_one_or_none()
        return entry.to_dto() if entry is not None else None

    def ledger_entries(self, date_range: DateRange) -> list[LedgerEntryRecord]:
        rows = self.session.execute(
            select(LedgerEntryModel)
            .where(
                LedgerEntryModel.entry_date >= date_range.start,
                LedgerEntryModel.entry_date <= date_range.end,
            )
            .order_by(LedgerEntryModel.entry_date)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def income_entries(self, date_range: DateRange) -> list[IncomeRecord]:
        rows = self.session.execute(
            select(IncomeEntryModel)
            .where(
                IncomeEntryModel.entry_date >= date_range.start,
                IncomeEntryModel.entry_date <= date_range.end,
            )
            .order_by(IncomeEntryModel.entry_date)
        ).scalars().all()
        return [row.to_dto() for row in rows]
