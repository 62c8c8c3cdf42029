"""
Module: reimbursement_kernel.selectors.summary_selector
Responsibility: Period financial summaries (income vs. expenses vs.
    remaining) across income entries, ledger entries and approved requests.
Architecture position: Kernel > Selectors.  Read-only.

Double counting:
    An approved request is counted once, through
    ``total_personal_approved``.  The ledger entry materialized from it
    carries ``source_request_id`` and is excluded from
    ``total_ledger_expenses``.

Consistency:
    The three sums are separate reads.  A request finalized between them
    may show up in one figure and not another; reports accept that drift.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from reimbursement_kernel.db.types import as_money
from reimbursement_kernel.domain.approval import ReimbursementRequest, RequestStatus
from reimbursement_kernel.domain.clock import Clock, SystemClock
from reimbursement_kernel.domain.reporting import (
    DateRange,
    FinancialSummary,
    month_range,
    resolve_range,
)
from reimbursement_kernel.logging_config import get_logger
from reimbursement_kernel.models.request import ReimbursementRequestModel
from reimbursement_kernel.selectors.base import BaseSelector
from reimbursement_kernel.selectors.ledger_selector import LedgerSelector

logger = get_logger("selectors.summary")

Bound = date | datetime | str | None


def _recognized_request_amount():
    return func.coalesce(
        ReimbursementRequestModel.approved_amount,
        ReimbursementRequestModel.requested_amount,
        ReimbursementRequestModel.amount_avg,
    )


def _approval_moment():
    return func.coalesce(
        ReimbursementRequestModel.approved_at,
        ReimbursementRequestModel.updated_at,
        ReimbursementRequestModel.created_at,
    )


class AggregationEngine(BaseSelector):
    """Computes income / expense / remaining totals for a date range."""

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self.clock = clock or SystemClock()
        self._ledger = LedgerSelector(session)

    def summarize(self, start: Bound = None, end: Bound = None) -> FinancialSummary:
        """
        Summarize one inclusive range.

        Missing bounds default to the current calendar month's boundaries.

        Raises:
            ValidationError: Unparseable bound, or start after end.
        """
        return self.summarize_range(resolve_range(start, end, self.clock))

    def summarize_month(self, year: int, month: int) -> FinancialSummary:
        return self.summarize_range(month_range(year, month))

    def summarize_range(self, date_range: DateRange) -> FinancialSummary:
        summary = FinancialSummary(
            start=date_range.start,
            end=date_range.end,
            total_income=self._ledger.sum_income(date_range),
            total_ledger_expenses=self._ledger.sum_ledger_expenses(
                date_range, exclude_materialized=True,
            ),
            total_personal_approved=self.sum_personal_approved(date_range),
        )
        logger.debug(
            "summary_computed",
            extra={
                "start": summary.start,
                "end": summary.end,
                "total_income": summary.total_income,
                "total_expenses": summary.total_expenses,
                "remaining": summary.remaining,
            },
        )
        return summary

    def sum_personal_approved(self, date_range: DateRange) -> Decimal:
        moment = _approval_moment()
        total = self.session.execute(
            select(func.coalesce(func.sum(_recognized_request_amount()), 0))
            .where(
                ReimbursementRequestModel.status == RequestStatus.APPROVED.value,
                moment >= date_range.start,
                moment <= date_range.end,
            )
        ).scalar_one()
        return as_money(total)

    def approved_requests(
        self,
        start: Bound = None,
        end: Bound = None,
        category_id: UUID | None = None,
        owner_id: UUID | None = None,
    ) -> list[ReimbursementRequest]:
        """Approved requests finalized inside the range, newest first."""
        date_range = resolve_range(start, end, self.clock)
        moment = _approval_moment()
        stmt = (
            select(ReimbursementRequestModel)
            .where(
                ReimbursementRequestModel.status == RequestStatus.APPROVED.value,
                moment >= date_range.start,
                moment <= date_range.end,
            )
            .order_by(moment.desc())
        )
        if category_id is not None:
            stmt = stmt.where(ReimbursementRequestModel.category_id == category_id)
        if owner_id is not None:
            stmt = stmt.where(ReimbursementRequestModel.owner_id == owner_id)
        rows = self.session.execute(stmt).scalars().all()
        return [row.to_dto() for row in rows]
