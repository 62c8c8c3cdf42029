"""
Reporting value objects: date ranges and period summaries.

Range policy
------------
Ranges are inclusive on both ends.  A ``date`` bound expands to the start
(00:00:00) or end (23:59:59.999999) of that day in UTC.  A missing bound
falls back to the matching boundary of the current calendar month, so
``resolve_range(None, None, clock)`` is "this month so far and the rest of
it".
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

from reimbursement_kernel.domain.clock import Clock
from reimbursement_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class DateRange:
    """Inclusive UTC datetime range."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValidationError(
                "range", f"start {self.start.isoformat()} is after end {self.end.isoformat()}"
            )

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class FinancialSummary:
    """Income versus expenses over one range."""

    start: datetime
    end: datetime
    total_income: Decimal
    total_ledger_expenses: Decimal
    total_personal_approved: Decimal

    @property
    def total_expenses(self) -> Decimal:
        return self.total_ledger_expenses + self.total_personal_approved

    @property
    def remaining(self) -> Decimal:
        return self.total_income - self.total_expenses

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "total_income": self.total_income,
            "total_ledger_expenses": self.total_ledger_expenses,
            "total_personal_approved": self.total_personal_approved,
            "total_expenses": self.total_expenses,
            "remaining": self.remaining,
        }


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time.max, tzinfo=timezone.utc)


def month_range(year: int, month: int) -> DateRange:
    """Full calendar month, first instant to last instant."""
    if not 1 <= month <= 12:
        raise ValidationError("month", f"must be between 1 and 12, got {month}")
    last_day = calendar.monthrange(year, month)[1]
    return DateRange(
        start=start_of_day(date(year, month, 1)),
        end=end_of_day(date(year, month, last_day)),
    )


def _as_bound(value: date | datetime | str, *, is_end: bool, field_name: str) -> datetime:
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                value = date.fromisoformat(text)
            else:
                value = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(field_name, f"not an ISO date or datetime: {value!r}") from None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return end_of_day(value) if is_end else start_of_day(value)
    raise ValidationError(field_name, f"not a date: {value!r}")


def resolve_range(
    start: date | datetime | str | None,
    end: date | datetime | str | None,
    clock: Clock,
) -> DateRange:
    """
    Turn optional caller bounds into a concrete inclusive range.

    Raises:
        ValidationError: Unparseable bound, or start after end.
    """
    current = month_range(clock.now().year, clock.now().month)
    resolved_start = (
        current.start if start is None
        else _as_bound(start, is_end=False, field_name="start")
    )
    resolved_end = (
        current.end if end is None
        else _as_bound(end, is_end=True, field_name="end")
    )
    return DateRange(start=resolved_start, end=resolved_end)
