"""
LedgerStore -- income and general expense records.

Responsibility:
    Records income entries and ordinary (non-derived) ledger expenses, and
    exposes the range-filtered sums and the source-request lookup that the
    materializer and the aggregation engine rely on.

Architecture position:
    Kernel > Services.  Writes go through the session with ``flush()``;
    reads delegate to ``LedgerSelector``.

Non-goals:
    Not double-entry accounting: there is no posting, reversal or balance
    model.  Entries are plain recognized amounts.
"""

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from reimbursement_kernel.domain.approval import parse_amount, parse_attachments
from reimbursement_kernel.domain.clock import Clock
from reimbursement_kernel.domain.ledger import IncomeRecord, LedgerEntryRecord
from reimbursement_kernel.domain.reporting import DateRange, start_of_day
from reimbursement_kernel.exceptions import ValidationError
from reimbursement_kernel.logging_config import get_logger
from reimbursement_kernel.models.audit_record import AuditAction, AuditEntityType
from reimbursement_kernel.models.ledger import IncomeEntryModel, LedgerEntryModel
from reimbursement_kernel.selectors.ledger_selector import LedgerSelector
from reimbursement_kernel.services.audit_recorder import AuditRecorder
from reimbursement_kernel.services.base import BaseService

logger = get_logger("services.ledger_store")


def _entry_moment(value: date | datetime | None, clock: Clock) -> datetime:
    if value is None:
        return clock.now()
    if isinstance(value, datetime):
        return value
    return start_of_day(value)


class LedgerStore(BaseService):
    """Owns ``income_entries`` and ``ledger_entries``."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditRecorder | None = None,
        default_currency: str = "AFN",
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditRecorder(session, self.clock)
        self._selector = LedgerSelector(session)
        self.default_currency = default_currency

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_income(
        self,
        source_name: str,
        amount: Any,
        currency: str | None = None,
        note: str = "",
        entry_date: date | datetime | None = None,
        created_by: UUID | None = None,
    ) -> IncomeRecord:
        """
        Record one income entry.

        Raises:
            ValidationError: Missing source name, or amount not a finite number.
        """
        if not source_name or not str(source_name).strip():
            raise ValidationError("source_name", "is required")
        parsed_amount = parse_amount("amount", amount, required=True)
        code = (currency or self.default_currency).strip().upper()
        if len(code) != 3:
            raise ValidationError("currency", f"must be a 3-letter code, got {currency!r}")

        now = self.clock.now()
        income = IncomeEntryModel(
            source_name=str(source_name).strip(),
            amount=parsed_amount,
            currency=code,
            note=note or "",
            entry_date=_entry_moment(entry_date, self.clock),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.session.add(income)
        self.session.flush()

        self._auditor.record(
            AuditEntityType.INCOME_ENTRY.value,
            income.id,
            AuditAction.INCOME_RECORDED,
            actor_id=created_by,
            meta={"amount": parsed_amount, "currency": code, "source_name": income.source_name},
        )
        logger.info(
            "income_recorded",
            extra={"entry_id": str(income.id), "amount": parsed_amount, "currency": code},
        )
        return income.to_dto()

    def record_expense(
        self,
        title: str,
        actual_amount: Any = None,
        amount_min: Any = None,
        amount_avg: Any = None,
        amount_max: Any = None,
        category_id: UUID | None = None,
        batch_ref: str | None = None,
        unit: str | None = None,
        note: str = "",
        entry_date: date | datetime | None = None,
        created_by: UUID | None = None,
        attachments: list[Mapping[str, Any]] | None = None,
    ) -> LedgerEntryRecord:
        """
        Record an ordinary ledger expense (not derived from a request).

        Raises:
            ValidationError: Missing title, no usable amount, or a
                non-numeric amount.
        """
        if not title or not str(title).strip():
            raise ValidationError("title", "is required")
        parsed = {
            "actual_amount": parse_amount("actual_amount", actual_amount),
            "amount_min": parse_amount("amount_min", amount_min),
            "amount_avg": parse_amount("amount_avg", amount_avg),
            "amount_max": parse_amount("amount_max", amount_max),
        }
        if parsed["actual_amount"] is None and parsed["amount_avg"] is None:
            raise ValidationError("actual_amount", "either actual_amount or amount_avg is required")

        now = self.clock.now()
        entry = LedgerEntryModel(
            title=str(title).strip(),
            category_id=category_id,
            batch_ref=batch_ref,
            unit=unit,
            note=note or "",
            entry_date=_entry_moment(entry_date, self.clock),
            created_by=created_by,
            attachments=parse_attachments(attachments),
            created_at=now,
            updated_at=now,
            **parsed,
        )
        self.session.add(entry)
        self.session.flush()

        dto = entry.to_dto()
        self._auditor.record(
            AuditEntityType.LEDGER_ENTRY.value,
            entry.id,
            AuditAction.EXPENSE_RECORDED,
            actor_id=created_by,
            meta={"title": dto.title, "recognized_amount": dto.recognized_amount},
        )
        logger.info(
            "expense_recorded",
            extra={"entry_id": str(entry.id), "recognized_amount": dto.recognized_amount},
        )
        return dto

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_source_request(self, request_id: UUID) -> LedgerEntryRecord | None:
        return self._selector.find_by_source_request(request_id)

    def sum_income(self, date_range: DateRange) -> Decimal:
        return self._selector.sum_income(date_range)

    def sum_ledger_expenses(
        self,
        date_range: DateRange,
        exclude_materialized: bool = True,
    ) -> Decimal:
        return self._selector.sum_ledger_expenses(date_range, exclude_materialized)
