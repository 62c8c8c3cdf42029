"""
LedgerMaterializer -- turns a finalized request into exactly one ledger entry.

Responsibility:
    Given an approved request, create the ledger entry that recognizes its
    approved amount, unless one already exists.

Architecture position:
    Kernel > Services.  Called by ConsensusEngine on the approval path,
    inside the same transaction as the pending -> approved transition.

Invariants enforced:
    - Idempotent: ``ledger_entries.source_request_id`` is UNIQUE.  The
      existence check is the fast path; a concurrent insert that trips the
      constraint (inside a SAVEPOINT) falls back to the existing entry.
    - First materialization wins: an existing entry is never updated, even
      if its amount differs from the newly resolved one.  The difference is
      logged as ``materialization_conflict``.

Failure modes:
    - InvalidStateError: the request is not approved or has no approved
      amount.
    - StorageConflictError: the insert collided but no entry is visible
      afterwards.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reimbursement_kernel.domain.approval import ReimbursementRequest, RequestStatus
from reimbursement_kernel.domain.clock import Clock
from reimbursement_kernel.domain.ledger import (
    LedgerEntryRecord,
    personal_entry_note,
    personal_entry_title,
)
from reimbursement_kernel.exceptions import InvalidStateError, StorageConflictError
from reimbursement_kernel.logging_config import get_logger
from reimbursement_kernel.models.audit_record import AuditAction, AuditEntityType
from reimbursement_kernel.models.ledger import LedgerEntryModel
from reimbursement_kernel.services.audit_recorder import AuditRecorder
from reimbursement_kernel.services.base import BaseService

logger = get_logger("services.ledger_materializer")


class LedgerMaterializer(BaseService):
    """Idempotent finalized-request -> ledger entry."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditRecorder | None = None,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditRecorder(session, self.clock)

    def materialize(
        self,
        request: ReimbursementRequest,
        finalized_by: UUID | None,
    ) -> tuple[LedgerEntryRecord, bool]:
        """
        Ensure the ledger entry for an approved request exists.

        Returns:
            ``(entry, created)``; ``created`` is False when an entry already
            existed.
        """
        if request.status != RequestStatus.APPROVED or request.approved_amount is None:
            raise InvalidStateError(
                str(request.request_id), request.status.value, "materialize",
            )

        existing = self._find(request.request_id)
        if existing is not None:
            self._log_existing(existing, request)
            return existing.to_dto(), False

        now = self.clock.now()
        entry = LedgerEntryModel(
            title=personal_entry_title(request.title),
            category_id=request.category_id,
            amount_min=request.amount_min,
            amount_avg=request.amount_avg,
            amount_max=request.amount_max,
            actual_amount=request.approved_amount,
            unit=request.unit,
            note=personal_entry_note(request.request_id),
            entry_date=request.approved_at or now,
            created_by=finalized_by,
            source_request_id=request.request_id,
            attachments=[dict(a) for a in request.attachments],
            created_at=now,
            updated_at=now,
        )

        savepoint = self.session.begin_nested()
        try:
            self.session.add(entry)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            # Another transaction materialized the same request first
            savepoint.rollback()
            logger.info(
                "materialization_race_lost",
                extra={"request_id": str(request.request_id)},
            )
            existing = self._find(request.request_id)
            if existing is None:
                raise StorageConflictError(
                    "LedgerEntry",
                    str(request.request_id),
                    "unique source_request_id collision but no entry found",
                ) from None
            self._log_existing(existing, request)
            return existing.to_dto(), False

        self._auditor.record(
            AuditEntityType.LEDGER_ENTRY.value,
            entry.id,
            AuditAction.CREATED_FROM_PERSONAL_APPROVAL,
            actor_id=finalized_by,
            meta={
                "source_request_id": request.request_id,
                "actual_amount": request.approved_amount,
            },
        )
        logger.info(
            "request_materialized",
            extra={
                "request_id": str(request.request_id),
                "entry_id": str(entry.id),
                "actual_amount": request.approved_amount,
            },
        )
        return entry.to_dto(), True

    def _find(self, request_id: UUID) -> LedgerEntryModel | None:
        return self.session.execute(
            select(LedgerEntryModel)
            .where(LedgerEntryModel.source_request_id == request_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _log_existing(self, existing: LedgerEntryModel, request: ReimbursementRequest) -> None:
        if existing.actual_amount != request.approved_amount:
            logger.info(
                "materialization_conflict",
                extra={
                    "request_id": str(request.request_id),
                    "entry_id": str(existing.id),
                    "existing_amount": existing.actual_amount,
                    "resolved_amount": request.approved_amount,
                },
            )
        else:
            logger.debug(
                "materialization_skipped_existing",
                extra={"request_id": str(request.request_id), "entry_id": str(existing.id)},
            )
