"""
ConsensusEngine -- reimbursement request lifecycle and multi-approver quorum.

Responsibility:
    Owns the request state machine (create, edit, submit, decide, cancel),
    records one decision per admin per request, computes quorum from the
    distinct approvers, reconciles the final amount, and hands finalized
    requests to the LedgerMaterializer.

Architecture position:
    Kernel > Services.  Runs inside the caller's transaction (flush only).
    Side effects that must not affect the outcome (notifications) are
    buffered as ``RequestEvent`` objects; the boundary layer drains and
    publishes them after commit.

Concurrency:
    - decide() locks the request row (SELECT ... FOR UPDATE) before writing,
      so decisions on one request serialize and the post-write recount sees
      every committed vote.
    - Decisions are written with INSERT ... ON CONFLICT (request_id,
      admin_id) DO UPDATE where the dialect supports it, else a SAVEPOINT
      insert-then-update.  One collision is retried; a second surfaces as
      StorageConflictError.
    - Every status change is checked against ``REQUEST_TRANSITIONS`` and
      written as ``UPDATE ... WHERE status IN (...)``.  A zero
      rowcount means another caller moved the request first; the loser
      never finalizes or materializes.

Audit actions:
    create, update, submit, cancelled, admin_approve, admin_reject,
    approved_final, rejected_final.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reimbursement_kernel.domain.approval import (
    AMOUNT_FIELDS,
    DEFAULT_REQUIRED_APPROVERS,
    EDITABLE_FIELDS,
    ApprovalProgress,
    Decision,
    DecisionOutcome,
    DecisionRecord,
    EditDiff,
    ReimbursementRequest,
    RequestStatus,
    distinct_approvers,
    is_transition_allowed,
    parse_amount,
    parse_attachments,
    parse_date,
    parse_decision,
    resolve_approved_amount,
    source_statuses,
)
from reimbursement_kernel.domain.clock import Clock
from reimbursement_kernel.domain.collaborators import CategoryResolver, DirectoryProvider
from reimbursement_kernel.domain.events import EventKind, RequestEvent
from reimbursement_kernel.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotOwnerError,
    RequestNotFoundError,
    StorageConflictError,
    ValidationError,
)
from reimbursement_kernel.logging_config import get_logger
from reimbursement_kernel.models.audit_record import AuditAction, AuditEntityType
from reimbursement_kernel.models.request import (
    ApprovalDecisionModel,
    ReimbursementRequestModel,
)
from reimbursement_kernel.services.audit_recorder import AuditRecorder
from reimbursement_kernel.services.base import BaseService
from reimbursement_kernel.services.ledger_materializer import LedgerMaterializer

logger = get_logger("services.consensus")

_REQUEST = AuditEntityType.REQUEST.value

# Dialects with native INSERT ... ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _as_request_id(value: UUID | str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise RequestNotFoundError(str(value)) from None


class ConsensusEngine(BaseService):
    """
    Request state machine plus quorum approval.

    Contract:
        Every public method runs inside the caller's transaction and never
        commits.  State-changing methods append ``RequestEvent`` objects to
        an internal buffer; call ``drain_events()`` after commit.
    """

    def __init__(
        self,
        session: Session,
        directory: DirectoryProvider,
        clock: Clock | None = None,
        auditor: AuditRecorder | None = None,
        materializer: LedgerMaterializer | None = None,
        category_resolver: CategoryResolver | None = None,
        required_approver_count: int = DEFAULT_REQUIRED_APPROVERS,
        amount_decimal_places: int = 0,
    ):
        super().__init__(session, clock)
        self._directory = directory
        self._auditor = auditor or AuditRecorder(session, self.clock)
        self._materializer = materializer or LedgerMaterializer(
            session, self.clock, self._auditor,
        )
        self._category_resolver = category_resolver
        self.required_approver_count = required_approver_count
        self.amount_decimal_places = amount_decimal_places
        self._events: list[RequestEvent] = []

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def drain_events(self) -> list[RequestEvent]:
        """Return and clear the buffered events."""
        events, self._events = self._events, []
        return events

    def _emit(
        self,
        kind: EventKind,
        model: ReimbursementRequestModel,
        actor_id: UUID | None,
        comment: str = "",
        **meta: Any,
    ) -> None:
        self._events.append(
            RequestEvent(
                kind=kind,
                request_id=model.id,
                owner_id=model.owner_id,
                actor_id=actor_id,
                title=model.title,
                occurred_at=self.clock.now(),
                approved_amount=model.approved_amount,
                comment=comment,
                meta=meta,
            )
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_request(self, request_id: UUID | str) -> ReimbursementRequest:
        """
        Raises:
            RequestNotFoundError: Unknown request id.
        """
        return self._load(_as_request_id(request_id)).to_dto()

    def get_decisions(self, request_id: UUID | str) -> list[DecisionRecord]:
        """Current decisions on a request, oldest first."""
        rid = _as_request_id(request_id)
        self._load(rid)
        return self._decisions(rid)

    # ------------------------------------------------------------------
    # create / edit
    # ------------------------------------------------------------------

    def create(
        self,
        owner_id: UUID,
        title: str,
        amount_min: Any,
        amount_avg: Any,
        amount_max: Any,
        description: str = "",
        category: UUID | str | None = None,
        requested_amount: Any = None,
        unit: str | None = None,
        start_date: Any = None,
        end_date: Any = None,
        attachments: list[Mapping[str, Any]] | None = None,
        required_approver_count: int | None = None,
    ) -> ReimbursementRequest:
        """
        Create a request in ``draft``.

        Raises:
            ValidationError: Missing title or amount bound, non-numeric
                amount, unknown category, bad date, or quorum below 1.
        """
        clean_title = title.strip() if isinstance(title, str) else ""
        if not clean_title:
            raise ValidationError("title", "is required")
        quorum = (
            self.required_approver_count
            if required_approver_count is None
            else required_approver_count
        )
        if isinstance(quorum, bool) or not isinstance(quorum, int) or quorum < 1:
            raise ValidationError(
                "required_approver_count", f"must be a positive integer, got {quorum!r}",
            )

        now = self.clock.now()
        model = ReimbursementRequestModel(
            owner_id=owner_id,
            title=clean_title,
            description=description or "",
            category_id=self._resolve_category(category),
            amount_min=parse_amount("amount_min", amount_min, required=True),
            amount_avg=parse_amount("amount_avg", amount_avg, required=True),
            amount_max=parse_amount("amount_max", amount_max, required=True),
            requested_amount=parse_amount("requested_amount", requested_amount),
            unit=unit or None,
            start_date=parse_date("start_date", start_date),
            end_date=parse_date("end_date", end_date),
            status=RequestStatus.DRAFT.value,
            required_approver_count=quorum,
            approvals_count=0,
            attachments=parse_attachments(attachments),
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        self.session.flush()

        dto = model.to_dto()
        self._auditor.record(
            _REQUEST, model.id, AuditAction.CREATE, actor_id=owner_id,
            meta={
                "title": dto.title,
                "category_id": dto.category_id,
                "amount_min": dto.amount_min,
                "amount_avg": dto.amount_avg,
                "amount_max": dto.amount_max,
                "requested_amount": dto.requested_amount,
                "required_approver_count": quorum,
            },
        )
        logger.info(
            "request_created",
            extra={"request_id": str(model.id), "owner_id": str(owner_id)},
        )
        return dto

    def edit(
        self,
        request_id: UUID | str,
        actor_id: UUID,
        fields: Mapping[str, Any],
    ) -> ReimbursementRequest:
        """
        Change editable attributes of a draft.

        Keys outside the editable set are ignored.  Every value is validated
        before anything is written, so a failure leaves the request as it was.

        Raises:
            RequestNotFoundError, NotOwnerError, InvalidStateError,
            ValidationError.
        """
        rid = _as_request_id(request_id)
        model = self._load(rid, for_update=True)
        self._require_owner(model, actor_id)
        self._require_status(model, {RequestStatus.DRAFT}, "edit")

        diff = self._compute_edit(model, fields)
        if diff.ignored:
            logger.debug(
                "edit_fields_ignored",
                extra={"request_id": str(rid), "ignored": list(diff.ignored)},
            )
        if diff.is_empty:
            return model.to_dto()

        for name, (_old, new) in diff.changes.items():
            setattr(model, name, new)
        model.updated_at = self.clock.now()
        self.session.flush()

        self._auditor.record(
            _REQUEST, rid, AuditAction.UPDATE, actor_id=actor_id,
            meta={
                "changes": {
                    name: {"from": old, "to": new}
                    for name, (old, new) in diff.changes.items()
                },
                "ignored": list(diff.ignored),
            },
        )
        logger.info(
            "request_edited",
            extra={"request_id": str(rid), "fields": sorted(diff.changes)},
        )
        return model.to_dto()

    def _compute_edit(
        self, model: ReimbursementRequestModel, fields: Mapping[str, Any],
    ) -> EditDiff:
        changes: dict[str, tuple[Any, Any]] = {}
        ignored = tuple(sorted(k for k in fields if k not in EDITABLE_FIELDS))

        for key, raw in fields.items():
            if key not in EDITABLE_FIELDS:
                continue
            if key == "title":
                new = raw.strip() if isinstance(raw, str) else ""
                if not new:
                    raise ValidationError("title", "cannot be empty")
                attr = "title"
            elif key == "description":
                new = "" if raw is None else str(raw)
                attr = "description"
            elif key == "category":
                new = self._resolve_category(raw)
                attr = "category_id"
            elif key in AMOUNT_FIELDS:
                new = parse_amount(key, raw, required=key != "requested_amount")
                attr = key
            elif key == "unit":
                new = str(raw) if raw else None
                attr = "unit"
            elif key in ("start_date", "end_date"):
                new = parse_date(key, raw)
                attr = key
            else:  # attachments
                new = parse_attachments(raw)
                attr = "attachments"

            old = getattr(model, attr)
            if old != new:
                changes[attr] = (old, new)

        return EditDiff(changes=changes, ignored=ignored)

    # ------------------------------------------------------------------
    # submit / cancel
    # ------------------------------------------------------------------

    def submit(self, request_id: UUID | str, actor_id: UUID) -> ReimbursementRequest:
        """
        Move a draft to ``pending``.

        Raises:
            RequestNotFoundError, NotOwnerError, InvalidStateError.
        """
        rid = _as_request_id(request_id)
        model = self._load(rid, for_update=True)
        self._require_owner(model, actor_id)
        self._require_transition(model, RequestStatus.PENDING, "submit")

        self._transition(model, RequestStatus.PENDING, "submit")

        self._auditor.record(_REQUEST, rid, AuditAction.SUBMIT, actor_id=actor_id)
        self._emit(EventKind.SUBMITTED, model, actor_id)
        logger.info("request_submitted", extra={"request_id": str(rid)})
        return model.to_dto()

    def cancel(self, request_id: UUID | str, actor_id: UUID) -> ReimbursementRequest:
        """
        Withdraw a draft or pending request.

        Raises:
            RequestNotFoundError, NotOwnerError, InvalidStateError.
        """
        rid = _as_request_id(request_id)
        model = self._load(rid, for_update=True)
        self._require_owner(model, actor_id)
        self._require_transition(model, RequestStatus.CANCELLED, "cancel")
        previous = model.status

        self._transition(model, RequestStatus.CANCELLED, "cancel")

        self._auditor.record(
            _REQUEST, rid, AuditAction.CANCELLED, actor_id=actor_id,
            meta={"previous_status": previous},
        )
        self._emit(EventKind.CANCELLED, model, actor_id)
        logger.info(
            "request_cancelled",
            extra={"request_id": str(rid), "previous_status": previous},
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # decide
    # ------------------------------------------------------------------

    def decide(
        self,
        request_id: UUID | str,
        admin_id: UUID,
        decision: Decision | str,
        comment: str | None = None,
        approved_amount: Any = None,
    ) -> DecisionOutcome:
        """
        Record one admin's decision and resolve the request if it is decisive.

        A reject finalizes immediately.  An approve finalizes when the
        number of distinct approving admins reaches the request's quorum.

        Raises:
            ForbiddenError: The admin may not approve.
            ValidationError: Unknown decision, or approve without a finite
                approved_amount.
            RequestNotFoundError, InvalidStateError, StorageConflictError.
        """
        if not self._directory.is_approver(admin_id):
            raise ForbiddenError(str(admin_id), "decide")
        verdict = parse_decision(decision)
        amount = parse_amount(
            "approved_amount", approved_amount, required=verdict == Decision.APPROVE,
        )
        note = (comment or "").strip()

        rid = _as_request_id(request_id)
        model = self._load(rid, for_update=True)
        self._require_status(model, {RequestStatus.PENDING}, "decide")

        decided_at = self.clock.now()
        self._write_decision(rid, admin_id, verdict, note, amount, decided_at)
        decisions = self._decisions(rid)
        record = next(d for d in decisions if d.admin_id == admin_id)

        self._auditor.record(
            _REQUEST, rid,
            AuditAction.ADMIN_APPROVE if verdict == Decision.APPROVE else AuditAction.ADMIN_REJECT,
            actor_id=admin_id,
            meta={"decision": verdict, "comment": note, "approved_amount": amount},
        )

        approvers = distinct_approvers(decisions)
        progress = ApprovalProgress(len(approvers), model.required_approver_count)

        if verdict == Decision.REJECT:
            return self._finalize_reject(model, record, progress, admin_id, note)
        if progress.quorum_reached:
            return self._finalize_approve(model, record, decisions, progress, admin_id, note)

        # Below quorum: persist the derived count while the request is still pending
        self._compare_and_set(
            model, {RequestStatus.PENDING}, "decide", approvals_count=progress.approvals,
        )
        logger.info(
            "approval_recorded",
            extra={
                "request_id": str(rid),
                "admin_id": str(admin_id),
                "progress": str(progress),
            },
        )
        return DecisionOutcome(
            request=model.to_dto(),
            decision=record,
            progress=progress,
            finalized=False,
            message=f"Approval recorded ({progress})",
        )

    def _finalize_reject(
        self,
        model: ReimbursementRequestModel,
        record: DecisionRecord,
        progress: ApprovalProgress,
        admin_id: UUID,
        comment: str,
    ) -> DecisionOutcome:
        self._transition(
            model, RequestStatus.REJECTED, "decide", approvals_count=progress.approvals,
        )
        self._auditor.record(
            _REQUEST, model.id, AuditAction.REJECTED_FINAL, actor_id=admin_id,
            meta={"comment": comment},
        )
        self._emit(EventKind.REJECTED, model, admin_id, comment=comment)
        logger.info(
            "request_rejected",
            extra={"request_id": str(model.id), "admin_id": str(admin_id)},
        )
        return DecisionOutcome(
            request=model.to_dto(),
            decision=record,
            progress=progress,
            finalized=True,
            message="Request rejected",
        )

    def _finalize_approve(
        self,
        model: ReimbursementRequestModel,
        record: DecisionRecord,
        decisions: Iterable[DecisionRecord],
        progress: ApprovalProgress,
        admin_id: UUID,
        comment: str,
    ) -> DecisionOutcome:
        final_amount = resolve_approved_amount(
            (d.approved_amount for d in decisions if d.decision == Decision.APPROVE),
            model.requested_amount,
            model.amount_avg,
            self.amount_decimal_places,
        )
        approved_at = self.clock.now()
        won = self._transition(
            model, RequestStatus.APPROVED, "decide",
            raise_on_lost=False,
            approved_amount=final_amount,
            approved_at=approved_at,
            approvals_count=progress.approvals,
        )
        if not won:
            if model.status == RequestStatus.APPROVED.value:
                # A concurrent decision finalized first; do not materialize twice
                logger.info(
                    "finalization_lost_race",
                    extra={"request_id": str(model.id), "admin_id": str(admin_id)},
                )
                return DecisionOutcome(
                    request=model.to_dto(),
                    decision=record,
                    progress=progress,
                    finalized=False,
                    message="Request already approved",
                )
            raise InvalidStateError(str(model.id), model.status, "decide")

        request = model.to_dto()
        entry, _created = self._materializer.materialize(request, finalized_by=admin_id)

        self._auditor.record(
            _REQUEST, model.id, AuditAction.APPROVED_FINAL, actor_id=admin_id,
            meta={
                "approved_amount": final_amount,
                "approvers": sorted(str(a) for a in distinct_approvers(decisions)),
                "ledger_entry_id": entry.entry_id,
            },
        )
        self._emit(EventKind.APPROVED, model, admin_id, comment=comment)
        logger.info(
            "request_approved",
            extra={
                "request_id": str(model.id),
                "approved_amount": final_amount,
                "progress": str(progress),
                "entry_id": str(entry.entry_id),
            },
        )
        return DecisionOutcome(
            request=request,
            decision=record,
            progress=progress,
            finalized=True,
            materialized_entry_id=entry.entry_id,
            message=f"Request approved for {final_amount}",
        )

    # ------------------------------------------------------------------
    # Decision storage
    # ------------------------------------------------------------------

    def _write_decision(
        self,
        request_id: UUID,
        admin_id: UUID,
        verdict: Decision,
        comment: str,
        amount: Decimal | None,
        decided_at,
    ) -> None:
        """Insert-or-update the (request_id, admin_id) decision row."""
        values = {
            "id": uuid4(),
            "request_id": request_id,
            "admin_id": admin_id,
            "decision": verdict.value,
            "comment": comment,
            "approved_amount": amount,
            "decided_at": decided_at,
        }
        for attempt in (1, 2):
            try:
                with self.session.begin_nested():
                    self._upsert(values)
                return
            except IntegrityError as exc:
                if attempt == 2:
                    raise StorageConflictError(
                        "ApprovalDecision",
                        f"{request_id}:{admin_id}",
                        str(exc.orig),
                    ) from exc
                logger.info(
                    "decision_write_retry",
                    extra={"request_id": str(request_id), "admin_id": str(admin_id)},
                )

    def _upsert(self, values: dict[str, Any]) -> None:
        table = ApprovalDecisionModel.__table__
        changed = {
            "decision": values["decision"],
            "comment": values["comment"],
            "approved_amount": values["approved_amount"],
            "decided_at": values["decided_at"],
        }
        insert_fn = _UPSERT_INSERTS.get(self.session.get_bind().dialect.name)
        if insert_fn is not None:
            stmt = insert_fn(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["request_id", "admin_id"],
                set_={name: stmt.excluded[name] for name in changed},
            )
            self.session.execute(stmt)
            return

        result = self.session.execute(
            update(table)
            .where(
                table.c.request_id == values["request_id"],
                table.c.admin_id == values["admin_id"],
            )
            .values(**changed)
        )
        if result.rowcount == 0:
            self.session.execute(insert(table).values(**values))

    def _decisions(self, request_id: UUID) -> list[DecisionRecord]:
        rows = self.session.execute(
            select(ApprovalDecisionModel)
            .where(ApprovalDecisionModel.request_id == request_id)
            .order_by(ApprovalDecisionModel.decided_at, ApprovalDecisionModel.admin_id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    # ------------------------------------------------------------------
    # Guards and transitions
    # ------------------------------------------------------------------

    def _load(
        self, request_id: UUID, for_update: bool = False,
    ) -> ReimbursementRequestModel:
        stmt = select(ReimbursementRequestModel).where(
            ReimbursementRequestModel.id == request_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        model = self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise RequestNotFoundError(str(request_id))
        return model

    def _require_owner(self, model: ReimbursementRequestModel, actor_id: UUID) -> None:
        if model.owner_id != actor_id:
            raise NotOwnerError(str(model.id), str(actor_id))

    def _require_status(
        self,
        model: ReimbursementRequestModel,
        allowed: Iterable[RequestStatus],
        operation: str,
    ) -> None:
        if model.status not in {s.value for s in allowed}:
            raise InvalidStateError(str(model.id), model.status, operation)

    def _require_transition(
        self,
        model: ReimbursementRequestModel,
        target: RequestStatus,
        operation: str,
    ) -> None:
        if not is_transition_allowed(RequestStatus(model.status), target):
            raise InvalidStateError(str(model.id), model.status, operation)

    def _transition(
        self,
        model: ReimbursementRequestModel,
        target: RequestStatus,
        operation: str,
        raise_on_lost: bool = True,
        **values: Any,
    ) -> bool:
        """Move to ``target`` from any status with a lifecycle edge into it."""
        return self._compare_and_set(
            model, source_statuses(target), operation,
            raise_on_lost=raise_on_lost, status=target.value, **values,
        )

    def _compare_and_set(
        self,
        model: ReimbursementRequestModel,
        expected: Iterable[RequestStatus],
        operation: str,
        raise_on_lost: bool = True,
        **values: Any,
    ) -> bool:
        """
        ``UPDATE ... WHERE status IN expected``, then refresh the model.

        Returns True when this caller made the change.  On a lost race
        InvalidStateError is raised, unless ``raise_on_lost`` is False.
        """
        result = self.session.execute(
            update(ReimbursementRequestModel)
            .where(
                ReimbursementRequestModel.id == model.id,
                ReimbursementRequestModel.status.in_([s.value for s in expected]),
            )
            .values(updated_at=self.clock.now(), **values)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(model)
        if result.rowcount == 1:
            logger.debug(
                "status_transition",
                extra={"request_id": str(model.id), "to_status": model.status},
            )
            return True

        logger.warning(
            "status_transition_lost",
            extra={
                "request_id": str(model.id),
                "operation": operation,
                "current_status": model.status,
                "to_status": values.get("status", model.status),
            },
        )
        if raise_on_lost:
            raise InvalidStateError(str(model.id), model.status, operation)
        return False

    def _resolve_category(self, category: UUID | str | None) -> UUID | None:
        if category is None or (isinstance(category, str) and not category.strip()):
            return None
        if self._category_resolver is not None:
            resolved = self._category_resolver.resolve(category)
            if resolved is None:
                raise ValidationError("category", f"unknown category {category!r}")
            return resolved
        if isinstance(category, UUID):
            return category
        try:
            return UUID(str(category))
        except ValueError:
            raise ValidationError("category", f"unknown category {category!r}") from None
