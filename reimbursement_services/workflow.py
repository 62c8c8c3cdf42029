"""
reimbursement_services.workflow -- boundary facade for the reimbursement kernel.

Responsibility:
    Exposes the externally callable operations.  Each call runs in its own
    transaction (unit of work): kernel services flush, the facade commits
    or rolls back, and only after a successful commit are the buffered
    domain events published to subscribers.

Architecture position:
    Services layer.  The only place that constructs kernel services and the
    only place that commits.  Identity resolution and role checks happen in
    the caller; the facade passes actor ids through and the kernel applies
    its owner / approver predicates.

Error handling:
    - ``ReimbursementKernelError`` subclasses propagate unchanged after
      rollback.
    - Any other exception is logged, the transaction rolled back, and it is
      re-raised as ``ServerFaultError`` chained to the cause.  Nothing from
      a failed call is persisted.
    - Subscriber failures never reach the caller (``EventBus`` logs them).

Usage:
    workflow = ReimbursementWorkflow(
        session_factory=get_session_factory(),
        directory=StaticDirectory(admins=[admin_a, admin_b]),
        settings=load_settings(),
    )
    request = workflow.create_request(owner, "Taxi", 10, 12, 15)
    workflow.submit_request(request.request_id, owner)
    workflow.record_decision(request.request_id, admin_a, "approve", approved_amount=12)
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from reimbursement_config.schema import Settings
from reimbursement_kernel.domain.approval import (
    DecisionOutcome,
    DecisionRecord,
    ReimbursementRequest,
)
from reimbursement_kernel.domain.clock import Clock, SystemClock
from reimbursement_kernel.domain.collaborators import CategoryResolver, DirectoryProvider
from reimbursement_kernel.domain.events import EventBus, RequestEvent
from reimbursement_kernel.domain.ledger import AuditEntry, IncomeRecord, LedgerEntryRecord
from reimbursement_kernel.domain.reporting import FinancialSummary
from reimbursement_kernel.exceptions import (
    ReimbursementKernelError,
    ServerFaultError,
    ValidationError,
)
from reimbursement_kernel.logging_config import LogContext, get_logger
from reimbursement_kernel.models.audit_record import AuditEntityType
from reimbursement_kernel.selectors.summary_selector import AggregationEngine
from reimbursement_kernel.services.audit_recorder import AuditRecorder
from reimbursement_kernel.services.consensus_engine import ConsensusEngine
from reimbursement_kernel.services.ledger_materializer import LedgerMaterializer
from reimbursement_kernel.services.ledger_store import LedgerStore
from reimbursement_services.notifications import NotificationSubscriber, SinkFactory

logger = get_logger("services.workflow")

T = TypeVar("T")


def _as_actor_id(value: UUID | str, field: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(field, f"not a valid id: {value!r}") from None


@dataclass
class _UnitOfWork:
    """Kernel services sharing one session and one transaction."""

    session: Session
    auditor: AuditRecorder
    engine: ConsensusEngine
    ledger: LedgerStore
    aggregation: AggregationEngine


class ReimbursementWorkflow:
    """Transactional entry points for requests, decisions, ledger and reports."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        directory: DirectoryProvider,
        settings: Settings | None = None,
        clock: Clock | None = None,
        category_resolver: CategoryResolver | None = None,
        event_bus: EventBus | None = None,
        notification_sink_factory: SinkFactory | None = None,
        subscribe_notifications: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._settings = settings or Settings()
        self._clock = clock or SystemClock()
        self._category_resolver = category_resolver
        self.event_bus = event_bus or EventBus()

        if subscribe_notifications:
            NotificationSubscriber(
                session_factory,
                directory,
                sink_factory=notification_sink_factory,
                link_template=self._settings.notification_link_template,
                clock=self._clock,
            ).register(self.event_bus)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _build(self, session: Session) -> _UnitOfWork:
        auditor = AuditRecorder(session, self._clock)
        materializer = LedgerMaterializer(session, self._clock, auditor)
        engine = ConsensusEngine(
            session,
            self._directory,
            clock=self._clock,
            auditor=auditor,
            materializer=materializer,
            category_resolver=self._category_resolver,
            required_approver_count=self._settings.required_approver_count,
            amount_decimal_places=self._settings.amount_decimal_places,
        )
        ledger = LedgerStore(
            session,
            self._clock,
            auditor,
            default_currency=self._settings.default_currency,
        )
        return _UnitOfWork(
            session=session,
            auditor=auditor,
            engine=engine,
            ledger=ledger,
            aggregation=AggregationEngine(session, self._clock),
        )

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[_UnitOfWork]:
        session = self._session_factory()
        try:
            yield self._build(session)
            session.commit()
        except ReimbursementKernelError as exc:
            session.rollback()
            logger.info(
                "operation_rejected",
                extra={"operation": operation, "error_code": exc.code},
            )
            raise
        except Exception as exc:
            session.rollback()
            logger.error(
                "operation_failed",
                extra={"operation": operation},
                exc_info=True,
            )
            raise ServerFaultError(operation, str(exc)) from exc
        finally:
            session.close()

    def _run(
        self,
        operation: str,
        work: Callable[[_UnitOfWork], T],
        actor_id: UUID | None = None,
        request_id: UUID | str | None = None,
    ) -> T:
        events: list[RequestEvent] = []
        with LogContext.bind(
            correlation_id=str(uuid4()),
            operation=operation,
            actor_id=str(actor_id) if actor_id is not None else None,
            request_id=str(request_id) if request_id is not None else None,
        ):
            with self._transaction(operation) as uow:
                result = work(uow)
                events = uow.engine.drain_events()
            # Committed: subscribers may now observe the new state
            self.event_bus.publish_all(events)
        return result

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def create_request(
        self,
        owner_id: UUID | str,
        title: str,
        amount_min: Any,
        amount_avg: Any,
        amount_max: Any,
        **fields: Any,
    ) -> ReimbursementRequest:
        owner = _as_actor_id(owner_id, "owner_id")
        return self._run(
            "create_request",
            lambda uow: uow.engine.create(
                owner, title, amount_min, amount_avg, amount_max, **fields,
            ),
            actor_id=owner,
        )

    def submit_request(self, request_id: UUID | str, actor_id: UUID | str) -> ReimbursementRequest:
        actor = _as_actor_id(actor_id, "actor_id")
        return self._run(
            "submit_request",
            lambda uow: uow.engine.submit(request_id, actor),
            actor_id=actor,
            request_id=request_id,
        )

    def record_decision(
        self,
        request_id: UUID | str,
        admin_id: UUID | str,
        decision: str,
        comment: str | None = None,
        approved_amount: Any = None,
    ) -> DecisionOutcome:
        admin = _as_actor_id(admin_id, "admin_id")
        return self._run(
            "record_decision",
            lambda uow: uow.engine.decide(
                request_id, admin, decision, comment=comment, approved_amount=approved_amount,
            ),
            actor_id=admin,
            request_id=request_id,
        )

    def cancel_request(self, request_id: UUID | str, actor_id: UUID | str) -> ReimbursementRequest:
        actor = _as_actor_id(actor_id, "actor_id")
        return self._run(
            "cancel_request",
            lambda uow: uow.engine.cancel(request_id, actor),
            actor_id=actor,
            request_id=request_id,
        )

    def edit_request(
        self,
        request_id: UUID | str,
        actor_id: UUID | str,
        fields: Mapping[str, Any],
    ) -> ReimbursementRequest:
        actor = _as_actor_id(actor_id, "actor_id")
        return self._run(
            "edit_request",
            lambda uow: uow.engine.edit(request_id, actor, fields),
            actor_id=actor,
            request_id=request_id,
        )

    def get_request(self, request_id: UUID | str) -> ReimbursementRequest:
        return self._run(
            "get_request", lambda uow: uow.engine.get_request(request_id), request_id=request_id,
        )

    def get_approvals(self, request_id: UUID | str) -> list[DecisionRecord]:
        return self._run(
            "get_approvals", lambda uow: uow.engine.get_decisions(request_id), request_id=request_id,
        )

    def audit_trail(
        self,
        entity_id: UUID | str,
        entity_type: str = AuditEntityType.REQUEST.value,
    ) -> list[AuditEntry]:
        eid = _as_actor_id(entity_id, "entity_id")
        return self._run("audit_trail", lambda uow: uow.auditor.trail(entity_type, eid))

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def record_income(self, source_name: str, amount: Any, **fields: Any) -> IncomeRecord:
        return self._run(
            "record_income",
            lambda uow: uow.ledger.record_income(source_name, amount, **fields),
            actor_id=fields.get("created_by"),
        )

    def record_expense(self, title: str, **fields: Any) -> LedgerEntryRecord:
        return self._run(
            "record_expense",
            lambda uow: uow.ledger.record_expense(title, **fields),
            actor_id=fields.get("created_by"),
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def summarize(self, start: Any = None, end: Any = None) -> FinancialSummary:
        return self._run("summarize", lambda uow: uow.aggregation.summarize(start, end))

    def summarize_month(self, year: int, month: int) -> FinancialSummary:
        return self._run(
            "summarize_month", lambda uow: uow.aggregation.summarize_month(year, month),
        )

    def approved_requests(
        self,
        start: Any = None,
        end: Any = None,
        category_id: UUID | None = None,
        owner_id: UUID | None = None,
    ) -> list[ReimbursementRequest]:
        return self._run(
            "approved_requests",
            lambda uow: uow.aggregation.approved_requests(start, end, category_id, owner_id),
        )
