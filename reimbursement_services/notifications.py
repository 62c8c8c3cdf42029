"""
reimbursement_services.notifications -- notification sinks and the
subscriber that turns request events into notifications.

The subscriber runs after the triggering transaction has committed, in a
transaction of its own.  Each recipient is handled inside its own
SAVEPOINT: a failure for one admin is logged and the remaining admins are
still notified.  Nothing here can change the outcome of the operation that
emitted the event.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from reimbursement_kernel.db.engine import session_scope
from reimbursement_kernel.domain.clock import Clock, SystemClock
from reimbursement_kernel.domain.collaborators import DirectoryProvider, NotificationSink
from reimbursement_kernel.domain.events import EventBus, EventKind, RequestEvent
from reimbursement_kernel.logging_config import get_logger
from reimbursement_kernel.models.audit_record import AuditAction, AuditEntityType
from reimbursement_kernel.models.notification import NotificationModel
from reimbursement_kernel.services.audit_recorder import AuditRecorder
from reimbursement_kernel.utils.serialization import to_json_safe

logger = get_logger("services.notifications")

PENDING_TITLE = "New personal expense pending approval"
APPROVED_TITLE = "Your personal expense request was approved"
REJECTED_TITLE = "Your personal expense request was rejected"

SinkFactory = Callable[[Session], NotificationSink]


class DatabaseNotificationSink:
    """Writes notifications to the ``notifications`` inbox table."""

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self.session = session
        self.clock = clock or SystemClock()

    def notify(
        self,
        user_id: UUID,
        title: str,
        body: str,
        link: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            NotificationModel(
                user_id=user_id,
                title=title,
                body=body,
                link=link,
                is_read=False,
                meta=to_json_safe(meta or {}),
                created_at=self.clock.now(),
            )
        )
        self.session.flush()


class NotificationSubscriber:
    """
    Delivers request events to admins and owners.

    - ``submitted``: every admin gets "pending approval"; one
      ``notify_admin_new_pending`` audit record per notified admin.
    - ``approved`` / ``rejected``: the owner is told the outcome (with the
      approved amount); one ``notify_owner_decision`` audit record.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        directory: DirectoryProvider,
        sink_factory: SinkFactory | None = None,
        link_template: str = "/personal/{request_id}",
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._clock = clock or SystemClock()
        self._sink_factory = sink_factory or (
            lambda session: DatabaseNotificationSink(session, self._clock)
        )
        self._link_template = link_template

    def register(self, bus: EventBus) -> None:
        bus.subscribe(EventKind.SUBMITTED, self.on_submitted)
        bus.subscribe(EventKind.APPROVED, self.on_decided)
        bus.subscribe(EventKind.REJECTED, self.on_decided)

    def _link(self, request_id: UUID) -> str:
        return self._link_template.format(request_id=request_id)

    def on_submitted(self, event: RequestEvent) -> None:
        admins = self._directory.list_admins()
        delivered = 0
        with session_scope(self._session_factory) as session:
            sink = self._sink_factory(session)
            auditor = AuditRecorder(session, self._clock)
            for admin_id in admins:
                try:
                    with session.begin_nested():
                        sink.notify(
                            admin_id,
                            PENDING_TITLE,
                            f"{event.title} is waiting for your decision",
                            link=self._link(event.request_id),
                            meta={"request_id": event.request_id, "owner_id": event.owner_id},
                        )
                except Exception:
                    logger.warning(
                        "admin_notification_failed",
                        extra={"request_id": str(event.request_id), "admin_id": str(admin_id)},
                        exc_info=True,
                    )
                    continue
                delivered += 1
                auditor.record(
                    AuditEntityType.REQUEST.value,
                    event.request_id,
                    AuditAction.NOTIFY_ADMIN_NEW_PENDING,
                    actor_id=event.actor_id,
                    meta={"admin_id": admin_id},
                )
        logger.info(
            "admins_notified",
            extra={
                "request_id": str(event.request_id),
                "delivered": delivered,
                "admins": len(admins),
            },
        )

    def on_decided(self, event: RequestEvent) -> None:
        if event.kind == EventKind.APPROVED:
            title = APPROVED_TITLE
            # Stored amounts carry nine places; show the resolved value as is
            body = f"{event.title} was approved for {to_json_safe(event.approved_amount)}"
        else:
            title = REJECTED_TITLE
            body = f"{event.title} was rejected"
        if event.comment:
            body = f"{body}: {event.comment}"

        with session_scope(self._session_factory) as session:
            sink = self._sink_factory(session)
            with session.begin_nested():
                sink.notify(
                    event.owner_id,
                    title,
                    body,
                    link=self._link(event.request_id),
                    meta={
                        "request_id": event.request_id,
                        "decision": event.kind,
                        "approved_amount": event.approved_amount,
                    },
                )
            AuditRecorder(session, self._clock).record(
                AuditEntityType.REQUEST.value,
                event.request_id,
                AuditAction.NOTIFY_OWNER_DECISION,
                actor_id=event.actor_id,
                meta={"owner_id": event.owner_id, "decision": event.kind},
            )
        logger.info(
            "owner_notified",
            extra={"request_id": str(event.request_id), "decision": event.kind.value},
        )
