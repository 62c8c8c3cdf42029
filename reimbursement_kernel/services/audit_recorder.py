"""
AuditRecorder -- append-only, best-effort audit trail.

Responsibility:
    Appends one immutable ``AuditRecord`` per significant action (request
    created, edited, submitted, decided, finalized, cancelled, ledger entry
    materialized, admin notified) and serves the chronological trail of an
    entity.

Architecture position:
    Kernel > Services.  Called by ConsensusEngine, LedgerMaterializer,
    LedgerStore and the notification subscriber.

Invariants enforced:
    - Append-only: records are never updated or deleted (ORM listeners on
      ``AuditRecord``).
    - Best-effort: every write runs inside its own SAVEPOINT.  A failure
      rolls back only that savepoint, is logged as ``audit_write_failed``
      and is swallowed.  The business operation that asked for the record
      succeeds or fails purely on its own merits.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from reimbursement_kernel.domain.clock import Clock
from reimbursement_kernel.domain.ledger import AuditEntry
from reimbursement_kernel.logging_config import get_logger
from reimbursement_kernel.models.audit_record import AuditAction, AuditRecord
from reimbursement_kernel.services.base import BaseService
from reimbursement_kernel.utils.serialization import to_json_safe

logger = get_logger("services.audit_recorder")


class AuditRecorder(BaseService):
    """Writes audit records without ever failing the caller."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction | str,
        actor_id: UUID | None = None,
        meta: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        """
        Append one audit record.

        Returns:
            The stored record, or None if the write failed (the failure is
            logged, never raised).
        """
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        try:
            with self.session.begin_nested():
                record = AuditRecord(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action_value,
                    actor_id=actor_id,
                    meta=to_json_safe(meta or {}),
                    recorded_at=self.clock.now(),
                )
                self.session.add(record)
                self.session.flush()
        except Exception:
            logger.warning(
                "audit_write_failed",
                extra={
                    "entity_type": entity_type,
                    "entity_id": str(entity_id) if entity_id is not None else None,
                    "action": action_value,
                },
                exc_info=True,
            )
            return None

        logger.debug(
            "audit_recorded",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action_value,
            },
        )
        return record.to_dto()

    def trail(self, entity_type: str, entity_id: UUID) -> list[AuditEntry]:
        """All records for one entity, oldest first."""
        rows = self.session.execute(
            select(AuditRecord)
            .where(
                AuditRecord.entity_type == entity_type,
                AuditRecord.entity_id == entity_id,
            )
            .order_by(AuditRecord.recorded_at, AuditRecord.id)
        ).scalars().all()
        return [row.to_dto() for row in rows]
