"""
Domain events and the in-process event bus.

The consensus engine buffers one ``RequestEvent`` per committed state change
(``submitted``, ``approved``, ``rejected``, ``cancelled``).  The boundary
layer publishes the buffer only after the transaction commits, so a
subscriber never observes a transition that was rolled back.

Subscribers (notifications, follow-up audit records) are best-effort: a
failing handler is logged and the remaining handlers still run.  Nothing a
subscriber does can fail or undo the state transition.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from reimbursement_kernel.logging_config import get_logger

logger = get_logger("domain.events")


class EventKind(str, Enum):
    """State changes other subsystems may subscribe to."""

    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RequestEvent:
    """A committed state change of one reimbursement request."""

    kind: EventKind
    request_id: UUID
    owner_id: UUID
    actor_id: UUID | None
    title: str
    occurred_at: datetime
    approved_amount: Decimal | None = None
    comment: str = ""
    meta: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[RequestEvent], None]


class EventBus:
    """Synchronous publish/subscribe dispatcher keyed by ``EventKind``."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[EventHandler]] = defaultdict(list)

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        self._handlers[kind].append(handler)

    def publish(self, event: RequestEvent) -> int:
        """
        Deliver an event to every handler registered for its kind.

        Returns:
            Number of handlers that completed without raising.
        """
        delivered = 0
        for handler in list(self._handlers.get(event.kind, ())):
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.warning(
                    "event_handler_failed",
                    extra={
                        "event_kind": event.kind.value,
                        "request_id": str(event.request_id),
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                    },
                    exc_info=True,
                )
        return delivered

    def publish_all(self, events: list[RequestEvent]) -> None:
        for event in events:
            self.publish(event)
