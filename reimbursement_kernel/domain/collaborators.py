"""
Collaborator interfaces the kernel consumes but does not implement.

Identity, role administration, category CRUD and notification delivery
live outside the kernel.  The kernel only needs the narrow predicates and
calls below; the boundary layer supplies implementations.
"""

from typing import Any, Protocol
from uuid import UUID


class DirectoryProvider(Protocol):
    """Identity lookups: who the admins are and who may approve."""

    def list_admins(self) -> tuple[UUID, ...]:
        """Return every account that should hear about pending requests."""
        ...

    def is_approver(self, actor_id: UUID) -> bool:
        """Check whether the actor may record approval decisions."""
        ...


class NotificationSink(Protocol):
    """Delivers one message to one user."""

    def notify(
        self,
        user_id: UUID,
        title: str,
        body: str,
        link: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        ...


class CategoryResolver(Protocol):
    """Maps a category id or name to a category id."""

    def resolve(self, id_or_name: UUID | str) -> UUID | None:
        """Return the category id, or None if no such category exists."""
        ...
