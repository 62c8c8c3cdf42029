"""
reimbursement_services.collaborators -- in-process collaborator implementations.

Identity and category administration live outside this project.  These
small implementations satisfy the kernel's ``DirectoryProvider`` and
``CategoryResolver`` protocols from static data, which is what the CLI
and tests need.  A deployment backed by a user service supplies its own.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from uuid import UUID


class StaticDirectory:
    """Fixed admin and approver sets.

    Approvers default to the admins.  ``list_admins`` keeps the given
    order so notification fan-out is deterministic.
    """

    def __init__(
        self,
        admins: Iterable[UUID],
        approvers: Iterable[UUID] | None = None,
    ) -> None:
        self._admins = tuple(dict.fromkeys(admins))
        self._approvers = frozenset(self._admins if approvers is None else approvers)

    def list_admins(self) -> tuple[UUID, ...]:
        return self._admins

    def is_approver(self, actor_id: UUID) -> bool:
        return actor_id in self._approvers


class StaticCategoryResolver:
    """Resolves category ids and (case-insensitive) names from a fixed mapping."""

    def __init__(self, categories: Mapping[str, UUID]) -> None:
        self._by_name = {name.strip().lower(): cid for name, cid in categories.items()}
        self._ids = frozenset(categories.values())

    def resolve(self, id_or_name: UUID | str) -> UUID | None:
        if isinstance(id_or_name, UUID):
            return id_or_name if id_or_name in self._ids else None
        text = str(id_or_name).strip()
        try:
            candidate = UUID(text)
        except ValueError:
            return self._by_name.get(text.lower())
        return candidate if candidate in self._ids else None
