"""Actor roles and the actor value object."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class ActorRole(str, Enum):
    """Organizational roles that take part in equipment borrowing."""

    SYSTEM_ADMIN = "System Admin"
    ASSET_DIRECTOR = "Asset Director"
    FINANCE_DIRECTOR = "Finance Director"
    PROJECT_MANAGER = "Project Manager"
    PROCUREMENT_OFFICER = "Procurement Officer"
    WAREHOUSEMAN = "Warehouseman"
    SITE_INVENTORY_CLERK = "Site Inventory Clerk"


_ROLES_BY_NAME: dict[str, ActorRole] = {role.value: role for role in ActorRole}


@dataclass(frozen=True)
class Actor:
    """Who is requesting a workflow action.

    The role is re-checked against the authorization matrix on every
    call; callers never pass a pre-computed permission.  A role given as
    its display name ("Project Manager") is converted to ``ActorRole``;
    an unrecognized name is kept as the string and is denied by the
    matrix.
    """
    actor_id: UUID
    role: ActorRole | str
    display_name: str | None = None

    def __post_init__(self) -> None:
        known = _ROLES_BY_NAME.get(self.role) if isinstance(self.role, str) else None
        if known is not None:
            object.__setattr__(self, "role", known)

    @property
    def role_name(self) -> str:
        """Role as recorded in audit entries and errors."""
        if isinstance(self.role, ActorRole):
            return self.role.value
        return str(self.role)
