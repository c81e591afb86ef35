"""
RoleAuthorizationMatrix -- which roles may perform which workflow actions.

Responsibility:
    Pure, table-driven lookup of (action, role[, pre-state]) -> allowed.
    The table is data: the configuration layer builds it from YAML and the
    engine consults it on every call.  No role test is ever written inline
    in a transition handler.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Unknown roles and unknown actions are denied.
    - A per-pre-state override replaces (never extends) the action-wide
      role set for that pre-state.

Failure modes:
    - ``require()`` raises UnauthorizedError when the lookup denies.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType
from uuid import UUID

from borrowing_kernel.domain.roles import ActorRole
from borrowing_kernel.domain.workflow import BorrowingStatus, WorkflowAction
from borrowing_kernel.exceptions import UnauthorizedError

_R = ActorRole
_A = WorkflowAction

DEFAULT_PERMISSIONS: Mapping[WorkflowAction, frozenset[ActorRole]] = MappingProxyType({
    _A.CREATE: frozenset({_R.SYSTEM_ADMIN, _R.WAREHOUSEMAN, _R.SITE_INVENTORY_CLERK}),
    _A.VERIFY: frozenset({_R.SYSTEM_ADMIN, _R.PROJECT_MANAGER}),
    _A.APPROVE: frozenset({_R.SYSTEM_ADMIN, _R.ASSET_DIRECTOR, _R.FINANCE_DIRECTOR}),
    _A.RELEASE: frozenset({_R.SYSTEM_ADMIN, _R.WAREHOUSEMAN}),
    _A.RETURN: frozenset({_R.SYSTEM_ADMIN, _R.WAREHOUSEMAN, _R.SITE_INVENTORY_CLERK}),
    _A.CANCEL: frozenset({_R.SYSTEM_ADMIN, _R.ASSET_DIRECTOR, _R.PROJECT_MANAGER}),
    _A.EXTEND: frozenset({
        _R.SYSTEM_ADMIN, _R.WAREHOUSEMAN, _R.PROJECT_MANAGER, _R.ASSET_DIRECTOR,
    }),
})


def _coerce_role(role: ActorRole | str) -> ActorRole | None:
    if isinstance(role, ActorRole):
        return role
    try:
        return ActorRole(role)
    except ValueError:
        return None


def _coerce_action(action: WorkflowAction | str) -> WorkflowAction | None:
    if isinstance(action, WorkflowAction):
        return action
    try:
        return WorkflowAction(action)
    except ValueError:
        return None


class RoleAuthorizationMatrix:
    """
    Immutable (action, role[, pre-state]) permission table.

    Contract:
        ``is_authorized`` is a pure lookup; it never raises for unknown
        input, it denies.

    Guarantees:
        - Two matrices built from equal tables answer identically.
        - ``roles_for`` returns exactly the set ``is_authorized`` accepts.
    """

    def __init__(
        self,
        permissions: Mapping[WorkflowAction, Iterable[ActorRole]],
        state_overrides: (
            Mapping[tuple[WorkflowAction, BorrowingStatus], Iterable[ActorRole]] | None
        ) = None,
    ):
        self._permissions: dict[WorkflowAction, frozenset[ActorRole]] = {
            action: frozenset(roles) for action, roles in permissions.items()
        }
        self._overrides: dict[tuple[WorkflowAction, BorrowingStatus], frozenset[ActorRole]] = {
            key: frozenset(roles) for key, roles in (state_overrides or {}).items()
        }

    @classmethod
    def default(cls) -> RoleAuthorizationMatrix:
        return cls(DEFAULT_PERMISSIONS)

    def roles_for(
        self,
        action: WorkflowAction,
        from_status: BorrowingStatus | None = None,
    ) -> frozenset[ActorRole]:
        if from_status is not None:
            override = self._overrides.get((action, from_status))
            if override is not None:
                return override
        return self._permissions.get(action, frozenset())

    def is_authorized(
        self,
        action: WorkflowAction | str,
        role: ActorRole | str,
        from_status: BorrowingStatus | None = None,
    ) -> bool:
        resolved_action = _coerce_action(action)
        resolved_role = _coerce_role(role)
        if resolved_action is None or resolved_role is None:
            return False
        return resolved_role in self.roles_for(resolved_action, from_status)

    def require(
        self,
        action: WorkflowAction,
        role: ActorRole | str,
        from_status: BorrowingStatus | None = None,
        batch_id: UUID | None = None,
    ) -> None:
        """Raise UnauthorizedError unless *role* may perform *action*."""
        if not self.is_authorized(action, role, from_status):
            role_name = role.value if isinstance(role, ActorRole) else str(role)
            raise UnauthorizedError(
                action.value,
                role_name,
                str(batch_id) if batch_id is not None else None,
            )

    def actions_for(
        self,
        role: ActorRole,
        from_status: BorrowingStatus | None = None,
    ) -> tuple[WorkflowAction, ...]:
        """Actions *role* may perform, in declaration order."""
        return tuple(
            action for action in WorkflowAction
            if self.is_authorized(action, role, from_status)
        )

    def as_table(self) -> dict[str, list[str]]:
        """Plain-data view for logging and config traces."""
        return {
            action.value: sorted(role.value for role in roles)
            for action, roles in self._permissions.items()
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RoleAuthorizationMatrix):
            return NotImplemented
        return (
            self._permissions == other._permissions
            and self._overrides == other._overrides
        )

    __hash__ = None  # type: ignore[assignment]
