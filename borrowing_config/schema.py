"""
BorrowingPolicyConfig schema.

Defines the frozen, validated form of a borrowing policy.  YAML is parsed
into these types by the loader; bridges turn them into kernel inputs
(the role matrix, the engine, the batch service).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone, tzinfo
from zoneinfo import ZoneInfo

from borrowing_kernel.domain.roles import ActorRole
from borrowing_kernel.domain.workflow import BorrowingStatus, WorkflowAction

# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionRule:
    """Roles allowed to perform an action from any pre-state."""

    action: WorkflowAction
    roles: frozenset[ActorRole]


@dataclass(frozen=True)
class StateOverride:
    """Roles allowed to perform an action from one specific pre-state.

    Replaces the action-wide ``PermissionRule`` for that pre-state.
    """

    action: WorkflowAction
    from_status: BorrowingStatus
    roles: frozenset[ActorRole]


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BorrowingPolicyConfig:
    """A complete, validated borrowing policy."""

    config_id: str
    version: int
    business_timezone: str
    permissions: tuple[PermissionRule, ...]
    state_overrides: tuple[StateOverride, ...] = ()
    maker_may_cancel_unverified: bool = True
    recent_audit_entries: int = 5
    reference_prefix: str = "BRW"
    default_project_code: str = "GEN"
    checksum: str = ""

    @property
    def tz(self) -> tzinfo:
        if self.business_timezone.upper() == "UTC":
            return timezone.utc
        return ZoneInfo(self.business_timezone)

    def roles_for(self, action: WorkflowAction) -> frozenset[ActorRole]:
        for rule in self.permissions:
            if rule.action is action:
                return rule.roles
        return frozenset()
