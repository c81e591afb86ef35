"""
Configuration Loader (``borrowing_config.loader``).

Responsibility
--------------
Loads a borrowing policy YAML file and parses it into the frozen
``borrowing_config.schema`` types.  The single public entry point for
runtime config is ``borrowing_config.get_active_config()``.

Invariants enforced
-------------------
* Every permission action, role, and pre-state must name a known
  ``WorkflowAction`` / ``ActorRole`` / ``BorrowingStatus``; anything else
  raises ``ValueError``.  There are no silent defaults for permissions:
  every workflow action must be listed.
* The business time zone must resolve through ``zoneinfo``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError`` with a descriptive message.
"""

from __future__ import annotations

import hashlib
import json
import re
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from borrowing_config.schema import BorrowingPolicyConfig, PermissionRule, StateOverride
from borrowing_kernel.domain.roles import ActorRole
from borrowing_kernel.domain.workflow import BORROWING_WORKFLOW, BorrowingStatus, WorkflowAction
from borrowing_kernel.exceptions import UnsupportedActionError

_CODE_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9_-]{0,19}$")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_role(value: Any) -> ActorRole:
    try:
        return ActorRole(value)
    except ValueError:
        raise ValueError(f"Unknown role {value!r}") from None


def parse_action(value: Any) -> WorkflowAction:
    try:
        return WorkflowAction(value)
    except ValueError:
        raise ValueError(f"Unknown workflow action {value!r}") from None


def parse_status(value: Any) -> BorrowingStatus:
    try:
        return BorrowingStatus(value)
    except ValueError:
        raise ValueError(f"Unknown borrowing status {value!r}") from None


def parse_roles(value: Any, where: str) -> frozenset[ActorRole]:
    if not isinstance(value, list):
        raise ValueError(f"{where}: roles must be a list, got {value!r}")
    return frozenset(parse_role(v) for v in value)


def parse_timezone(value: Any) -> str:
    """Validate a business time zone name; returns it unchanged."""
    if not isinstance(value, str) or not value:
        raise ValueError(f"business_timezone must be a zone name, got {value!r}")
    if value.upper() == "UTC":
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown business_timezone {value!r}") from None
    return value


def parse_permissions(data: Any) -> tuple[PermissionRule, ...]:
    """Parse ``permissions: {action: [roles]}``; every action must be present."""
    if not isinstance(data, dict):
        raise ValueError("permissions must be a mapping of action -> roles")
    rules = tuple(
        PermissionRule(
            action=parse_action(action),
            roles=parse_roles(roles, f"permissions.{action}"),
        )
        for action, roles in data.items()
    )
    missing = set(WorkflowAction) - {rule.action for rule in rules}
    if missing:
        names = ", ".join(sorted(a.value for a in missing))
        raise ValueError(f"permissions missing for actions: {names}")
    return rules


_OVERRIDE_KEYS = ("action", "from_status", "roles")


def parse_state_override(data: Any) -> StateOverride:
    if not isinstance(data, dict):
        raise ValueError(f"state_overrides entries must be mappings, got {data!r}")
    missing = [key for key in _OVERRIDE_KEYS if key not in data]
    if missing:
        raise ValueError(f"state override {data!r} is missing {', '.join(missing)}")
    action = parse_action(data["action"])
    from_status = parse_status(data["from_status"])
    try:
        pre_states = BORROWING_WORKFLOW.allowed_from(action)
    except UnsupportedActionError:
        raise ValueError(
            f"state override for {action.value!r}: that action has no pre-state to override"
        ) from None
    if from_status not in pre_states:
        raise ValueError(
            f"state override for {action.value!r} names pre-state "
            f"{from_status.value!r}, which that action never starts from"
        )
    return StateOverride(
        action=action,
        from_status=from_status,
        roles=parse_roles(data["roles"], f"state_overrides.{action.value}"),
    )


def parse_policy_config(data: dict[str, Any]) -> BorrowingPolicyConfig:
    """Parse and validate a whole policy document."""
    reference = data.get("batch_reference", {})
    cancellation = data.get("cancellation", {})
    snapshots = data.get("snapshots", {})

    prefix = str(reference.get("prefix", "BRW"))
    project = str(reference.get("default_project_code", "GEN"))
    for label, code in (("prefix", prefix), ("default_project_code", project)):
        if not _CODE_PATTERN.match(code):
            raise ValueError(f"batch_reference.{label} {code!r} is not a valid code")

    recent = snapshots.get("recent_audit_entries", 5)
    if not isinstance(recent, int) or isinstance(recent, bool) or recent < 0:
        raise ValueError(
            f"snapshots.recent_audit_entries must be a non-negative integer, got {recent!r}"
        )

    maker_cancel = cancellation.get("maker_may_cancel_unverified", True)
    if not isinstance(maker_cancel, bool):
        raise ValueError(
            f"cancellation.maker_may_cancel_unverified must be true or false, got {maker_cancel!r}"
        )

    return BorrowingPolicyConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        business_timezone=parse_timezone(data.get("business_timezone", "UTC")),
        permissions=parse_permissions(data["permissions"]),
        state_overrides=tuple(
            parse_state_override(o) for o in data.get("state_overrides") or []
        ),
        maker_may_cancel_unverified=maker_cancel,
        recent_audit_entries=recent,
        reference_prefix=prefix,
        default_project_code=project,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of *data*."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
