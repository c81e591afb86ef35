"""
Idempotency key helpers.

A caller that may retry a workflow request (double-clicked form, network
retry) derives one key per logical request.  The audit entry stores the
key under a unique constraint, so a replay is recognised instead of
being applied twice.
"""

from uuid import UUID

from borrowing_kernel.domain.workflow import WorkflowAction


def generate_idempotency_key(
    batch_id: UUID | str,
    action: WorkflowAction | str,
    request_id: UUID | str,
) -> str:
    """
    Build an idempotency key for a workflow request.

    Format: batch_id:action:request_id

    Example:
        >>> generate_idempotency_key(batch_id, WorkflowAction.APPROVE, form_token)
        "6f1c...:approve:9a2e..."
    """
    action_value = action.value if isinstance(action, WorkflowAction) else action
    return f"{batch_id}:{action_value}:{request_id}"


def parse_idempotency_key(key: str) -> tuple[str, str, str]:
    """
    Split a key built by ``generate_idempotency_key``.

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":", 2)
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2]
