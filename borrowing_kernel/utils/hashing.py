"""
Deterministic hashing utilities for the workflow audit chain.

Every audit entry stores the hash of its canonical payload and a chain
hash that folds in the previous entry's hash, so any edit to a stored
entry is detectable by re-walking the chain.
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (tuple, frozenset, set)):
        return sorted(obj) if isinstance(obj, (frozenset, set)) else list(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted, there is no whitespace, and enums, dates and UUIDs
    are rendered the same way every time.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: Any) -> Any:
    """Round-trip *data* through the canonical encoder into plain JSON types."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of *payload*."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_entry(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute the chain hash for a workflow audit entry.

    Args:
        entity_type: Type of entity being audited.
        entity_id: ID of the entity.
        action: Workflow action being recorded.
        payload_hash: Hash of the entry payload.
        prev_hash: Hash of the previous entry of the same batch
            (None for the first entry).

    Returns:
        Hex-encoded SHA-256 hash.
    """
    components = [
        entity_type,
        str(entity_id),
        action,
        payload_hash,
        prev_hash or GENESIS,
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
